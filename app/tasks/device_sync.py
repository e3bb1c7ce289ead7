"""Celery tasks running device outbox messages and operator-triggered imports."""

import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import device_outbox
from app.services.common import SYSTEM_CONTEXT, ProvisioningContext
from app.services.reconciliation import reconciliation

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


def _context(actor: str | None) -> ProvisioningContext:
    return ProvisioningContext(actor=actor) if actor else SYSTEM_CONTEXT


@celery_app.task(name="app.tasks.device_sync.process_outbox_message")
def process_outbox_message(message_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        message = device_outbox.process_message(session, message_id)
        return message.status.value if message else None
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Device outbox message %s crashed", message_id)
        raise
    finally:
        session.close()
        observe_job("device_outbox_process", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.device_sync.drain_device_outbox")
def drain_device_outbox():
    """Publish messages left pending (dispatch disabled or broker down)."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return {"published": device_outbox.drain_pending(session, limit=BATCH_SIZE)}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("device_outbox_drain", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.device_sync.import_device_profiles")
def import_device_profiles(device_id: str, actor: str | None = None):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        report = reconciliation.import_profiles(session, _context(actor), device_id)
        return report.model_dump()
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("device_import_profiles", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.device_sync.import_device_credentials")
def import_device_credentials(
    device_id: str, profile_id: str | None = None, actor: str | None = None
):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        report = reconciliation.import_credentials(
            session, _context(actor), device_id, profile_id
        )
        return report.model_dump()
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("device_import_credentials", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.device_sync.full_sync_device")
def full_sync_device(
    device_id: str, profile_id: str | None = None, actor: str | None = None
):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        report = reconciliation.full_sync(session, _context(actor), device_id, profile_id)
        return report.model_dump()
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Full sync of device %s failed", device_id)
        raise
    finally:
        session.close()
        observe_job("device_full_sync", status, time.monotonic() - start)
