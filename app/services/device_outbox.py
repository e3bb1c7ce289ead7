"""Outbox of device mutations that must run after a commit.

``enqueue`` writes a DeviceOutboxMessage in the caller's transaction. Once
that transaction commits, the message ids are handed to the publisher (by
default the Celery task ``process_outbox_message``). A rollback discards
them. The worker claims the row (``pending`` to ``processing``) before it
touches the device, so a message published twice runs once. Messages that
share a ``target_key`` run oldest first: a newer one stays pending until the
older one finishes, and each finished message publishes the next one for its
target. The device call runs with no database transaction open; a failure
leaves a ``failed`` row (drift) and is never retried automatically.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, event, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import observe_device_call, record_drift
from app.models.device_outbox import DeviceOutboxMessage, OutboxStatus
from app.models.network import Device
from app.services.common import (
    ListResponseMixin,
    apply_pagination,
    coerce_uuid,
    get_or_404,
)
from app.services.device_adapters import DeviceAdapter, get_adapter
from app.services.exceptions import DeviceError, ValidationError

logger = logging.getLogger(__name__)

_PENDING_KEY = "device_outbox_pending"

# Actions
CREDENTIAL_UPDATE = "credential.update"
CREDENTIAL_ENABLE = "credential.enable"
CREDENTIAL_SUSPEND = "credential.suspend"
CREDENTIAL_SET_PROFILE = "credential.set_profile"
PROFILE_UPDATE = "profile.update"

_REDACT_KEYS = {"secret", "password"}
_UNFINISHED = (OutboxStatus.pending, OutboxStatus.processing)


def credential_target(credential_id) -> str:
    return f"credential:{credential_id}"


def profile_target(profile_id) -> str:
    return f"profile:{profile_id}"


def _redact(payload: dict) -> dict:
    return {
        key: "***redacted***" if key in _REDACT_KEYS and value else value
        for key, value in (payload or {}).items()
    }


def _credential_update(adapter: DeviceAdapter, payload: dict) -> None:
    adapter.update_credential(
        payload["username"],
        new_username=payload.get("new_username"),
        secret=payload.get("secret"),
        profile=payload.get("profile"),
        comment=payload.get("comment"),
    )


def _credential_enable(adapter: DeviceAdapter, payload: dict) -> None:
    adapter.enable_credential(payload["username"])


def _credential_suspend(adapter: DeviceAdapter, payload: dict) -> None:
    adapter.disable_credential(payload["username"])
    adapter.disconnect_session(payload["username"])


def _credential_set_profile(adapter: DeviceAdapter, payload: dict) -> None:
    adapter.update_credential(payload["username"], profile=payload["profile"])
    # New rate limits apply on the next login.
    adapter.disconnect_session(payload["username"])


def _profile_update(adapter: DeviceAdapter, payload: dict) -> None:
    adapter.update_profile(
        payload["name"],
        new_name=payload.get("new_name"),
        upload_bps=payload.get("upload_bps"),
        download_bps=payload.get("download_bps"),
        session_timeout=payload.get("session_timeout"),
        comment=payload.get("comment"),
    )


_ACTIONS: dict[str, Callable[[DeviceAdapter, dict], None]] = {
    CREDENTIAL_UPDATE: _credential_update,
    CREDENTIAL_ENABLE: _credential_enable,
    CREDENTIAL_SUSPEND: _credential_suspend,
    CREDENTIAL_SET_PROFILE: _credential_set_profile,
    PROFILE_UPDATE: _profile_update,
}


def _celery_publisher(message_id: uuid.UUID) -> None:
    from app.tasks.device_sync import process_outbox_message

    process_outbox_message.delay(str(message_id))


_publisher: Callable[[uuid.UUID], None] = _celery_publisher


def set_publisher(publisher: Callable[[uuid.UUID], None] | None) -> None:
    """Replace the post-commit publisher; None restores the Celery one."""
    global _publisher
    _publisher = publisher or _celery_publisher


def _publish(message_ids: list[uuid.UUID]) -> None:
    if not settings.outbox_dispatch_enabled:
        logger.info("Outbox dispatch disabled; %d message(s) left pending", len(message_ids))
        return
    for message_id in message_ids:
        try:
            _publisher(message_id)
        except Exception:
            # Commit already happened; the row stays pending for drain_pending.
            logger.exception("Failed to publish device outbox message %s", message_id)


def _publish_after_commit(db: Session, message_id: uuid.UUID) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(message_id)


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    if session.in_nested_transaction():
        return
    message_ids = session.info.pop(_PENDING_KEY, None)
    if message_ids:
        _publish(message_ids)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    # A savepoint rollback keeps ids queued by the enclosing transaction; ids
    # whose rows were rolled back are skipped by process_message.
    if session.in_nested_transaction():
        return
    if session.info.pop(_PENDING_KEY, None):
        logger.debug("Discarded device outbox messages from rolled back transaction")


def enqueue(
    db: Session,
    action: str,
    device_id,
    payload: dict,
    target_key: str | None = None,
) -> DeviceOutboxMessage:
    if action not in _ACTIONS:
        raise ValidationError(f"Unknown device outbox action: {action}")
    message = DeviceOutboxMessage(
        action=action,
        device_id=coerce_uuid(device_id),
        target_key=target_key,
        payload=payload,
        status=OutboxStatus.pending,
        attempts=0,
    )
    db.add(message)
    db.flush()
    _publish_after_commit(db, message.id)
    logger.info(
        "Queued device outbox message %s (%s) %s", message.id, action, _redact(payload)
    )
    return message


def _earlier_unfinished(db: Session, message: DeviceOutboxMessage):
    if not message.target_key:
        return None
    return (
        db.query(DeviceOutboxMessage)
        .filter(DeviceOutboxMessage.target_key == message.target_key)
        .filter(DeviceOutboxMessage.id != message.id)
        .filter(DeviceOutboxMessage.status.in_(_UNFINISHED))
        .filter(
            or_(
                DeviceOutboxMessage.created_at < message.created_at,
                and_(
                    DeviceOutboxMessage.created_at == message.created_at,
                    DeviceOutboxMessage.id < message.id,
                ),
            )
        )
        .order_by(DeviceOutboxMessage.created_at.asc())
        .first()
    )


def _next_for_target(db: Session, target_key: str | None):
    if not target_key:
        return None
    return (
        db.query(DeviceOutboxMessage)
        .filter(DeviceOutboxMessage.target_key == target_key)
        .filter(DeviceOutboxMessage.status == OutboxStatus.pending)
        .order_by(DeviceOutboxMessage.created_at.asc(), DeviceOutboxMessage.id.asc())
        .first()
    )


def _claim(db: Session, message_id: uuid.UUID) -> bool:
    """Move the row from pending to processing; False if another worker won."""
    claimed = (
        db.query(DeviceOutboxMessage)
        .filter(
            DeviceOutboxMessage.id == message_id,
            DeviceOutboxMessage.status == OutboxStatus.pending,
        )
        .update(
            {
                DeviceOutboxMessage.status: OutboxStatus.processing,
                DeviceOutboxMessage.claimed_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def process_message(db: Session, message_id) -> DeviceOutboxMessage | None:
    """Claim one pending message, run it against its device and record the outcome.

    A message whose target still has an older unfinished message is left
    pending; the older one publishes it when done.
    """
    message = db.get(DeviceOutboxMessage, coerce_uuid(message_id))
    if message is None:
        logger.warning("Device outbox message %s not found", message_id)
        return None
    if message.status != OutboxStatus.pending:
        logger.info(
            "Device outbox message %s already %s", message.id, message.status.value
        )
        return message

    blocker = _earlier_unfinished(db, message)
    if blocker is not None:
        logger.info(
            "Device outbox message %s waits for %s on %s",
            message.id,
            blocker.id,
            message.target_key,
        )
        return message

    action = message.action
    payload = dict(message.payload or {})
    target_key = message.target_key
    device = db.get(Device, message.device_id)
    adapter = get_adapter(device) if device is not None else None
    message_key = message.id
    # The claim commits, so no transaction stays open during the device call.
    if not _claim(db, message_key):
        message = db.get(DeviceOutboxMessage, message_key)
        logger.info(
            "Device outbox message %s claimed elsewhere (%s)",
            message_key,
            message.status.value,
        )
        return message

    error: str | None = None
    started = time.monotonic()
    if adapter is None:
        error = "Device no longer exists"
    else:
        try:
            _ACTIONS[action](adapter, payload)
        except DeviceError as exc:
            error = str(exc)
    if adapter is not None:
        observe_device_call(
            action, "success" if error is None else "error", time.monotonic() - started
        )

    message = db.get(DeviceOutboxMessage, message_key)
    message.attempts = (message.attempts or 0) + 1
    message.processed_at = datetime.now(timezone.utc)
    if error is None:
        message.status = OutboxStatus.succeeded
        message.last_error = None
        logger.info("Device outbox message %s (%s) applied", message.id, action)
    else:
        message.status = OutboxStatus.failed
        message.last_error = error
        record_drift(action)
        logger.error(
            "Device drift: outbox message %s (%s) failed: %s %s",
            message.id,
            action,
            error,
            _redact(payload),
        )
    following = _next_for_target(db, target_key)
    if following is not None:
        _publish_after_commit(db, following.id)
    db.commit()
    return message


def _fail_stale_claims(db: Session, timeout_seconds: int) -> int:
    if timeout_seconds <= 0:
        return 0
    now = datetime.now(timezone.utc)
    stale = (
        db.query(DeviceOutboxMessage)
        .filter(DeviceOutboxMessage.status == OutboxStatus.processing)
        .filter(DeviceOutboxMessage.claimed_at < now - timedelta(seconds=timeout_seconds))
        .all()
    )
    for message in stale:
        message.status = OutboxStatus.failed
        message.attempts = (message.attempts or 0) + 1
        message.processed_at = now
        message.last_error = "Worker lost while processing"
        record_drift(message.action)
        logger.error(
            "Device drift: outbox message %s (%s) failed: %s",
            message.id,
            message.action,
            message.last_error,
        )
        following = _next_for_target(db, message.target_key)
        if following is not None:
            _publish_after_commit(db, following.id)
    if stale:
        db.commit()
    return len(stale)


def drain_pending(
    db: Session,
    limit: int = 100,
    grace_seconds: int | None = None,
    claim_timeout_seconds: int | None = None,
) -> int:
    """Publish pending messages left behind (dispatch disabled or broker down).

    Rows touched within the grace window are left to their own post-commit
    publish. Claims older than the claim timeout are recorded as drift first.
    """
    if grace_seconds is None:
        grace_seconds = settings.outbox_drain_grace_seconds
    if claim_timeout_seconds is None:
        claim_timeout_seconds = settings.outbox_claim_timeout_seconds
    _fail_stale_claims(db, claim_timeout_seconds)

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(grace_seconds, 0))
    message_ids = [
        row.id
        for row in db.query(DeviceOutboxMessage)
        .filter(DeviceOutboxMessage.status == OutboxStatus.pending)
        .filter(DeviceOutboxMessage.updated_at <= cutoff)
        .order_by(DeviceOutboxMessage.created_at.asc())
        .limit(limit)
        .all()
    ]
    for message_id in message_ids:
        _publisher(message_id)
    return len(message_ids)


class DeviceDrift(ListResponseMixin):
    @staticmethod
    def list(db: Session, device_id=None, limit: int = 50, offset: int = 0):
        query = db.query(DeviceOutboxMessage).filter(
            DeviceOutboxMessage.status == OutboxStatus.failed
        )
        if device_id:
            query = query.filter(DeviceOutboxMessage.device_id == coerce_uuid(device_id))
        query = query.order_by(DeviceOutboxMessage.created_at.desc())
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def mark_resolved(db: Session, message_id) -> DeviceOutboxMessage:
        message = get_or_404(db, DeviceOutboxMessage, message_id, "Outbox message not found")
        if message.status != OutboxStatus.failed:
            raise ValidationError("Only failed messages can be resolved")
        message.status = OutboxStatus.skipped
        db.commit()
        db.refresh(message)
        return message

    @staticmethod
    def retry(db: Session, message_id) -> DeviceOutboxMessage:
        """Operator-requested retry: back to pending, dispatched after commit.

        Only the latest change for a target can be retried; replaying an
        older one would undo what came after it.
        """
        message = get_or_404(db, DeviceOutboxMessage, message_id, "Outbox message not found")
        if message.status != OutboxStatus.failed:
            raise ValidationError("Only failed messages can be retried")
        if message.target_key:
            newer = (
                db.query(DeviceOutboxMessage.id)
                .filter(DeviceOutboxMessage.target_key == message.target_key)
                .filter(DeviceOutboxMessage.id != message.id)
                .filter(DeviceOutboxMessage.created_at >= message.created_at)
                .filter(DeviceOutboxMessage.status != OutboxStatus.skipped)
                .first()
            )
            if newer is not None:
                raise ValidationError(
                    "A later change for the same target exists; resolve this message instead"
                )
        message.status = OutboxStatus.pending
        message.claimed_at = None
        db.flush()
        _publish_after_commit(db, message.id)
        db.commit()
        db.refresh(message)
        return message


device_drift = DeviceDrift()
