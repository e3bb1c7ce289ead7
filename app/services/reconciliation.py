"""Import PPPoE profiles and credentials from a device into the database.

Imports are one-way and idempotent per object name: objects already present
locally are skipped, missing ones are created. Every device object is handled
in its own savepoint so one bad record never aborts the run.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid

from sqlalchemy.orm import Session

from app.models.network import BandwidthProfile, Credential, Device
from app.schemas.reconciliation import FullSyncReport, ReconciliationReport
from app.services.common import ProvisioningContext, coerce_uuid, get_or_404
from app.services.device_adapters import get_adapter
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.exceptions import DeviceError, ValidationError
from app.services.units import parse_duration, parse_rate_limit

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_DESCRIPTION = "Synced from device"
_HASH_PREFIXES = ("$2a$", "$2b$", "$2y$")

_locks: dict[uuid.UUID, threading.Lock] = {}
_locks_guard = threading.Lock()


def _device_lock(device_id: uuid.UUID) -> threading.Lock:
    with _locks_guard:
        return _locks.setdefault(device_id, threading.Lock())


def secret_needs_refresh(local_secret: str | None) -> bool:
    """True when the stored secret is missing or a one-way hash placeholder."""
    if not local_secret:
        return True
    return local_secret.startswith(_HASH_PREFIXES)


def _load_device(db: Session, ctx: ProvisioningContext, device_id) -> Device:
    return get_or_404(db, Device, device_id, "Device not found", ctx=ctx)


def _finish(db: Session, ctx: ProvisioningContext, kind: str, device_id, report) -> None:
    db.commit()
    logger.info(
        "Imported %s from device %s: seen=%d created=%d skipped=%d failed=%d",
        kind,
        device_id,
        report.total_seen,
        report.created,
        report.skipped,
        report.failed,
    )
    emit_event(
        db,
        EventType.reconciliation_completed,
        {
            "kind": kind,
            "device_id": str(device_id),
            "total_seen": report.total_seen,
            "created": report.created,
            "skipped": report.skipped,
            "failed": report.failed,
        },
        actor=ctx.actor,
    )


class Reconciliation:
    @staticmethod
    def import_profiles(
        db: Session, ctx: ProvisioningContext, device_id
    ) -> ReconciliationReport:
        """Create local profiles for device profiles missing by name.

        The caller's transaction is committed before the device is queried.
        """
        device = _load_device(db, ctx, device_id)
        device_key = device.id
        adapter = get_adapter(device)
        report = ReconciliationReport()

        with _device_lock(device_key):
            db.commit()
            try:
                items = adapter.list_profiles()
            except DeviceError as exc:
                logger.error("Failed to fetch profiles from device %s: %s", device_key, exc)
                report.errors.append(f"Failed to fetch profiles from device: {exc}")
                return report

            report.total_seen = len(items)
            for item in items:
                name = (item.name or "").strip()
                if not name:
                    report.record_failed("<unnamed>", "device profile has no name")
                    continue
                try:
                    with db.begin_nested():
                        existing = (
                            db.query(BandwidthProfile)
                            .filter(BandwidthProfile.device_id == device_key)
                            .filter(BandwidthProfile.name == name)
                            .first()
                        )
                        if existing:
                            report.record_skipped(name)
                            continue
                        upload_bps, download_bps = parse_rate_limit(item.rate_limit)
                        profile = BandwidthProfile(
                            device_id=device_key,
                            name=name,
                            description=item.comment or DEFAULT_PROFILE_DESCRIPTION,
                            upload_bps=upload_bps,
                            download_bps=download_bps,
                            session_timeout_seconds=parse_duration(item.session_timeout),
                            active=not item.disabled,
                        )
                        db.add(profile)
                        db.flush()
                    report.record_created(name)
                except Exception as exc:
                    logger.warning("Failed to import profile %s: %s", name, exc, exc_info=True)
                    report.record_failed(name, str(exc))

            _finish(db, ctx, "profiles", device_key, report)
        return report

    @staticmethod
    def import_credentials(
        db: Session,
        ctx: ProvisioningContext,
        device_id,
        forced_profile_id=None,
    ) -> ReconciliationReport:
        """Create local credentials for device secrets missing by name.

        Existing credentials only get their secret refreshed when the stored
        one is missing or hashed. Profiles are matched by name on the same
        device unless forced_profile_id is given; an unmatched profile is a
        per-item error.
        """
        device = _load_device(db, ctx, device_id)
        device_key = device.id
        forced_profile = None
        if forced_profile_id:
            forced_profile = get_or_404(
                db, BandwidthProfile, forced_profile_id, "Bandwidth profile not found"
            )
            if forced_profile.device_id != device_key:
                raise ValidationError("Forced profile belongs to a different device")
        forced_key = forced_profile.id if forced_profile else None
        adapter = get_adapter(device)
        report = ReconciliationReport()

        with _device_lock(device_key):
            db.commit()
            try:
                items = adapter.list_credentials()
            except DeviceError as exc:
                logger.error("Failed to fetch secrets from device %s: %s", device_key, exc)
                report.errors.append(f"Failed to fetch credentials from device: {exc}")
                return report

            report.total_seen = len(items)
            for item in items:
                name = (item.name or "").strip()
                if not name:
                    report.record_failed("<unnamed>", "device secret has no name")
                    continue
                try:
                    with db.begin_nested():
                        existing = (
                            db.query(Credential)
                            .filter(Credential.device_id == device_key)
                            .filter(Credential.username == name)
                            .first()
                        )
                        if existing:
                            if item.secret and secret_needs_refresh(existing.secret):
                                existing.secret = item.secret
                                db.flush()
                                report.record_skipped(name, "secret updated")
                            else:
                                report.record_skipped(name)
                            continue
                        profile_key = forced_key or _resolve_profile(db, device_key, item.profile)
                        credential = Credential(
                            device_id=device_key,
                            profile_id=profile_key,
                            username=name,
                            secret=item.secret or "",
                            comment=item.comment,
                            active=not item.disabled,
                        )
                        db.add(credential)
                        db.flush()
                    report.record_created(name)
                except Exception as exc:
                    logger.warning("Failed to import credential %s: %s", name, exc, exc_info=True)
                    report.record_failed(name, str(exc))

            _finish(db, ctx, "credentials", device_key, report)
        return report

    @staticmethod
    def full_sync(
        db: Session,
        ctx: ProvisioningContext,
        device_id,
        forced_profile_id=None,
    ) -> FullSyncReport:
        """Import profiles, then credentials, from one device.

        Credentials resolve their profile by name, so profiles go first. A
        failure to fetch profiles does not stop the credential import.
        """
        started = time.monotonic()
        device = _load_device(db, ctx, device_id)
        device_key = device.id
        report = FullSyncReport(device_id=str(device_key))
        logger.info("Full sync of device %s started by %s", device_key, ctx.actor)
        report.profiles = Reconciliation.import_profiles(db, ctx, device_key)
        report.credentials = Reconciliation.import_credentials(
            db, ctx, device_key, forced_profile_id
        )
        report.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Full sync of device %s finished in %.1fs: profiles created=%d, "
            "credentials created=%d, success=%s",
            device_key,
            report.duration_seconds,
            report.profiles.created,
            report.credentials.created,
            report.success,
        )
        return report


def _resolve_profile(db: Session, device_id, profile_name: str | None) -> uuid.UUID:
    if not profile_name:
        raise ValidationError("device secret has no profile and no profile was forced")
    profile = (
        db.query(BandwidthProfile)
        .filter(BandwidthProfile.device_id == coerce_uuid(device_id))
        .filter(BandwidthProfile.name == profile_name)
        .first()
    )
    if profile is None:
        raise ValidationError(
            f"profile '{profile_name}' not found locally; import profiles first"
        )
    return profile.id


reconciliation = Reconciliation()
