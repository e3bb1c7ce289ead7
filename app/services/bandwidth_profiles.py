"""Bandwidth profiles mirrored as PPP profiles on the device.

Create and delete are atomic with the device call. Edits commit locally and
reach the device through the outbox; a failed device update is drift.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.network import BandwidthProfile, Device
from app.schemas.network import BandwidthProfileCreate, BandwidthProfileUpdate
from app.services import device_outbox
from app.services.common import (
    ListResponseMixin,
    ProvisioningContext,
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
)
from app.services.device_adapters import get_adapter
from app.services.exceptions import DeviceObjectNotFound, ValidationError

logger = logging.getLogger(__name__)

_DEVICE_FIELDS = ("name", "upload_bps", "download_bps", "session_timeout_seconds", "description")


def _flush_or_conflict(db: Session, name: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError(f"Bandwidth profile '{name}' already exists on this device") from exc


class BandwidthProfiles(ListResponseMixin):
    @staticmethod
    def create(
        db: Session, ctx: ProvisioningContext, payload: BandwidthProfileCreate
    ) -> BandwidthProfile:
        device = get_or_404(db, Device, payload.device_id, "Device not found")
        profile = BandwidthProfile(**payload.model_dump())
        db.add(profile)
        _flush_or_conflict(db, payload.name)
        try:
            get_adapter(device).create_profile(
                profile.name,
                profile.upload_bps,
                profile.download_bps,
                profile.session_timeout_seconds,
                profile.description,
            )
        except Exception:
            db.rollback()
            raise
        db.commit()
        db.refresh(profile)
        logger.info("Created bandwidth profile %s on device %s", profile.name, device.id)
        return profile

    @staticmethod
    def get(db: Session, ctx: ProvisioningContext, profile_id) -> BandwidthProfile:
        return get_or_404(db, BandwidthProfile, profile_id, "Bandwidth profile not found")

    @staticmethod
    def list(
        db: Session,
        ctx: ProvisioningContext,
        device_id: str | None = None,
        active: bool | None = None,
        order_by: str = "name",
        order_dir: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(BandwidthProfile)
        if device_id:
            query = query.filter(BandwidthProfile.device_id == coerce_uuid(device_id))
        if active is not None:
            query = query.filter(BandwidthProfile.active == active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"name": BandwidthProfile.name, "created_at": BandwidthProfile.created_at},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(
        db: Session,
        ctx: ProvisioningContext,
        profile_id,
        payload: BandwidthProfileUpdate,
    ) -> BandwidthProfile:
        """Commit the edit now and queue the device update for after commit."""
        profile = BandwidthProfiles.get(db, ctx, profile_id)
        old_name = profile.name
        data = payload.model_dump(exclude_unset=True)
        changed = {
            key for key, value in data.items()
            if key in _DEVICE_FIELDS and getattr(profile, key) != value
        }
        for key, value in data.items():
            setattr(profile, key, value)
        _flush_or_conflict(db, profile.name)

        if changed:
            message = {"name": old_name}
            if "name" in changed:
                message["new_name"] = profile.name
            if changed & {"upload_bps", "download_bps"}:
                message["upload_bps"] = profile.upload_bps
                message["download_bps"] = profile.download_bps
            if "session_timeout_seconds" in changed:
                message["session_timeout"] = profile.session_timeout_seconds
            if "description" in changed:
                message["comment"] = profile.description or ""
            device_outbox.enqueue(
                db,
                device_outbox.PROFILE_UPDATE,
                profile.device_id,
                message,
                target_key=device_outbox.profile_target(profile.id),
            )
        db.commit()
        db.refresh(profile)
        return profile

    @staticmethod
    def delete(db: Session, ctx: ProvisioningContext, profile_id) -> None:
        """Delete locally (flushed) then on the device; a device refusal rolls back."""
        profile = BandwidthProfiles.get(db, ctx, profile_id)
        name = profile.name
        device = profile.device
        db.delete(profile)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise ValidationError(
                f"Bandwidth profile '{name}' is still used by credentials or plans"
            ) from exc
        try:
            get_adapter(device).delete_profile(name)
        except DeviceObjectNotFound:
            logger.warning("PPP profile %s already absent on device %s", name, device.id)
        except Exception:
            db.rollback()
            raise
        db.commit()
        logger.info("Deleted bandwidth profile %s from device %s", name, device.id)


bandwidth_profiles = BandwidthProfiles()
