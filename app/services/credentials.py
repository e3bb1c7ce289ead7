"""Operator management of PPPoE credentials mirrored on the device."""

from __future__ import annotations

import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.metrics import record_drift
from app.models.network import BandwidthProfile, Credential, Device
from app.schemas.network import CredentialCreate, CredentialUpdate
from app.services import device_outbox
from app.services.common import (
    ListResponseMixin,
    ProvisioningContext,
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
)
from app.services.device_adapters import DeviceAdapter, get_adapter
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.exceptions import DeviceError, DeviceObjectNotFound, ValidationError

logger = logging.getLogger(__name__)


def _profile_on_device(db: Session, profile_id, device_id) -> BandwidthProfile:
    profile = get_or_404(db, BandwidthProfile, profile_id, "Bandwidth profile not found")
    if profile.device_id != coerce_uuid(device_id):
        raise ValidationError("Bandwidth profile belongs to a different device")
    return profile


def _flush_or_conflict(db: Session, username: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError(f"Credential '{username}' already exists on this device") from exc


def discard_device_credential(adapter: DeviceAdapter, username: str) -> None:
    """Remove a secret whose local row was rolled back after the device create."""
    try:
        adapter.delete_credential(username)
    except DeviceError as exc:
        record_drift("credential.create")
        logger.error(
            "Device drift: secret %s exists on %s without a local credential: %s",
            username,
            adapter.conn.host,
            exc,
        )
        return
    logger.warning(
        "Removed secret %s from %s after the local commit failed", username, adapter.conn.host
    )


class Credentials(ListResponseMixin):
    @staticmethod
    def create(db: Session, ctx: ProvisioningContext, payload: CredentialCreate) -> Credential:
        device = get_or_404(db, Device, payload.device_id, "Device not found")
        profile = _profile_on_device(db, payload.profile_id, device.id)
        credential = Credential(**payload.model_dump())
        db.add(credential)
        _flush_or_conflict(db, payload.username)
        adapter = get_adapter(device)
        username = credential.username
        on_device = False
        try:
            adapter.create_credential(
                username,
                credential.secret,
                profile.name,
                credential.comment,
                disabled=not credential.active,
            )
            on_device = True
            db.commit()
        except Exception:
            db.rollback()
            if on_device:
                discard_device_credential(adapter, username)
            raise
        db.refresh(credential)
        return credential

    @staticmethod
    def get(db: Session, ctx: ProvisioningContext, credential_id) -> Credential:
        return get_or_404(db, Credential, credential_id, "Credential not found")

    @staticmethod
    def list(
        db: Session,
        ctx: ProvisioningContext,
        device_id: str | None = None,
        profile_id: str | None = None,
        active: bool | None = None,
        search: str | None = None,
        order_by: str = "username",
        order_dir: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Credential)
        if device_id:
            query = query.filter(Credential.device_id == coerce_uuid(device_id))
        if profile_id:
            query = query.filter(Credential.profile_id == coerce_uuid(profile_id))
        if active is not None:
            query = query.filter(Credential.active == active)
        if search:
            like = f"%{search.strip()}%"
            query = query.filter(
                or_(Credential.username.ilike(like), Credential.comment.ilike(like))
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"username": Credential.username, "created_at": Credential.created_at},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(
        db: Session,
        ctx: ProvisioningContext,
        credential_id,
        payload: CredentialUpdate,
    ) -> Credential:
        """Commit the edit now and queue the device update for after commit."""
        credential = Credentials.get(db, ctx, credential_id)
        old_username = credential.username
        data = payload.model_dump(exclude_unset=True)
        message: dict = {"username": old_username}
        if data.get("profile_id") and data["profile_id"] != credential.profile_id:
            profile = _profile_on_device(db, data["profile_id"], credential.device_id)
            message["profile"] = profile.name
        if data.get("username") and data["username"] != old_username:
            message["new_username"] = data["username"]
        if data.get("secret") and data["secret"] != credential.secret:
            message["secret"] = data["secret"]
        if "comment" in data and data["comment"] != credential.comment:
            message["comment"] = data["comment"] or ""
        for key, value in data.items():
            if value is not None or key == "comment":
                setattr(credential, key, value)
        _flush_or_conflict(db, credential.username)
        if len(message) > 1:
            device_outbox.enqueue(
                db,
                device_outbox.CREDENTIAL_UPDATE,
                credential.device_id,
                message,
                target_key=device_outbox.credential_target(credential.id),
            )
        db.commit()
        db.refresh(credential)
        return credential

    @staticmethod
    def delete(db: Session, ctx: ProvisioningContext, credential_id) -> None:
        """Delete locally and on the device as one unit; a device refusal rolls back."""
        credential = Credentials.get(db, ctx, credential_id)
        if credential.contract is not None:
            raise ValidationError("Credential is bound to a contract and cannot be deleted")
        username = credential.username
        device = credential.device
        credential_key = credential.id
        db.delete(credential)
        db.flush()
        try:
            get_adapter(device).delete_credential(username)
        except DeviceObjectNotFound:
            logger.warning("PPPoE secret %s already absent on device %s", username, device.id)
        except Exception:
            db.rollback()
            raise
        db.commit()
        emit_event(
            db,
            EventType.credential_deleted,
            {"username": username, "device_id": str(device.id)},
            actor=ctx.actor,
            credential_id=credential_key,
        )

    @staticmethod
    def _set_active(
        db: Session, ctx: ProvisioningContext, credential_id, active: bool
    ) -> Credential:
        credential = Credentials.get(db, ctx, credential_id)
        credential.active = active
        db.flush()
        adapter = get_adapter(credential.device)
        try:
            if active:
                adapter.enable_credential(credential.username)
            else:
                adapter.disable_credential(credential.username)
        except Exception:
            db.rollback()
            raise
        db.commit()
        db.refresh(credential)
        return credential

    @staticmethod
    def enable(db: Session, ctx: ProvisioningContext, credential_id) -> Credential:
        return Credentials._set_active(db, ctx, credential_id, True)

    @staticmethod
    def disable(db: Session, ctx: ProvisioningContext, credential_id) -> Credential:
        return Credentials._set_active(db, ctx, credential_id, False)


credentials = Credentials()
