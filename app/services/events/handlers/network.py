"""Queue device changes for committed contract events."""

import logging

from sqlalchemy.orm import Session

from app.models.contracts import ContractStatus
from app.models.network import Credential
from app.services import device_outbox
from app.services.common import coerce_uuid
from app.services.events.types import Event, EventType

logger = logging.getLogger(__name__)

_BLOCKING_STATUSES = {
    ContractStatus.suspended_financial.value,
    ContractStatus.suspended_request.value,
    ContractStatus.canceled.value,
}


class NetworkIntegrationHandler:
    """Turns contract events into device outbox messages.

    Nothing here talks to the device; the outbox runs after commit.
    """

    def handle(self, db: Session, event: Event) -> None:
        if event.event_type == EventType.contract_status_changed:
            self._handle_status_change(db, event)
        elif event.event_type == EventType.contract_plan_changed:
            self._handle_plan_change(db, event)

    def _credential(self, db: Session, event: Event) -> Credential | None:
        credential_id = event.credential_id or event.payload.get("credential_id")
        if not credential_id:
            logger.info(
                "Contract %s has no credential; no device change queued",
                event.contract_id,
            )
            return None
        credential = db.get(Credential, coerce_uuid(credential_id))
        if credential is None:
            logger.warning("Credential %s not found for event %s", credential_id, event.event_id)
        return credential

    def _handle_status_change(self, db: Session, event: Event) -> None:
        new_status = event.payload.get("new_status")
        credential = self._credential(db, event)
        if credential is None:
            return
        if new_status == ContractStatus.active.value:
            if event.payload.get("credential_provisioned"):
                # Created enabled during this activation.
                return
            device_outbox.enqueue(
                db,
                device_outbox.CREDENTIAL_ENABLE,
                credential.device_id,
                {"username": credential.username},
                target_key=device_outbox.credential_target(credential.id),
            )
        elif new_status in _BLOCKING_STATUSES:
            device_outbox.enqueue(
                db,
                device_outbox.CREDENTIAL_SUSPEND,
                credential.device_id,
                {"username": credential.username, "reason": new_status},
                target_key=device_outbox.credential_target(credential.id),
            )

    def _handle_plan_change(self, db: Session, event: Event) -> None:
        credential = self._credential(db, event)
        if credential is None:
            return
        device_outbox.enqueue(
            db,
            device_outbox.CREDENTIAL_SET_PROFILE,
            credential.device_id,
            {"username": credential.username, "profile": credential.profile.name},
            target_key=device_outbox.credential_target(credential.id),
        )
