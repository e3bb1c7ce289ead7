"""Central event dispatcher.

Events are persisted to the event_store table before dispatching so failed
handlers can be retried and the history audited.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.services.common import coerce_uuid, get_or_404
from app.services.events.types import Event, EventType
from app.services.exceptions import ValidationError

logger = logging.getLogger(__name__)


def _handler_name(handler) -> str:
    return handler.__class__.__name__


def _record_outcome(event_record, failures: list[dict[str, str]]) -> None:
    from app.models.event_store import EventStatus

    if failures:
        event_record.status = EventStatus.failed
        event_record.failed_handlers = failures
        event_record.error = json.dumps([failure["error"] for failure in failures])
    else:
        event_record.status = EventStatus.completed
        event_record.failed_handlers = None
        event_record.error = None
    event_record.processed_at = datetime.now(timezone.utc)


class EventDispatcher:
    """Routes events to all registered handlers."""

    def __init__(self):
        self._handlers: list = []

    def register_handler(self, handler):
        self._handlers.append(handler)

    def _run_handlers(
        self, db: Session, event: Event, only: set[str] | None = None
    ) -> list[dict[str, str]]:
        failures: list[dict[str, str]] = []
        for handler in self._handlers:
            name = _handler_name(handler)
            if only and name not in only:
                continue
            try:
                handler.handle(db, event)
            except Exception as exc:
                logger.exception(
                    "Handler %s failed for event %s (%s)",
                    name,
                    event.event_type.value,
                    event.event_id,
                )
                failures.append({"handler": name, "error": str(exc)})
        return failures

    def dispatch(self, db: Session, event: Event) -> None:
        """Persist the event, commit, then call each handler in sequence.

        The commit here is what makes the triggering state change durable
        before any handler queues device work. Handler failures are recorded
        on the event, not raised.
        """
        from app.models.event_store import EventStatus, EventStore

        logger.debug(
            "Dispatching event %s (id=%s)", event.event_type.value, event.event_id
        )
        event_record = EventStore(
            event_id=event.event_id,
            event_type=event.event_type.value,
            payload=event.to_dict()["payload"],
            status=EventStatus.processing,
            actor=event.actor,
            contract_id=event.contract_id,
            credential_id=event.credential_id,
        )
        db.add(event_record)
        db.commit()

        _record_outcome(event_record, self._run_handlers(db, event))
        db.commit()

    def retry_event(self, db: Session, event_record) -> bool:
        """Re-run the handlers that failed for a stored event.

        With no recorded failures every handler runs again.
        """
        from app.models.event_store import EventStatus

        event = Event(
            event_type=EventType(event_record.event_type),
            payload=event_record.payload,
            event_id=event_record.event_id,
            actor=event_record.actor,
            contract_id=event_record.contract_id,
            credential_id=event_record.credential_id,
        )
        previous = {fh["handler"] for fh in event_record.failed_handlers or []}

        event_record.retry_count = (event_record.retry_count or 0) + 1
        event_record.status = EventStatus.processing
        db.commit()

        failures = self._run_handlers(db, event, only=previous or None)
        _record_outcome(event_record, failures)
        db.commit()
        return not failures


_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher, initializing handlers if needed."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
        _initialize_handlers(_dispatcher)
    return _dispatcher


def _initialize_handlers(dispatcher: EventDispatcher) -> None:
    from app.services.events.handlers.network import NetworkIntegrationHandler

    dispatcher.register_handler(NetworkIntegrationHandler())
    logger.info("Event handlers initialized: network")


def retry_stored_event(db: Session, event_record_id):
    """Operator-requested retry of a failed event; returns the updated record."""
    from app.models.event_store import EventStatus, EventStore

    event_record = get_or_404(db, EventStore, event_record_id, "Event not found")
    if event_record.status != EventStatus.failed:
        raise ValidationError("Only failed events can be retried")
    if get_dispatcher().retry_event(db, event_record):
        logger.info("Event %s retried successfully", event_record.event_id)
    else:
        logger.warning(
            "Event %s failed again (retry %s)", event_record.event_id, event_record.retry_count
        )
    db.refresh(event_record)
    return event_record


def emit_event(
    db: Session,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    actor: str | None = None,
    contract_id: UUID | str | None = None,
    credential_id: UUID | str | None = None,
) -> Event:
    """Emit an event to all registered handlers.

    Example:
        emit_event(
            db,
            EventType.contract_status_changed,
            {"previous_status": "draft", "new_status": "active"},
            contract_id=contract.id,
            credential_id=contract.credential_id,
        )
    """
    event = Event(
        event_type=event_type,
        payload=payload,
        actor=actor,
        contract_id=coerce_uuid(contract_id),
        credential_id=coerce_uuid(credential_id),
    )

    get_dispatcher().dispatch(db, event)

    logger.info("Event emitted: %s (id=%s)", event_type.value, event.event_id)

    return event
