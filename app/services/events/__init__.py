"""Event system module.

Usage:
    from app.services.events import emit_event
    from app.services.events.types import EventType

    emit_event(
        db,
        EventType.contract_status_changed,
        {"previous_status": "active", "new_status": "suspended_financial"},
        contract_id=contract.id,
    )
"""

from app.services.events.dispatcher import emit_event
from app.services.events.types import Event, EventType

__all__ = ["emit_event", "Event", "EventType"]
