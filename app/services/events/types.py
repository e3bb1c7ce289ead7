"""Event types and data structures for the event system."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4


class EventType(enum.Enum):
    """Event naming convention: {entity}.{action}"""

    # Contract events
    contract_created = "contract.created"
    contract_status_changed = "contract.status_changed"
    contract_plan_changed = "contract.plan_changed"

    # Credential events
    credential_provisioned = "credential.provisioned"
    credential_deleted = "credential.deleted"

    # Reconciliation events
    reconciliation_completed = "reconciliation.completed"


@dataclass
class Event:
    """An event passed to every registered handler."""

    event_type: EventType
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    actor: str | None = None
    contract_id: UUID | None = None
    credential_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        def _serialize(value: Any) -> Any:
            if isinstance(value, UUID):
                return str(value)
            if isinstance(value, datetime):
                return value.isoformat()
            if isinstance(value, enum.Enum):
                return value.value
            if isinstance(value, dict):
                return {key: _serialize(val) for key, val in value.items()}
            if isinstance(value, (list, tuple)):
                return [_serialize(item) for item in value]
            return value

        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": _serialize(self.payload),
            "context": {
                "actor": self.actor,
                "contract_id": str(self.contract_id) if self.contract_id else None,
                "credential_id": str(self.credential_id) if self.credential_id else None,
            },
        }
