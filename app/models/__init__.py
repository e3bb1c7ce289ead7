from app.models.contracts import (  # noqa: F401
    Address,
    Contract,
    ContractStatus,
    Customer,
    CustomerStatus,
    ServicePlan,
)
from app.models.device_outbox import DeviceOutboxMessage, OutboxStatus  # noqa: F401
from app.models.event_store import EventStatus, EventStore  # noqa: F401
from app.models.network import (  # noqa: F401
    BandwidthProfile,
    Credential,
    Device,
    DeviceProtocol,
)
