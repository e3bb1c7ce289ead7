from app.tasks.device_sync import (
    drain_device_outbox,
    full_sync_device,
    import_device_credentials,
    import_device_profiles,
    process_outbox_message,
)
from app.tasks.events import retry_failed_events

__all__ = [
    "drain_device_outbox",
    "full_sync_device",
    "import_device_credentials",
    "import_device_profiles",
    "process_outbox_message",
    "retry_failed_events",
]
