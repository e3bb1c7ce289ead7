"""Event handlers module.

- NetworkIntegrationHandler: queues device changes for contract events
"""

from app.services.events.handlers.network import NetworkIntegrationHandler

__all__ = ["NetworkIntegrationHandler"]
