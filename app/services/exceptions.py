"""Error taxonomy for provisioning and device synchronization."""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for provisioning errors."""

    pass


class ValidationError(ProvisioningError):
    """Bad input from the caller. Never retried."""

    pass


class InvalidTransitionError(ValidationError):
    """Raised when an invalid contract status transition is attempted."""

    pass


class ResourceNotFound(ProvisioningError):
    """A local record could not be found."""

    pass


class DeviceError(ProvisioningError):
    """Base exception for device-side failures."""

    def __init__(self, message: str, host: str | None = None) -> None:
        super().__init__(message)
        self.host = host


class DeviceUnreachable(DeviceError):
    """Transport failure or timeout. Safe to retry."""

    pass


class DeviceCommandFailed(DeviceError):
    """The device rejected the operation."""

    pass


class DeviceObjectNotFound(DeviceError):
    """A find-before-mutate lookup found nothing on the device."""

    pass


class ParseWarning(UserWarning):
    """Non-fatal parse failure on a device value."""

    pass
