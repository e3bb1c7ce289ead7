from fastapi import Header

from app.db import get_db
from app.services.common import ProvisioningContext, coerce_uuid


def get_context(
    x_actor: str | None = Header(default=None),
    x_company_id: str | None = Header(default=None),
) -> ProvisioningContext:
    """Build the provisioning context from the caller's headers.

    Authentication happens in front of this service; the actor name is only
    recorded on emitted events.
    """
    return ProvisioningContext(
        actor=(x_actor or "api").strip() or "api",
        company_id=coerce_uuid(x_company_id) if x_company_id else None,
    )


__all__ = ["get_context", "get_db"]
