"""Live PPPoE session lookup and device reachability checks."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.models.contracts import Contract, ContractStatus, Customer
from app.models.network import Credential, Device
from app.schemas.contracts import LiveConnection
from app.schemas.network import DeviceConnectionTest
from app.services.common import ProvisioningContext, get_or_404
from app.services.contracts import contracts as contracts_service
from app.services.device_adapters import get_adapter
from app.services.exceptions import DeviceError

logger = logging.getLogger(__name__)


def _live_for_credential(db: Session, credential: Credential, **context) -> LiveConnection:
    username = credential.username
    credential_key = credential.id
    adapter = get_adapter(credential.device)
    db.commit()
    session = adapter.find_active_session(username)
    if session is None:
        return LiveConnection(
            online=False,
            username=username,
            message="No active session on device",
            **context,
        )

    credential = db.get(Credential, credential_key)
    credential.last_seen_online = datetime.now(timezone.utc)
    db.commit()
    return LiveConnection(
        online=True,
        username=username,
        address=session.address,
        local_address=session.local_address,
        calling_station_id=session.calling_station_id,
        uptime=session.uptime,
        uptime_seconds=session.uptime_seconds,
        service=session.service,
        message="Connected",
        **context,
    )


def get_live_connection(
    db: Session, ctx: ProvisioningContext, contract_id
) -> LiveConnection:
    contract = contracts_service.get(db, ctx, contract_id)
    context = {"contract_id": contract.id, "customer_id": contract.customer_id}
    credential = contract.credential
    if credential is None:
        return LiveConnection(
            online=False, message="Contract has no PPPoE credential", **context
        )
    return _live_for_credential(db, credential, **context)


def get_customer_live_connection(
    db: Session, ctx: ProvisioningContext, customer_id
) -> LiveConnection:
    """Session of the customer's active contract that has a credential."""
    customer = get_or_404(db, Customer, customer_id, "Customer not found")
    context = {"customer_id": customer.id, "customer_name": customer.name}
    query = (
        db.query(Contract)
        .filter(Contract.customer_id == customer.id)
        .filter(Contract.status == ContractStatus.active)
        .filter(Contract.credential_id.isnot(None))
    )
    contract = ctx.scope(query, Contract).order_by(Contract.created_at.asc()).first()
    if contract is None:
        return LiveConnection(
            online=False,
            message="Customer has no active contract with a PPPoE credential",
            **context,
        )
    return _live_for_credential(db, contract.credential, contract_id=contract.id, **context)


def disconnect(db: Session, ctx: ProvisioningContext, contract_id) -> bool:
    """Drop the contract's live session; False when it was not online."""
    contract = contracts_service.get(db, ctx, contract_id)
    credential = contract.credential
    if credential is None:
        return False
    username = credential.username
    adapter = get_adapter(credential.device)
    db.commit()
    disconnected = adapter.disconnect_session(username)
    logger.info(
        "Disconnect requested for %s (contract %s): %s", username, contract_id, disconnected
    )
    return disconnected


def check_device_connection(
    db: Session, ctx: ProvisioningContext, device_id
) -> DeviceConnectionTest:
    device = get_or_404(db, Device, device_id, "Device not found", ctx=ctx)
    device_key = device.id
    host = device.host
    adapter = get_adapter(device)
    db.commit()
    try:
        identity = adapter.test_connection()
    except DeviceError as exc:
        logger.warning("Connection test to device %s (%s) failed: %s", device_key, host, exc)
        return DeviceConnectionTest(
            device_id=device_key, host=host, reachable=False, message=str(exc)
        )
    logger.info("Connection test to device %s (%s) succeeded", device_key, host)
    return DeviceConnectionTest(
        device_id=device_key, host=host, reachable=True, identity=identity or None
    )
