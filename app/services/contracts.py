"""Contract lifecycle and PPPoE provisioning.

First activation creates the contract's credential synchronously: the local
row is flushed first, then the device object is created, and a failure in
either step rolls both back. Every other status change is committed first
and reaches the device later through a ``contract.status_changed`` event
and the device outbox.
"""

from __future__ import annotations

import logging
import re
import secrets
import unicodedata
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.contracts import (
    Address,
    Contract,
    ContractStatus,
    Customer,
    CustomerStatus,
    ServicePlan,
)
from app.models.network import Credential
from app.schemas.contracts import ContractCreate, ContractUpdate
from app.services.common import (
    ListResponseMixin,
    ProvisioningContext,
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    validate_enum,
)
from app.services.credentials import discard_device_credential
from app.services.device_adapters import get_adapter
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.exceptions import InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)

USERNAME_MAX_LENGTH = 32
USERNAME_FALLBACK = "client"
SECRET_LENGTH = 12
# Excludes look-alike characters (0/O, 1/l/I).
SECRET_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789@#$"

VALID_TRANSITIONS: dict[ContractStatus, set[ContractStatus]] = {
    ContractStatus.draft: {ContractStatus.active, ContractStatus.canceled},
    ContractStatus.active: {
        ContractStatus.suspended_financial,
        ContractStatus.suspended_request,
        ContractStatus.canceled,
    },
    ContractStatus.suspended_financial: {ContractStatus.active, ContractStatus.canceled},
    ContractStatus.suspended_request: {ContractStatus.active, ContractStatus.canceled},
    ContractStatus.canceled: set(),
}

CUSTOMER_STATUS_MIRROR: dict[ContractStatus, CustomerStatus] = {
    ContractStatus.active: CustomerStatus.active,
    ContractStatus.suspended_financial: CustomerStatus.suspended,
    ContractStatus.suspended_request: CustomerStatus.suspended,
    ContractStatus.canceled: CustomerStatus.canceled,
}


def validate_transition(current: ContractStatus, new: ContractStatus) -> None:
    if new not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot change contract status from {current.value} to {new.value}"
        )


def normalize_username(name: str | None) -> str:
    """Lowercase ASCII letters and digits only, at most 32 characters."""
    ascii_name = (
        unicodedata.normalize("NFKD", name or "")
        .encode("ascii", "ignore")
        .decode("ascii")
        .lower()
    )
    base = re.sub(r"[^a-z0-9]", "", ascii_name)[:USERNAME_MAX_LENGTH]
    return base or USERNAME_FALLBACK


def generate_unique_username(db: Session, device_id, customer_name: str | None) -> str:
    base = normalize_username(customer_name)
    candidate = base
    counter = 1
    while (
        db.query(Credential.id)
        .filter(Credential.device_id == coerce_uuid(device_id))
        .filter(Credential.username == candidate)
        .first()
        is not None
    ):
        suffix = str(counter)
        candidate = f"{base[:USERNAME_MAX_LENGTH - len(suffix)]}{suffix}"
        counter += 1
    return candidate


def generate_secret(length: int = SECRET_LENGTH) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def format_address(address: Address | None) -> str:
    if address is None:
        return "address not provided"
    street = ", ".join(part for part in (address.street, address.number) if part)
    locality = "/".join(part for part in (address.city, address.state) if part)
    area = ", ".join(part for part in (address.district, locality) if part)
    return " - ".join(part for part in (street, area) if part) or "address not provided"


def build_credential_comment(contract: Contract) -> str:
    customer_name = contract.customer.name if contract.customer else "unknown customer"
    return (
        f"Contract #{contract.id} - {customer_name} - "
        f"{format_address(contract.installation_address)}"
    )


class Contracts(ListResponseMixin):
    @staticmethod
    def create(db: Session, ctx: ProvisioningContext, payload: ContractCreate) -> Contract:
        get_or_404(db, Customer, payload.customer_id, "Customer not found")
        get_or_404(db, ServicePlan, payload.plan_id, "Service plan not found")
        if payload.installation_address_id:
            address = get_or_404(db, Address, payload.installation_address_id, "Address not found")
            if address.customer_id != payload.customer_id:
                raise ValidationError("Installation address belongs to another customer")
        data = payload.model_dump()
        if ctx.company_id is not None:
            data["company_id"] = ctx.company_id
        contract = Contract(**data, status=ContractStatus.draft)
        db.add(contract)
        db.flush()
        emit_event(
            db,
            EventType.contract_created,
            {"customer_id": str(contract.customer_id), "plan_id": str(contract.plan_id)},
            actor=ctx.actor,
            contract_id=contract.id,
        )
        db.refresh(contract)
        return contract

    @staticmethod
    def get(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        return get_or_404(db, Contract, contract_id, "Contract not found", ctx=ctx)

    @staticmethod
    def list(
        db: Session,
        ctx: ProvisioningContext,
        status: str | None = None,
        customer_id: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = ctx.scope(db.query(Contract), Contract)
        if status:
            query = query.filter(
                Contract.status == validate_enum(status, ContractStatus, "status")
            )
        if customer_id:
            query = query.filter(Contract.customer_id == coerce_uuid(customer_id))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Contract.created_at, "status": Contract.status},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(
        db: Session, ctx: ProvisioningContext, contract_id, payload: ContractUpdate
    ) -> Contract:
        contract = Contracts.get(db, ctx, contract_id)
        data = payload.model_dump(exclude_unset=True)
        if data.get("installation_address_id"):
            address = get_or_404(
                db, Address, data["installation_address_id"], "Address not found"
            )
            if address.customer_id != contract.customer_id:
                raise ValidationError("Installation address belongs to another customer")
        for key, value in data.items():
            setattr(contract, key, value)
        db.commit()
        db.refresh(contract)
        return contract

    # ===== Status transitions =====

    @staticmethod
    def activate(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        """Activate or reactivate a contract.

        Without a credential this provisions one on the device first; that
        step is all-or-nothing and its errors propagate.
        """
        contract = Contracts.get(db, ctx, contract_id)
        if contract.status == ContractStatus.active:
            return contract
        validate_transition(contract.status, ContractStatus.active)
        provisioned = False
        if contract.credential_id is None:
            _provision_credential(db, ctx, contract)
            provisioned = True
        return _apply_status(db, ctx, contract, ContractStatus.active, provisioned)

    @staticmethod
    def suspend_financial(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        return Contracts.set_status(db, ctx, contract_id, ContractStatus.suspended_financial)

    @staticmethod
    def suspend_by_request(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        return Contracts.set_status(db, ctx, contract_id, ContractStatus.suspended_request)

    @staticmethod
    def cancel(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        return Contracts.set_status(db, ctx, contract_id, ContractStatus.canceled)

    @staticmethod
    def reactivate(db: Session, ctx: ProvisioningContext, contract_id) -> Contract:
        contract = Contracts.get(db, ctx, contract_id)
        if contract.status not in (
            ContractStatus.suspended_financial,
            ContractStatus.suspended_request,
        ):
            raise InvalidTransitionError("Only suspended contracts can be reactivated")
        return Contracts.activate(db, ctx, contract_id)

    @staticmethod
    def set_status(db: Session, ctx: ProvisioningContext, contract_id, status) -> Contract:
        new_status = validate_enum(status, ContractStatus, "status")
        if new_status is None:
            raise ValidationError("status is required")
        if new_status == ContractStatus.active:
            return Contracts.activate(db, ctx, contract_id)
        contract = Contracts.get(db, ctx, contract_id)
        if contract.status == new_status:
            return contract
        validate_transition(contract.status, new_status)
        return _apply_status(db, ctx, contract, new_status)

    # ===== Plan changes =====

    @staticmethod
    def change_plan(db: Session, ctx: ProvisioningContext, contract_id, plan_id) -> Contract:
        """Switch plan locally now; the device profile follows after commit."""
        contract = Contracts.get(db, ctx, contract_id)
        plan = get_or_404(db, ServicePlan, plan_id, "Service plan not found")
        if contract.status == ContractStatus.canceled:
            raise ValidationError("Cannot change the plan of a canceled contract")
        if plan.id == contract.plan_id:
            return contract
        previous_plan_id = contract.plan_id
        credential = contract.credential
        if credential is not None:
            if plan.profile.device_id != credential.device_id:
                raise ValidationError("New plan's profile is on a different device")
            credential.profile_id = plan.profile_id
        contract.plan_id = plan.id
        db.flush()
        emit_event(
            db,
            EventType.contract_plan_changed,
            {
                "previous_plan_id": str(previous_plan_id),
                "new_plan_id": str(plan.id),
                "profile_id": str(plan.profile_id),
            },
            actor=ctx.actor,
            contract_id=contract.id,
            credential_id=contract.credential_id,
        )
        db.refresh(contract)
        return contract


def _provision_credential(
    db: Session, ctx: ProvisioningContext, contract: Contract
) -> Credential:
    profile = contract.plan.profile
    device = profile.device
    if not device.is_active:
        raise ValidationError(f"Device {device.name} is not active")
    username = generate_unique_username(db, device.id, contract.customer.name)
    secret = generate_secret()
    comment = build_credential_comment(contract)
    credential = Credential(
        device_id=device.id,
        profile_id=profile.id,
        username=username,
        secret=secret,
        comment=comment,
        active=True,
    )
    adapter = get_adapter(device)
    on_device = False
    try:
        db.add(credential)
        db.flush()
        adapter.create_credential(username, secret, profile.name, comment)
        on_device = True
        contract.credential_id = credential.id
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if on_device:
            discard_device_credential(adapter, username)
        raise ValidationError(f"Credential {username} already exists on device") from exc
    except Exception:
        db.rollback()
        if on_device:
            discard_device_credential(adapter, username)
        logger.warning(
            "Provisioning credential %s for contract %s failed; local changes rolled back",
            username,
            contract.id,
        )
        raise
    logger.info("Provisioned credential %s for contract %s", username, contract.id)
    emit_event(
        db,
        EventType.credential_provisioned,
        {"username": username, "device_id": str(device.id), "profile": profile.name},
        actor=ctx.actor,
        contract_id=contract.id,
        credential_id=credential.id,
    )
    return credential


def _apply_status(
    db: Session,
    ctx: ProvisioningContext,
    contract: Contract,
    new_status: ContractStatus,
    provisioned: bool = False,
) -> Contract:
    previous = contract.status
    contract.status = new_status
    if new_status == ContractStatus.canceled:
        contract.cancelled_at = datetime.now(timezone.utc)
    customer_status = CUSTOMER_STATUS_MIRROR.get(new_status)
    if customer_status is not None and contract.customer is not None:
        contract.customer.status = customer_status
    emit_event(
        db,
        EventType.contract_status_changed,
        {
            "previous_status": previous.value,
            "new_status": new_status.value,
            "credential_id": str(contract.credential_id) if contract.credential_id else None,
            "credential_provisioned": provisioned,
        },
        actor=ctx.actor,
        contract_id=contract.id,
        credential_id=contract.credential_id,
    )
    db.refresh(contract)
    logger.info(
        "Contract %s status %s -> %s", contract.id, previous.value, new_status.value
    )
    return contract


contracts = Contracts()
