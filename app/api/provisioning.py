"""
PPPoE Provisioning API Endpoints

Provides REST API for:
- Device reconciliation imports (profiles, credentials, both) and connection tests
- Contract lifecycle transitions and plan changes
- Live session lookup (per contract or customer) and disconnect
- Bandwidth profile and credential CRUD
- Device drift review and failed event retry
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_context, get_db
from app.models.contracts import ContractStatus
from app.schemas.common import ListResponse
from app.schemas.contracts import (
    ContractCreate,
    ContractPlanChange,
    ContractRead,
    ContractUpdate,
    LiveConnection,
)
from app.schemas.events import EventRead
from app.schemas.network import (
    BandwidthProfileCreate,
    BandwidthProfileRead,
    BandwidthProfileUpdate,
    CredentialCreate,
    CredentialRead,
    CredentialUpdate,
    DeviceConnectionTest,
    DeviceOutboxRead,
)
from app.schemas.reconciliation import FullSyncReport, ReconciliationReport
from app.services import monitoring
from app.services.bandwidth_profiles import bandwidth_profiles
from app.services.common import ProvisioningContext
from app.services.contracts import contracts
from app.services.credentials import credentials
from app.services.device_outbox import device_drift
from app.services.events.dispatcher import retry_stored_event
from app.services.reconciliation import reconciliation

router = APIRouter(tags=["pppoe-provisioning"])


# =============================================================================
# DEVICE SYNC ENDPOINTS
# =============================================================================

@router.post(
    "/devices/{device_id}/sync/profiles",
    response_model=ReconciliationReport,
)
def sync_device_profiles(
    device_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Import the device's PPP profiles into local bandwidth profiles."""
    return reconciliation.import_profiles(db, ctx, device_id)


@router.post(
    "/devices/{device_id}/sync/credentials",
    response_model=ReconciliationReport,
)
def sync_device_credentials(
    device_id: UUID,
    profile_id: UUID | None = None,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Import the device's PPP secrets, optionally forcing one profile."""
    return reconciliation.import_credentials(db, ctx, device_id, profile_id)


@router.post(
    "/devices/{device_id}/sync/all",
    response_model=FullSyncReport,
)
def sync_device_all(
    device_id: UUID,
    profile_id: UUID | None = None,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Import profiles, then secrets, in one run with a joint report."""
    return reconciliation.full_sync(db, ctx, device_id, profile_id)


@router.post(
    "/devices/{device_id}/test-connection",
    response_model=DeviceConnectionTest,
)
def device_connection_test(
    device_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return monitoring.check_device_connection(db, ctx, device_id)


# =============================================================================
# CONTRACT ENDPOINTS
# =============================================================================

@router.get("/contracts", response_model=ListResponse[ContractRead])
def list_contracts(
    status_filter: ContractStatus | None = Query(None, alias="status"),
    customer_id: UUID | None = None,
    order_by: str = Query("created_at"),
    order_dir: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.list_response(
        db,
        ctx,
        status=status_filter.value if status_filter else None,
        customer_id=str(customer_id) if customer_id else None,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/contracts", response_model=ContractRead, status_code=status.HTTP_201_CREATED
)
def create_contract(
    payload: ContractCreate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.create(db, ctx, payload)


@router.get("/contracts/{contract_id}", response_model=ContractRead)
def get_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.get(db, ctx, contract_id)


@router.patch("/contracts/{contract_id}", response_model=ContractRead)
def update_contract(
    contract_id: UUID,
    payload: ContractUpdate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.update(db, ctx, contract_id, payload)


@router.post("/contracts/{contract_id}/activate", response_model=ContractRead)
def activate_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Activate a contract, creating its PPPoE credential on first activation."""
    return contracts.activate(db, ctx, contract_id)


@router.post("/contracts/{contract_id}/suspend-financial", response_model=ContractRead)
def suspend_contract_financial(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.suspend_financial(db, ctx, contract_id)


@router.post("/contracts/{contract_id}/suspend-request", response_model=ContractRead)
def suspend_contract_by_request(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.suspend_by_request(db, ctx, contract_id)


@router.post("/contracts/{contract_id}/reactivate", response_model=ContractRead)
def reactivate_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.reactivate(db, ctx, contract_id)


@router.post("/contracts/{contract_id}/cancel", response_model=ContractRead)
def cancel_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.cancel(db, ctx, contract_id)


@router.patch("/contracts/{contract_id}/plan", response_model=ContractRead)
def change_contract_plan(
    contract_id: UUID,
    payload: ContractPlanChange,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return contracts.change_plan(db, ctx, contract_id, payload.plan_id)


@router.get("/contracts/{contract_id}/connection", response_model=LiveConnection)
def get_contract_connection(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Look up the contract's live PPPoE session on its device."""
    return monitoring.get_live_connection(db, ctx, contract_id)


@router.post("/contracts/{contract_id}/disconnect", response_model=dict)
def disconnect_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return {"disconnected": monitoring.disconnect(db, ctx, contract_id)}


@router.get("/customers/{customer_id}/connection", response_model=LiveConnection)
def get_customer_connection(
    customer_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Live session of the customer's active contract."""
    return monitoring.get_customer_live_connection(db, ctx, customer_id)


# =============================================================================
# BANDWIDTH PROFILE ENDPOINTS
# =============================================================================

@router.get("/bandwidth-profiles", response_model=ListResponse[BandwidthProfileRead])
def list_bandwidth_profiles(
    device_id: UUID | None = None,
    active: bool | None = None,
    order_by: str = Query("name"),
    order_dir: str = Query("asc", pattern="^(asc|desc)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return bandwidth_profiles.list_response(
        db,
        ctx,
        device_id=str(device_id) if device_id else None,
        active=active,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/bandwidth-profiles",
    response_model=BandwidthProfileRead,
    status_code=status.HTTP_201_CREATED,
)
def create_bandwidth_profile(
    payload: BandwidthProfileCreate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Create a profile locally and on its device; either both exist or neither."""
    return bandwidth_profiles.create(db, ctx, payload)


@router.get("/bandwidth-profiles/{profile_id}", response_model=BandwidthProfileRead)
def get_bandwidth_profile(
    profile_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return bandwidth_profiles.get(db, ctx, profile_id)


@router.patch("/bandwidth-profiles/{profile_id}", response_model=BandwidthProfileRead)
def update_bandwidth_profile(
    profile_id: UUID,
    payload: BandwidthProfileUpdate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    """Commit the edit; the device follows asynchronously."""
    return bandwidth_profiles.update(db, ctx, profile_id, payload)


@router.delete(
    "/bandwidth-profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT
)
def delete_bandwidth_profile(
    profile_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    bandwidth_profiles.delete(db, ctx, profile_id)


# =============================================================================
# CREDENTIAL ENDPOINTS
# =============================================================================

@router.get("/credentials", response_model=ListResponse[CredentialRead])
def list_credentials(
    device_id: UUID | None = None,
    profile_id: UUID | None = None,
    active: bool | None = None,
    search: str | None = None,
    order_by: str = Query("username"),
    order_dir: str = Query("asc", pattern="^(asc|desc)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.list_response(
        db,
        ctx,
        device_id=str(device_id) if device_id else None,
        profile_id=str(profile_id) if profile_id else None,
        active=active,
        search=search,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/credentials", response_model=CredentialRead, status_code=status.HTTP_201_CREATED
)
def create_credential(
    payload: CredentialCreate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.create(db, ctx, payload)


@router.get("/credentials/{credential_id}", response_model=CredentialRead)
def get_credential(
    credential_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.get(db, ctx, credential_id)


@router.patch("/credentials/{credential_id}", response_model=CredentialRead)
def update_credential(
    credential_id: UUID,
    payload: CredentialUpdate,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.update(db, ctx, credential_id, payload)


@router.delete("/credentials/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_credential(
    credential_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    credentials.delete(db, ctx, credential_id)


@router.post("/credentials/{credential_id}/enable", response_model=CredentialRead)
def enable_credential(
    credential_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.enable(db, ctx, credential_id)


@router.post("/credentials/{credential_id}/disable", response_model=CredentialRead)
def disable_credential(
    credential_id: UUID,
    db: Session = Depends(get_db),
    ctx: ProvisioningContext = Depends(get_context),
):
    return credentials.disable(db, ctx, credential_id)


# =============================================================================
# DEVICE DRIFT ENDPOINTS
# =============================================================================

@router.get("/device-outbox/drift", response_model=ListResponse[DeviceOutboxRead])
def list_device_drift(
    device_id: UUID | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Edits committed locally whose device update failed."""
    return device_drift.list_response(
        db, device_id=device_id, limit=limit, offset=offset
    )


@router.post("/device-outbox/{message_id}/resolve", response_model=DeviceOutboxRead)
def resolve_device_drift(message_id: UUID, db: Session = Depends(get_db)):
    return device_drift.mark_resolved(db, message_id)


@router.post("/device-outbox/{message_id}/retry", response_model=DeviceOutboxRead)
def retry_device_drift(message_id: UUID, db: Session = Depends(get_db)):
    return device_drift.retry(db, message_id)


# =============================================================================
# EVENT ENDPOINTS
# =============================================================================

@router.post("/events/{event_record_id}/retry", response_model=EventRead)
def retry_event(event_record_id: UUID, db: Session = Depends(get_db)):
    """Re-run the handlers that failed for a stored event."""
    return retry_stored_event(db, event_record_id)
