"""Tests for contract lifecycle, first-activation provisioning and plan changes."""

import uuid
from decimal import Decimal

import pytest

from app.models.contracts import Contract, ContractStatus, CustomerStatus, ServicePlan
from app.models.device_outbox import DeviceOutboxMessage, OutboxStatus
from app.models.event_store import EventStore
from app.models.network import BandwidthProfile, Credential
from app.schemas.contracts import ContractCreate, ContractUpdate
from app.services import device_outbox
from app.services.common import ProvisioningContext
from app.services.contracts import (
    contracts,
    format_address,
    generate_secret,
    normalize_username,
    validate_transition,
)
from app.services.exceptions import (
    DeviceCommandFailed,
    DeviceUnreachable,
    InvalidTransitionError,
    ResourceNotFound,
    ValidationError,
)

CTX = ProvisioningContext(actor="billing")


def _outbox(db_session, action=None):
    query = db_session.query(DeviceOutboxMessage)
    if action:
        query = query.filter(DeviceOutboxMessage.action == action)
    return query.order_by(DeviceOutboxMessage.created_at.asc()).all()


def _plan_on(db_session, device, name: str) -> ServicePlan:
    profile = BandwidthProfile(
        device_id=device.id, name=name, upload_bps=50_000_000, download_bps=100_000_000
    )
    db_session.add(profile)
    db_session.flush()
    plan = ServicePlan(name=f"Fibra {name}", profile_id=profile.id, price=Decimal("149.90"))
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


# =============================================================================
# First activation
# =============================================================================


class TestFirstActivation:
    def test_provisions_credential_on_device(self, db_session, contract, fake_adapter):
        result = contracts.activate(db_session, CTX, contract.id)

        assert result.status == ContractStatus.active
        assert result.credential_id is not None
        credential = db_session.get(Credential, result.credential_id)
        assert credential.username == "josedasilva"
        assert len(credential.secret) == 12
        assert credential.profile.name == "50M"
        device_secret = fake_adapter.credentials["josedasilva"]
        assert device_secret.secret == credential.secret
        assert device_secret.profile == "50M"
        assert device_secret.comment == (
            f"Contract #{contract.id} - José da Silva - "
            "Rua das Flores, 42 - Centro, Campinas/SP"
        )

    def test_mirrors_customer_status(self, db_session, contract, fake_adapter):
        result = contracts.activate(db_session, CTX, contract.id)

        assert result.customer.status == CustomerStatus.active

    def test_no_enable_queued_after_provisioning(
        self, db_session, contract, fake_adapter, published_outbox
    ):
        contracts.activate(db_session, CTX, contract.id)

        assert _outbox(db_session) == []
        assert published_outbox == []
        assert fake_adapter.called("enable_credential") == []

    def test_device_failure_leaves_no_local_state(self, db_session, contract, fake_adapter):
        fake_adapter.fail_on["create_credential"] = DeviceUnreachable(
            "add /ppp/secret failed: device unreachable", host="10.0.0.1"
        )

        with pytest.raises(DeviceUnreachable):
            contracts.activate(db_session, CTX, contract.id)

        db_session.expire_all()
        reloaded = db_session.get(Contract, contract.id)
        assert reloaded.credential_id is None
        assert reloaded.status == ContractStatus.draft
        assert db_session.query(Credential).count() == 0

    def test_device_rejection_propagates(self, db_session, contract, fake_adapter):
        fake_adapter.fail_on["create_credential"] = DeviceCommandFailed("already exists")

        with pytest.raises(DeviceCommandFailed):
            contracts.activate(db_session, CTX, contract.id)

        assert db_session.query(Credential).count() == 0

    def test_commit_failure_removes_device_secret(
        self, db_session, contract, fake_adapter, commit_fails_after_device_create
    ):
        with pytest.raises(RuntimeError):
            contracts.activate(db_session, CTX, contract.id)

        assert commit_fails_after_device_create == [True]
        assert fake_adapter.called("delete_credential") == [(("josedasilva",), {})]
        assert fake_adapter.credentials == {}
        assert db_session.query(Credential).count() == 0

    def test_orphan_removal_failure_keeps_original_error(
        self, db_session, contract, fake_adapter, commit_fails_after_device_create, caplog
    ):
        fake_adapter.fail_on["delete_credential"] = DeviceUnreachable("timed out")

        with pytest.raises(RuntimeError, match="database connection lost"):
            contracts.activate(db_session, CTX, contract.id)

        assert "josedasilva" in fake_adapter.credentials
        assert "Device drift: secret josedasilva" in caplog.text

    def test_username_collision_gets_suffix(
        self, db_session, device, profile, contract, fake_adapter
    ):
        db_session.add(
            Credential(
                device_id=device.id, profile_id=profile.id, username="josedasilva", secret="x"
            )
        )
        db_session.commit()

        result = contracts.activate(db_session, CTX, contract.id)

        assert result.credential.username == "josedasilva1"

    def test_inactive_device_rejected(self, db_session, device, contract, fake_adapter):
        device.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            contracts.activate(db_session, CTX, contract.id)

        assert fake_adapter.called("create_credential") == []

    def test_activation_is_idempotent(self, db_session, contract, fake_adapter):
        contracts.activate(db_session, CTX, contract.id)
        contracts.activate(db_session, CTX, contract.id)

        assert len(fake_adapter.called("create_credential")) == 1

    def test_records_events(self, db_session, contract, fake_adapter):
        contracts.activate(db_session, CTX, contract.id)

        types = {
            row.event_type
            for row in db_session.query(EventStore).filter(
                EventStore.contract_id == contract.id
            )
        }
        assert {"credential.provisioned", "contract.status_changed"} <= types


# =============================================================================
# Later transitions
# =============================================================================


class TestStatusTransitions:
    @pytest.fixture()
    def active_contract(self, db_session, contract, fake_adapter):
        return contracts.activate(db_session, CTX, contract.id)

    def test_financial_suspension_queues_disable(
        self, db_session, active_contract, published_outbox
    ):
        result = contracts.suspend_financial(db_session, CTX, active_contract.id)

        assert result.status == ContractStatus.suspended_financial
        assert result.customer.status == CustomerStatus.suspended
        messages = _outbox(db_session)
        assert len(messages) == 1
        assert messages[0].action == device_outbox.CREDENTIAL_SUSPEND
        assert messages[0].payload["username"] == "josedasilva"
        assert messages[0].status == OutboxStatus.pending
        assert published_outbox == [messages[0].id]

    def test_status_change_does_not_touch_device_synchronously(
        self, db_session, active_contract, fake_adapter
    ):
        calls_before = len(fake_adapter.calls)

        contracts.suspend_by_request(db_session, CTX, active_contract.id)

        assert len(fake_adapter.calls) == calls_before

    def test_reactivation_queues_enable_and_keeps_credential(
        self, db_session, active_contract, fake_adapter
    ):
        credential_id = active_contract.credential_id
        contracts.suspend_financial(db_session, CTX, active_contract.id)

        result = contracts.reactivate(db_session, CTX, active_contract.id)

        assert result.status == ContractStatus.active
        assert result.credential_id == credential_id
        assert len(fake_adapter.called("create_credential")) == 1
        assert sorted(m.action for m in _outbox(db_session)) == sorted(
            [device_outbox.CREDENTIAL_SUSPEND, device_outbox.CREDENTIAL_ENABLE]
        )

    def test_cancel_keeps_credential_and_disables(
        self, db_session, active_contract, fake_adapter
    ):
        credential_id = active_contract.credential_id

        result = contracts.cancel(db_session, CTX, active_contract.id)

        assert result.status == ContractStatus.canceled
        assert result.cancelled_at is not None
        assert result.credential_id == credential_id
        assert result.customer.status == CustomerStatus.canceled
        assert db_session.get(Credential, credential_id) is not None
        assert [m.action for m in _outbox(db_session)] == [device_outbox.CREDENTIAL_SUSPEND]
        assert fake_adapter.called("delete_credential") == []

    def test_canceled_is_terminal(self, db_session, active_contract):
        contracts.cancel(db_session, CTX, active_contract.id)

        with pytest.raises(InvalidTransitionError):
            contracts.activate(db_session, CTX, active_contract.id)
        with pytest.raises(InvalidTransitionError):
            contracts.suspend_financial(db_session, CTX, active_contract.id)

    def test_suspension_kinds_do_not_switch_directly(self, db_session, active_contract):
        contracts.suspend_financial(db_session, CTX, active_contract.id)

        with pytest.raises(InvalidTransitionError):
            contracts.suspend_by_request(db_session, CTX, active_contract.id)

    def test_repeating_a_status_is_a_no_op(self, db_session, active_contract):
        contracts.suspend_financial(db_session, CTX, active_contract.id)
        contracts.suspend_financial(db_session, CTX, active_contract.id)

        assert len(_outbox(db_session)) == 1

    def test_reactivate_requires_suspension(self, db_session, active_contract):
        with pytest.raises(InvalidTransitionError):
            contracts.reactivate(db_session, CTX, active_contract.id)

    def test_set_status_by_value(self, db_session, active_contract):
        result = contracts.set_status(
            db_session, CTX, active_contract.id, "suspended_request"
        )
        assert result.status == ContractStatus.suspended_request

    def test_set_status_rejects_unknown_value(self, db_session, active_contract):
        with pytest.raises(ValidationError):
            contracts.set_status(db_session, CTX, active_contract.id, "paused")


def test_draft_cannot_be_suspended(db_session, contract, fake_adapter):
    with pytest.raises(InvalidTransitionError):
        contracts.suspend_financial(db_session, CTX, contract.id)


def test_draft_can_be_canceled_without_device_work(db_session, contract, fake_adapter):
    result = contracts.cancel(db_session, CTX, contract.id)

    assert result.status == ContractStatus.canceled
    assert result.credential_id is None
    assert _outbox(db_session) == []
    assert fake_adapter.calls == []


# =============================================================================
# Plan changes
# =============================================================================


class TestChangePlan:
    def test_moves_credential_to_new_profile(
        self, db_session, device, contract, fake_adapter, published_outbox
    ):
        contracts.activate(db_session, CTX, contract.id)
        new_plan = _plan_on(db_session, device, "100M")

        result = contracts.change_plan(db_session, CTX, contract.id, new_plan.id)

        assert result.plan_id == new_plan.id
        assert result.credential.profile_id == new_plan.profile_id
        messages = _outbox(db_session, device_outbox.CREDENTIAL_SET_PROFILE)
        assert len(messages) == 1
        assert messages[0].payload == {"username": "josedasilva", "profile": "100M"}
        assert published_outbox == [messages[0].id]

    def test_plan_on_other_device_rejected(
        self, db_session, other_device, contract, fake_adapter
    ):
        contracts.activate(db_session, CTX, contract.id)
        foreign_plan = _plan_on(db_session, other_device, "100M")

        with pytest.raises(ValidationError):
            contracts.change_plan(db_session, CTX, contract.id, foreign_plan.id)

    def test_draft_contract_changes_plan_without_device_work(
        self, db_session, device, contract, fake_adapter
    ):
        new_plan = _plan_on(db_session, device, "100M")

        result = contracts.change_plan(db_session, CTX, contract.id, new_plan.id)

        assert result.plan_id == new_plan.id
        assert _outbox(db_session) == []

    def test_canceled_contract_rejected(self, db_session, device, contract, fake_adapter):
        contracts.cancel(db_session, CTX, contract.id)
        new_plan = _plan_on(db_session, device, "100M")

        with pytest.raises(ValidationError):
            contracts.change_plan(db_session, CTX, contract.id, new_plan.id)

    def test_unknown_plan(self, db_session, contract):
        with pytest.raises(ResourceNotFound):
            contracts.change_plan(db_session, CTX, contract.id, uuid.uuid4())


# =============================================================================
# CRUD and helpers
# =============================================================================


class TestContractCrud:
    def test_create_starts_as_draft(self, db_session, customer, plan, address):
        company_id = uuid.uuid4()
        ctx = ProvisioningContext(actor="sales", company_id=company_id)

        contract = contracts.create(
            db_session,
            ctx,
            ContractCreate(
                customer_id=customer.id, plan_id=plan.id, installation_address_id=address.id
            ),
        )

        assert contract.status == ContractStatus.draft
        assert contract.credential_id is None
        assert contract.company_id == company_id

    def test_company_scope_hides_other_companies(self, db_session, contract):
        ctx = ProvisioningContext(actor="x", company_id=uuid.uuid4())
        contract.company_id = uuid.uuid4()
        db_session.commit()

        with pytest.raises(ResourceNotFound):
            contracts.get(db_session, ctx, contract.id)
        assert contracts.list(db_session, ctx) == []

    def test_update_billing_fields(self, db_session, contract):
        result = contracts.update(
            db_session, CTX, contract.id, ContractUpdate(billing_day=10)
        )
        assert result.billing_day == 10

    def test_list_filters_by_status(self, db_session, contract):
        assert len(contracts.list(db_session, CTX, status="draft")) == 1
        assert contracts.list(db_session, CTX, status="active") == []


@pytest.mark.parametrize(
    "name,expected",
    [
        ("José da Silva", "josedasilva"),
        ("  Ana-Maria O'Neil 2 ", "anamariaoneil2"),
        ("", "client"),
        (None, "client"),
        ("!!!", "client"),
    ],
)
def test_normalize_username(name, expected):
    assert normalize_username(name) == expected


def test_normalize_username_truncates():
    assert len(normalize_username("a" * 50)) == 32


def test_generate_secret_alphabet():
    secret = generate_secret()
    assert len(secret) == 12
    assert not set(secret) & set("0O1lI")


def test_format_address_missing():
    assert format_address(None) == "address not provided"


def test_validate_transition_allows_active_to_canceled():
    validate_transition(ContractStatus.active, ContractStatus.canceled)
