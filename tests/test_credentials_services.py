"""Tests for PPPoE credential management."""

import pytest

from app.models.device_outbox import DeviceOutboxMessage
from app.models.event_store import EventStore
from app.models.network import BandwidthProfile, Credential
from app.schemas.network import CredentialCreate, CredentialUpdate
from app.services import device_outbox
from app.services.common import ProvisioningContext
from app.services.contracts import contracts
from app.services.credentials import credentials
from app.services.exceptions import (
    DeviceCommandFailed,
    DeviceUnreachable,
    ValidationError,
)

CTX = ProvisioningContext(actor="noc")


@pytest.fixture()
def credential(db_session, device, profile, fake_adapter):
    return credentials.create(
        db_session,
        CTX,
        CredentialCreate(
            device_id=device.id, profile_id=profile.id, username="alice", secret="pw1"
        ),
    )


class TestCreateCredential:
    def test_creates_on_device(self, db_session, credential, fake_adapter):
        assert credential.username == "alice"
        assert fake_adapter.credentials["alice"].profile == "50M"
        assert fake_adapter.credentials["alice"].secret == "pw1"

    def test_inactive_credential_is_disabled_on_device(
        self, db_session, device, profile, fake_adapter
    ):
        credentials.create(
            db_session,
            CTX,
            CredentialCreate(
                device_id=device.id,
                profile_id=profile.id,
                username="bob",
                secret="pw2",
                active=False,
            ),
        )

        assert fake_adapter.credentials["bob"].disabled is True
        assert len(fake_adapter.called("create_credential")) == 1
        assert fake_adapter.called("create_credential")[0][1] == {"disabled": True}
        assert fake_adapter.called("disable_credential") == []

    def test_inactive_create_failure_leaves_nothing_on_device(
        self, db_session, device, profile, fake_adapter
    ):
        fake_adapter.fail_on["create_credential"] = DeviceUnreachable("timed out")

        with pytest.raises(DeviceUnreachable):
            credentials.create(
                db_session,
                CTX,
                CredentialCreate(
                    device_id=device.id,
                    profile_id=profile.id,
                    username="bob",
                    secret="pw2",
                    active=False,
                ),
            )

        assert db_session.query(Credential).count() == 0
        assert fake_adapter.credentials == {}

    def test_commit_failure_removes_device_secret(
        self, db_session, device, profile, fake_adapter, commit_fails_after_device_create
    ):
        with pytest.raises(RuntimeError):
            credentials.create(
                db_session,
                CTX,
                CredentialCreate(
                    device_id=device.id, profile_id=profile.id, username="carol", secret="pw3"
                ),
            )

        assert fake_adapter.called("delete_credential") == [(("carol",), {})]
        assert fake_adapter.credentials == {}
        assert db_session.query(Credential).count() == 0

    def test_device_failure_rolls_back(self, db_session, device, profile, fake_adapter):
        fake_adapter.fail_on["create_credential"] = DeviceCommandFailed("rejected")

        with pytest.raises(DeviceCommandFailed):
            credentials.create(
                db_session,
                CTX,
                CredentialCreate(
                    device_id=device.id, profile_id=profile.id, username="bob", secret="x"
                ),
            )

        assert db_session.query(Credential).count() == 0

    def test_profile_from_other_device_rejected(
        self, db_session, device, other_device, fake_adapter
    ):
        foreign = BandwidthProfile(device_id=other_device.id, name="10M")
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(ValidationError):
            credentials.create(
                db_session,
                CTX,
                CredentialCreate(
                    device_id=device.id, profile_id=foreign.id, username="bob", secret="x"
                ),
            )

    def test_duplicate_username_rejected(self, db_session, device, profile, credential):
        with pytest.raises(ValidationError):
            credentials.create(
                db_session,
                CTX,
                CredentialCreate(
                    device_id=device.id, profile_id=profile.id, username="alice", secret="x"
                ),
            )


class TestUpdateCredential:
    def test_edit_queues_device_update(self, db_session, credential, published_outbox):
        updated = credentials.update(
            db_session,
            CTX,
            credential.id,
            CredentialUpdate(secret="new-pw", comment="moved to block B"),
        )

        assert updated.secret == "new-pw"
        message = db_session.query(DeviceOutboxMessage).one()
        assert message.action == device_outbox.CREDENTIAL_UPDATE
        assert message.payload == {
            "username": "alice",
            "secret": "new-pw",
            "comment": "moved to block B",
        }
        assert published_outbox == [message.id]

    def test_outbox_applies_rename(self, db_session, credential, fake_adapter):
        credentials.update(db_session, CTX, credential.id, CredentialUpdate(username="alice2"))
        message = db_session.query(DeviceOutboxMessage).one()

        device_outbox.process_message(db_session, message.id)

        assert "alice2" in fake_adapter.credentials
        assert "alice" not in fake_adapter.credentials

    def test_unchanged_values_queue_nothing(self, db_session, credential):
        credentials.update(db_session, CTX, credential.id, CredentialUpdate(secret="pw1"))

        assert db_session.query(DeviceOutboxMessage).count() == 0


class TestDeleteCredential:
    def test_deletes_locally_and_on_device(self, db_session, credential, fake_adapter):
        credentials.delete(db_session, CTX, credential.id)

        assert db_session.query(Credential).count() == 0
        assert "alice" not in fake_adapter.credentials
        event = (
            db_session.query(EventStore)
            .filter(EventStore.event_type == "credential.deleted")
            .one()
        )
        assert event.payload["username"] == "alice"

    def test_device_failure_keeps_local_row(self, db_session, credential, fake_adapter):
        fake_adapter.fail_on["delete_credential"] = DeviceUnreachable("timed out")

        with pytest.raises(DeviceUnreachable):
            credentials.delete(db_session, CTX, credential.id)

        assert db_session.query(Credential).count() == 1

    def test_missing_on_device_is_tolerated(self, db_session, credential, fake_adapter):
        fake_adapter.credentials.clear()

        credentials.delete(db_session, CTX, credential.id)

        assert db_session.query(Credential).count() == 0

    def test_bound_credential_is_refused(self, db_session, contract, fake_adapter):
        activated = contracts.activate(db_session, CTX, contract.id)

        with pytest.raises(ValidationError):
            credentials.delete(db_session, CTX, activated.credential_id)

        assert fake_adapter.called("delete_credential") == []


class TestToggleCredential:
    def test_disable_and_enable(self, db_session, credential, fake_adapter):
        disabled = credentials.disable(db_session, CTX, credential.id)
        assert disabled.active is False
        assert fake_adapter.credentials["alice"].disabled is True

        enabled = credentials.enable(db_session, CTX, credential.id)
        assert enabled.active is True
        assert fake_adapter.credentials["alice"].disabled is False

    def test_device_failure_keeps_previous_state(self, db_session, credential, fake_adapter):
        fake_adapter.fail_on["disable_credential"] = DeviceUnreachable("timed out")

        with pytest.raises(DeviceUnreachable):
            credentials.disable(db_session, CTX, credential.id)

        db_session.expire_all()
        assert db_session.get(Credential, credential.id).active is True


def test_list_search(db_session, credential):
    assert [c.username for c in credentials.list(db_session, CTX, search="ali")] == ["alice"]
    assert credentials.list(db_session, CTX, search="zzz") == []
