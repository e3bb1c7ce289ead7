"""Tests for bandwidth profile management and profile drift."""

import pytest

from app.models.device_outbox import DeviceOutboxMessage, OutboxStatus
from app.models.network import BandwidthProfile
from app.schemas.network import BandwidthProfileCreate, BandwidthProfileUpdate
from app.services import device_outbox
from app.services.bandwidth_profiles import bandwidth_profiles
from app.services.common import ProvisioningContext
from app.services.device_adapters import DeviceProfile
from app.services.exceptions import DeviceUnreachable, ValidationError

CTX = ProvisioningContext(actor="noc")


class TestCreateProfile:
    def test_creates_locally_and_on_device(self, db_session, device, fake_adapter):
        profile = bandwidth_profiles.create(
            db_session,
            CTX,
            BandwidthProfileCreate(
                device_id=device.id,
                name="100M",
                upload_bps=50_000_000,
                download_bps=100_000_000,
                session_timeout_seconds=86400,
                description="Fibra 100",
            ),
        )

        assert profile.id is not None
        args, _ = fake_adapter.called("create_profile")[0]
        assert args == ("100M", 50_000_000, 100_000_000, 86400, "Fibra 100")
        assert "100M" in fake_adapter.profiles

    def test_device_failure_rolls_back(self, db_session, device, fake_adapter):
        fake_adapter.fail_on["create_profile"] = DeviceUnreachable("timed out")

        with pytest.raises(DeviceUnreachable):
            bandwidth_profiles.create(
                db_session, CTX, BandwidthProfileCreate(device_id=device.id, name="100M")
            )

        assert db_session.query(BandwidthProfile).count() == 0

    def test_duplicate_name_rejected_before_device_call(
        self, db_session, device, profile, fake_adapter
    ):
        with pytest.raises(ValidationError):
            bandwidth_profiles.create(
                db_session, CTX, BandwidthProfileCreate(device_id=device.id, name="50M")
            )

        assert fake_adapter.called("create_profile") == []


class TestUpdateProfile:
    def test_rename_commits_and_queues_device_update(
        self, db_session, profile, fake_adapter, published_outbox
    ):
        updated = bandwidth_profiles.update(
            db_session, CTX, profile.id, BandwidthProfileUpdate(name="50M-pro")
        )

        assert updated.name == "50M-pro"
        message = db_session.query(DeviceOutboxMessage).one()
        assert message.action == device_outbox.PROFILE_UPDATE
        assert message.payload == {"name": "50M", "new_name": "50M-pro"}
        assert published_outbox == [message.id]
        # Nothing reaches the device until the outbox message runs.
        assert fake_adapter.called("update_profile") == []

    def test_failed_device_rename_is_recorded_as_drift(
        self, db_session, profile, fake_adapter
    ):
        bandwidth_profiles.update(
            db_session, CTX, profile.id, BandwidthProfileUpdate(name="50M-pro")
        )
        message = db_session.query(DeviceOutboxMessage).one()

        # The device has no "50M" profile, so the rename cannot be applied.
        device_outbox.process_message(db_session, message.id)

        db_session.expire_all()
        assert db_session.get(BandwidthProfile, profile.id).name == "50M-pro"
        message = db_session.get(DeviceOutboxMessage, message.id)
        assert message.status == OutboxStatus.failed
        assert "not found" in message.last_error
        assert [m.id for m in device_outbox.device_drift.list(db_session)] == [message.id]

    def test_rename_applied_on_device(self, db_session, profile, fake_adapter):
        fake_adapter.profiles["50M"] = DeviceProfile(name="50M")
        bandwidth_profiles.update(
            db_session, CTX, profile.id, BandwidthProfileUpdate(name="50M-pro")
        )
        message = db_session.query(DeviceOutboxMessage).one()

        result = device_outbox.process_message(db_session, message.id)

        assert result.status == OutboxStatus.succeeded
        assert "50M-pro" in fake_adapter.profiles

    def test_rate_change_sends_both_rates(self, db_session, profile, fake_adapter):
        bandwidth_profiles.update(
            db_session, CTX, profile.id, BandwidthProfileUpdate(download_bps=80_000_000)
        )

        message = db_session.query(DeviceOutboxMessage).one()
        assert message.payload == {
            "name": "50M",
            "upload_bps": 25_000_000,
            "download_bps": 80_000_000,
        }

    def test_local_only_change_queues_nothing(self, db_session, profile, fake_adapter):
        updated = bandwidth_profiles.update(
            db_session, CTX, profile.id, BandwidthProfileUpdate(active=False)
        )

        assert updated.active is False
        assert db_session.query(DeviceOutboxMessage).count() == 0

    def test_rename_to_existing_name_rejected(self, db_session, device, profile, fake_adapter):
        db_session.add(BandwidthProfile(device_id=device.id, name="100M"))
        db_session.commit()

        with pytest.raises(ValidationError):
            bandwidth_profiles.update(
                db_session, CTX, profile.id, BandwidthProfileUpdate(name="100M")
            )
        assert db_session.query(DeviceOutboxMessage).count() == 0


class TestDeleteProfile:
    def test_deletes_locally_and_on_device(self, db_session, profile, fake_adapter):
        fake_adapter.profiles["50M"] = DeviceProfile(name="50M")

        bandwidth_profiles.delete(db_session, CTX, profile.id)

        assert db_session.query(BandwidthProfile).count() == 0
        assert "50M" not in fake_adapter.profiles

    def test_profile_in_use_is_refused(self, db_session, profile, plan, fake_adapter):
        with pytest.raises(ValidationError):
            bandwidth_profiles.delete(db_session, CTX, profile.id)

        assert db_session.query(BandwidthProfile).count() == 1
        assert fake_adapter.called("delete_profile") == []

    def test_missing_on_device_is_tolerated(self, db_session, profile, fake_adapter):
        bandwidth_profiles.delete(db_session, CTX, profile.id)

        assert db_session.query(BandwidthProfile).count() == 0

    def test_unreachable_device_keeps_local_row(self, db_session, profile, fake_adapter):
        fake_adapter.fail_on["delete_profile"] = DeviceUnreachable("timed out")

        with pytest.raises(DeviceUnreachable):
            bandwidth_profiles.delete(db_session, CTX, profile.id)

        assert db_session.query(BandwidthProfile).count() == 1


def test_list_by_device(db_session, device, other_device, profile):
    db_session.add(BandwidthProfile(device_id=other_device.id, name="10M"))
    db_session.commit()

    names = [p.name for p in bandwidth_profiles.list(db_session, CTX, device_id=str(device.id))]

    assert names == ["50M"]
