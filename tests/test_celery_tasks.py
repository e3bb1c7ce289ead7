"""Tests for Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest

from app.schemas.reconciliation import FullSyncReport, ReconciliationReport


# =============================================================================
# Device Outbox Task Tests
# =============================================================================


class TestProcessOutboxMessageTask:
    """Tests for device_sync.process_outbox_message task."""

    def test_process_outbox_message_success(self):
        mock_session = MagicMock()
        message = MagicMock()
        message.status.value = "succeeded"

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.device_outbox.process_message", return_value=message
            ) as mock_process:
                from app.tasks.device_sync import process_outbox_message

                result = process_outbox_message("msg-1")

                assert result == "succeeded"
                mock_process.assert_called_once_with(mock_session, "msg-1")
                mock_session.close.assert_called_once()

    def test_process_outbox_message_missing(self):
        mock_session = MagicMock()

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.device_outbox.process_message", return_value=None
            ):
                from app.tasks.device_sync import process_outbox_message

                assert process_outbox_message("msg-1") is None

    def test_process_outbox_message_exception_rollback(self):
        mock_session = MagicMock()

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.device_outbox.process_message",
                side_effect=Exception("Database gone"),
            ):
                from app.tasks.device_sync import process_outbox_message

                with pytest.raises(Exception, match="Database gone"):
                    process_outbox_message("msg-1")

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


class TestDrainDeviceOutboxTask:
    """Tests for device_sync.drain_device_outbox task."""

    def test_drain_device_outbox(self):
        mock_session = MagicMock()

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.device_outbox.drain_pending", return_value=3
            ) as mock_drain:
                from app.tasks.device_sync import BATCH_SIZE, drain_device_outbox

                assert drain_device_outbox() == {"published": 3}
                mock_drain.assert_called_once_with(mock_session, limit=BATCH_SIZE)
                mock_session.close.assert_called_once()


# =============================================================================
# Import Task Tests
# =============================================================================


class TestImportTasks:
    """Tests for device_sync import tasks."""

    def test_import_device_profiles(self):
        mock_session = MagicMock()
        report = ReconciliationReport(created=2, skipped=1)

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.reconciliation.import_profiles", return_value=report
            ) as mock_import:
                from app.tasks.device_sync import import_device_profiles

                result = import_device_profiles("dev-1", actor="noc")

                assert result["created"] == 2
                assert result["skipped"] == 1
                _, ctx, device_id = mock_import.call_args.args
                assert ctx.actor == "noc"
                assert device_id == "dev-1"
                mock_session.close.assert_called_once()

    def test_import_device_credentials_defaults_actor(self):
        mock_session = MagicMock()

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.reconciliation.import_credentials",
                return_value=ReconciliationReport(),
            ) as mock_import:
                from app.tasks.device_sync import import_device_credentials

                import_device_credentials("dev-1", profile_id="prof-1")

                _, ctx, device_id, profile_id = mock_import.call_args.args
                assert ctx.actor == "system"
                assert (device_id, profile_id) == ("dev-1", "prof-1")

    def test_import_exception_rollback(self):
        mock_session = MagicMock()

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.reconciliation.import_profiles",
                side_effect=Exception("Device unreachable"),
            ):
                from app.tasks.device_sync import import_device_profiles

                with pytest.raises(Exception, match="Device unreachable"):
                    import_device_profiles("dev-1")

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()

    def test_full_sync_device(self):
        mock_session = MagicMock()
        report = FullSyncReport(
            device_id="dev-1", profiles=ReconciliationReport(created=1)
        )

        with patch("app.tasks.device_sync.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.device_sync.reconciliation.full_sync", return_value=report
            ) as mock_sync:
                from app.tasks.device_sync import full_sync_device

                result = full_sync_device("dev-1", profile_id="prof-1", actor="noc")

                assert result["device_id"] == "dev-1"
                assert result["profiles"]["created"] == 1
                assert result["success"] is True
                _, ctx, device_id, profile_id = mock_sync.call_args.args
                assert ctx.actor == "noc"
                assert (device_id, profile_id) == ("dev-1", "prof-1")
                mock_session.close.assert_called_once()


class TestTaskMetrics:
    """Task duration is observed with the outcome."""

    def test_success_observed(self):
        with patch("app.tasks.device_sync.SessionLocal", return_value=MagicMock()):
            with patch("app.tasks.device_sync.device_outbox.drain_pending", return_value=0):
                with patch("app.tasks.device_sync.observe_job") as mock_observe:
                    from app.tasks.device_sync import drain_device_outbox

                    drain_device_outbox()

                    name, status, duration = mock_observe.call_args.args
                    assert (name, status) == ("device_outbox_drain", "success")
                    assert duration >= 0

    def test_error_observed(self):
        with patch("app.tasks.device_sync.SessionLocal", return_value=MagicMock()):
            with patch(
                "app.tasks.device_sync.reconciliation.full_sync",
                side_effect=Exception("Device unreachable"),
            ):
                with patch("app.tasks.device_sync.observe_job") as mock_observe:
                    from app.tasks.device_sync import full_sync_device

                    with pytest.raises(Exception, match="Device unreachable"):
                        full_sync_device("dev-1")

                    assert mock_observe.call_args.args[:2] == ("device_full_sync", "error")


# =============================================================================
# Event Retry Task Tests
# =============================================================================


class TestRetryFailedEventsTask:
    """Tests for events.retry_failed_events task."""

    def _session_with(self, events):
        mock_session = MagicMock()
        query = mock_session.query.return_value
        query.filter.return_value = query
        query.order_by.return_value = query
        query.limit.return_value = query
        query.all.return_value = events
        return mock_session

    def test_nothing_to_retry(self):
        mock_session = self._session_with([])

        with patch("app.tasks.events.SessionLocal", return_value=mock_session):
            from app.tasks.events import retry_failed_events

            assert retry_failed_events() == {"retried": 0, "succeeded": 0, "failed": 0}
            mock_session.close.assert_called_once()

    def test_counts_outcomes(self):
        events = [MagicMock(), MagicMock(), MagicMock()]
        mock_session = self._session_with(events)
        dispatcher = MagicMock()
        dispatcher.retry_event.side_effect = [True, False, Exception("boom")]

        with patch("app.tasks.events.SessionLocal", return_value=mock_session):
            with patch(
                "app.services.events.dispatcher.get_dispatcher", return_value=dispatcher
            ):
                from app.tasks.events import retry_failed_events

                result = retry_failed_events()

                assert result == {"retried": 3, "succeeded": 1, "failed": 2}
                assert dispatcher.retry_event.call_count == 3
                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()
