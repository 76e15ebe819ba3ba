from __future__ import annotations

from datetime import timedelta

from discovery.models import ScanDiagnostics
from errors import ConnectionFailure, DiscoveryFailure, ServerReportedError
from services.reporter import StatusReporter
from telemetry.models import DisplaySettings, QuotaGroup, QuotaModel, QuotaSnapshot

from .helpers.fakes import FIXED_NOW


def _snapshot(fraction, grouped=False):
    model = QuotaModel(model_id="m1", label="Model One", remaining_fraction=fraction,
                       reset_time=FIXED_NOW + timedelta(hours=1))
    groups = [QuotaGroup(group_id="g1", name="Pool", members=[model])] if grouped else None
    return QuotaSnapshot(timestamp=FIXED_NOW, connected=True, models=[model], all_models=[model], groups=groups)


def test_same_error_is_reported_once():
    reporter = StatusReporter()

    assert reporter.report_error(ServerReportedError("Account suspended")) is True
    assert reporter.report_error(ServerReportedError("Account suspended")) is False
    assert reporter.report_error(ServerReportedError("Other problem")) is True
    assert [n.kind for n in reporter.get_notifications()] == ["server_error", "server_error"]


def test_successful_snapshot_clears_error_state():
    reporter = StatusReporter()
    reporter.report_error(ServerReportedError("Account suspended"))

    reporter.on_snapshot(_snapshot(0.9), DisplaySettings())

    assert reporter.last_error is None
    assert reporter.report_error(ServerReportedError("Account suspended")) is True


def test_cached_snapshot_keeps_error_state():
    reporter = StatusReporter()
    reporter.report_error(DiscoveryFailure("Language server not found"))
    cached = _snapshot(0.9)
    cached.connected = False
    cached.source = "cache"

    reporter.on_snapshot(cached, DisplaySettings())

    assert reporter.last_error == "Language server not found"
    assert reporter.has_successful_sync is False
    assert reporter.report_error(DiscoveryFailure("Language server not found")) is False


def test_connection_failures_hidden_after_successful_sync():
    reporter = StatusReporter()
    assert reporter.report_error(ConnectionFailure("refused")) is True

    reporter.on_snapshot(_snapshot(0.9), DisplaySettings())

    assert reporter.report_error(ConnectionFailure("refused")) is False
    assert reporter.last_error == "refused"


def test_discovery_failure_carries_guidance_and_diagnostics():
    reporter = StatusReporter()
    diagnostics = ScanDiagnostics(method="process_name", target_process="language_server_linux",
                                  platform="linux", attempts=3)

    reporter.report_error(DiscoveryFailure("not found", diagnostics=diagnostics, guidance=["Antigravity is running"]))

    notification = reporter.get_notifications()[0]
    assert notification.kind == "discovery_failed"
    assert notification.guidance == ["Antigravity is running"]
    assert notification.details["target_process"] == "language_server_linux"


def test_threshold_notifications_fire_once_per_level():
    reporter = StatusReporter()
    settings = DisplaySettings(grouping_enabled=False)

    reporter.on_snapshot(_snapshot(0.25), settings)
    reporter.on_snapshot(_snapshot(0.24), settings)
    reporter.on_snapshot(_snapshot(0.05), settings)
    reporter.on_snapshot(_snapshot(0.04), settings)

    assert [n.kind for n in reporter.get_notifications()] == ["quota_warning", "quota_critical"]


def test_threshold_rearms_after_recovery_and_uses_groups():
    reporter = StatusReporter()
    settings = DisplaySettings()

    reporter.on_snapshot(_snapshot(0.05, grouped=True), settings)
    reporter.on_snapshot(_snapshot(0.95, grouped=True), settings)
    reporter.on_snapshot(_snapshot(0.05, grouped=True), settings)

    notifications = reporter.get_notifications()
    assert [n.kind for n in notifications] == ["quota_critical", "quota_critical"]
    assert "Pool" in notifications[0].message


def test_depleted_and_disabled_notifications_are_silent():
    reporter = StatusReporter()

    reporter.on_snapshot(_snapshot(0.0), DisplaySettings(grouping_enabled=False))
    reporter.on_snapshot(_snapshot(0.05), DisplaySettings(notification_enabled=False))

    assert reporter.get_notifications() == []


def test_notifications_are_bounded():
    reporter = StatusReporter(max_notifications=3)
    for i in range(5):
        reporter.report_error(ServerReportedError(f"error {i}"))

    assert [n.message for n in reporter.get_notifications()] == ["error 2", "error 3", "error 4"]
