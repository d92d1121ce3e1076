import json

import pytest

from authguard.core.config import HOUR_MS, MonitorConfig
from authguard.security.events import SecurityEventType, SecuritySeverity, hash_identifier
from authguard.security.monitor import (
    CHECKSUM_MISMATCH,
    INVALID_STRUCTURE,
    INVALID_TIMESTAMPS,
    SecurityMonitor,
)


@pytest.fixture
def monitor(state_manager, security_log, clock):
    monitor = SecurityMonitor(state_manager, security_log, MonitorConfig(), clock=clock)
    yield monitor
    monitor.close()


def _corrupt_checksum(state_manager, identifier):
    tier = state_manager.store.tiers[-1]
    key = state_manager.storage_key(identifier)
    raw = json.loads(tier.get(key))
    raw["checksum"] = "AAAA"
    tier.set(key, json.dumps(raw))


def _messages(security_log, event_type=None):
    return [e.message for e in security_log.recent_events(event_type)]


def test_store_corruption_is_reported(monitor, state_manager, security_log):
    state_manager.set_security_state("u", failed_attempts=3)
    _corrupt_checksum(state_manager, "u")

    assert state_manager.get_security_state("u") is None

    assert "Security state corruption detected: checksum_mismatch" in _messages(
        security_log, SecurityEventType.SECURITY_STATE_CORRUPTED,
    )
    assert monitor.get_status()["corruption_counts"] == {hash_identifier("u"): 1}


def test_repeated_corruption_escalates_to_critical(monitor, state_manager, security_log):
    severities = []
    for _ in range(3):
        state_manager.set_security_state("u", failed_attempts=1)
        severities.append(monitor.report_corruption("u", CHECKSUM_MISMATCH).severity)

    assert severities == [SecuritySeverity.MEDIUM, SecuritySeverity.HIGH, SecuritySeverity.CRITICAL]
    assert state_manager.get_security_state("u") is None
    assert "Critical corruption detected - security state cleared" in _messages(security_log)


def test_report_hashes_identifier_and_redacts_state_data(monitor):
    report = monitor.report_corruption(
        "bob@example.com", INVALID_STRUCTURE, {"identifier": "bob@example.com", "blob": "x" * 500},
    )

    assert report.identifier == hash_identifier("bob@example.com")
    assert report.severity is SecuritySeverity.HIGH
    assert report.state_data["identifier"] == "[REDACTED]"
    assert report.state_data["blob"].endswith("...[TRUNCATED]")


def test_future_last_attempt_is_repaired(monitor, state_manager, security_log, clock):
    state_manager.set_security_state("u", failed_attempts=1, last_attempt=clock() + 60_000)

    assert not monitor.validate_state_integrity("u")

    assert "Security state repaired successfully" in _messages(security_log)
    assert state_manager.get_security_state("u").last_attempt == clock()
    assert monitor.validate_state_integrity("u")


def test_missing_state_is_sound(monitor):
    assert monitor.validate_state_integrity("nobody")


@pytest.mark.parametrize("corruption_type, count, expected", [
    (CHECKSUM_MISMATCH, 1, SecuritySeverity.MEDIUM),
    (CHECKSUM_MISMATCH, 2, SecuritySeverity.HIGH),
    (INVALID_STRUCTURE, 1, SecuritySeverity.HIGH),
    (INVALID_TIMESTAMPS, 1, SecuritySeverity.MEDIUM),
    (INVALID_TIMESTAMPS, 3, SecuritySeverity.CRITICAL),
    ("something_else", 1, SecuritySeverity.LOW),
])
def test_severity_table(monitor, corruption_type, count, expected):
    assert monitor.determine_severity(corruption_type, count) is expected


def test_health_check_counts(monitor, state_manager, security_log, clock):
    state_manager.set_security_state("lapsed", failed_attempts=5, lockout_until=clock() + 1000)
    clock.advance(2000)
    state_manager.set_security_state("healthy", failed_attempts=1)
    state_manager.set_security_state("skewed", failed_attempts=1, last_attempt=clock() + 60_000)

    health = monitor.perform_health_check()

    assert health.total_states == 3
    assert health.expired_states == 1
    assert health.corrupted_states == 1
    assert health.valid_states == 2
    assert health.oldest_state_age_ms == 2000
    assert health.memory_usage_estimate > 0
    messages = _messages(security_log)
    assert "Security state health check completed - 3 total states" in messages
    assert "Health check detected 1 corrupted security states" in messages


def test_cleanup_logs_removed_count(monitor, state_manager, security_log, clock):
    state_manager.set_security_state("u", failed_attempts=1)
    clock.advance(25 * HOUR_MS)

    assert monitor.cleanup_expired_states() == 1
    assert "Cleaned up 1 expired security states" in _messages(security_log)


def test_force_maintenance_check(monitor, state_manager):
    state_manager.set_security_state("u", failed_attempts=1)

    cleaned, health = monitor.force_maintenance_check()

    assert cleaned == 0
    assert health.total_states == 1


def test_start_twice_is_reported_and_stop_is_idempotent(monitor, security_log):
    monitor.start()
    assert monitor.is_running
    monitor.start()

    monitor.stop()
    monitor.stop()
    assert not monitor.is_running

    messages = _messages(security_log)
    assert "Security monitor started successfully" in messages
    assert "Attempted to start security monitor that is already running" in messages
    assert messages.count("Security monitor stopped") == 1


def test_maintenance_is_not_logged_as_login(monitor, state_manager, security_log):
    state_manager.set_security_state("u", failed_attempts=1)
    monitor.start()
    monitor.force_maintenance_check()
    monitor.stop()

    assert security_log.recent_events(SecurityEventType.SUCCESSFUL_LOGIN) == []
    assert "Forced maintenance check completed" in _messages(
        security_log, SecurityEventType.SECURITY_MAINTENANCE,
    )


def test_update_config_while_running(monitor):
    monitor.start()
    config = monitor.update_config(health_check_interval_ms=60_000)

    assert config.health_check_interval_ms == 60_000
    assert monitor.get_status()["config"].health_check_interval_ms == 60_000
    assert monitor.is_running


def test_close_detaches_from_store(monitor, state_manager, security_log):
    monitor.close()
    state_manager.set_security_state("u", failed_attempts=1)
    _corrupt_checksum(state_manager, "u")

    state_manager.get_security_state("u")

    assert security_log.recent_events(SecurityEventType.SECURITY_STATE_CORRUPTED) == []


def test_corruption_detection_can_be_disabled(state_manager, security_log, clock):
    quiet = SecurityMonitor(
        state_manager, security_log, MonitorConfig(enable_corruption_detection=False), clock=clock,
    )
    state_manager.set_security_state("u", failed_attempts=1)
    _corrupt_checksum(state_manager, "u")

    assert state_manager.get_security_state("u") is None
    assert security_log.recent_events(SecurityEventType.SECURITY_STATE_CORRUPTED) == []
    quiet.close()
