import pytest

from authguard import AuthGuard
from authguard.core.config import (
    AuthGuardConfig,
    LoggingConfig,
    RateLimitConfig,
    StateConfig,
    StorageConfig,
)
from authguard.security.error_triage import ErrorContext
from authguard.security.events import SecurityEventType
from authguard.security.messages import AuthErrorType
from authguard.storage.secure_store import StorageError


def _config(**rate_limit):
    return AuthGuardConfig(
        storage=StorageConfig(durable_path=None, enable_session_tier=False),
        state=StateConfig(enable_background_tasks=False),
        rate_limit=RateLimitConfig(enable_progressive_delay=False, **rate_limit),
        logging=LoggingConfig(enable_console=False),
        environment="test",
    )


@pytest.fixture
def guard(clock):
    with AuthGuard(_config(), clock=clock, sinks=[]) as guard:
        yield guard


def _reject():
    raise PermissionError("Invalid login credentials")


def test_successful_login_returns_result(guard):
    outcome = guard.attempt_login("  Bob@Example.com ", lambda: {"user": "bob"})

    assert outcome.success
    assert outcome.result == {"user": "bob"}
    assert outcome.status.attempts_remaining == 5
    assert guard.security_log.recent_events(SecurityEventType.SUCCESSFUL_LOGIN)


def test_failures_share_one_record_per_normalized_identifier(guard):
    guard.attempt_login("bob@example.com", _reject)
    outcome = guard.attempt_login("BOB@example.com ", _reject)

    assert not outcome.success
    assert outcome.response.error_type is AuthErrorType.INVALID_CREDENTIALS
    assert outcome.status.attempts_remaining == 3
    assert outcome.response.user_message == "Invalid credentials. Please check your email and password."


def test_error_payload_counts_as_failure(guard):
    outcome = guard.attempt_login("bob@example.com", lambda: {"error": {"status": 401}})

    assert not outcome.success
    assert outcome.response.error_type is AuthErrorType.INVALID_CREDENTIALS
    assert outcome.status.attempts_remaining == 4


def test_backend_outage_does_not_spend_attempts(guard, clock):
    def unreachable():
        raise ConnectionError("connection refused")

    for _ in range(6):
        outcome = guard.attempt_login("bob@example.com", unreachable)
        clock.advance(60_000)

    assert not outcome.success
    assert outcome.response.error_type is AuthErrorType.NETWORK_ERROR
    assert outcome.status.attempts_remaining == 5
    assert not guard.rate_limiter.is_account_locked("bob@example.com")
    assert guard.state_manager.get_security_state("bob@example.com") is None


def test_unrecognised_exception_is_triaged_without_counting(guard):
    def broken():
        raise RuntimeError("backend exploded")

    outcome = guard.attempt_login("bob@example.com", broken)

    assert outcome.response.error_type is AuthErrorType.UNKNOWN_ERROR
    assert outcome.status.attempts_remaining == 5


def test_fifth_failure_answers_with_lockout(guard):
    for _ in range(4):
        guard.attempt_login("bob@example.com", _reject)

    outcome = guard.attempt_login("bob@example.com", _reject)

    assert outcome.response.error_type is AuthErrorType.ACCOUNT_LOCKED
    assert outcome.status.is_locked
    assert outcome.response.log_event.details["additional_context"]["lockout_duration"] == 15 * 60 * 1000


def test_locked_account_never_reaches_backend(guard):
    calls = []

    def backend():
        calls.append(1)
        raise PermissionError("invalid login")

    for _ in range(6):
        guard.attempt_login("bob@example.com", backend)

    assert len(calls) == 5
    assert guard.rate_limiter.is_account_locked("bob@example.com")


def test_lockout_expires_and_success_resets(guard, clock):
    for _ in range(5):
        guard.attempt_login("bob@example.com", _reject)
    clock.advance(15 * 60 * 1000 + 1)

    outcome = guard.attempt_login("bob@example.com", lambda: "ok")

    assert outcome.success
    assert guard.state_manager.get_security_state("bob@example.com") is None


def test_invalid_identifier_is_a_validation_error(guard):
    outcome = guard.attempt_login("   ", lambda: "never called")

    assert not outcome.success
    assert outcome.response.error_type is AuthErrorType.VALIDATION_ERROR
    assert not outcome.response.should_retry


def test_overlapping_attempt_is_blocked(guard):
    inner = []

    def backend():
        inner.append(guard.attempt_login("bob@example.com", lambda: "ok"))
        return "ok"

    outcome = guard.attempt_login("bob@example.com", backend)

    assert outcome.success
    assert inner[0].response.error_type is AuthErrorType.CONCURRENT_REQUEST
    assert guard.security_log.recent_events(SecurityEventType.CONCURRENT_REQUEST_BLOCKED)


def test_context_is_hashed_in_events(guard):
    context = ErrorContext(ip_address="203.0.113.9", user_agent="Mozilla/5.0 (X11; Linux)")

    for _ in range(5):
        outcome = guard.attempt_login("bob@example.com", _reject, context)

    details = outcome.response.log_event.details
    assert details["ip_address"] == "203.0.113.xxx"
    assert "bob@example.com" not in str(details)


def test_storage_failure_does_not_block_login(guard, monkeypatch):
    def refuse(identifier):
        raise StorageError("Failed to update security state")

    monkeypatch.setattr(guard.rate_limiter, "increment_failed_attempts", refuse)

    outcome = guard.attempt_login("bob@example.com", _reject)

    assert not outcome.success
    assert outcome.status is None
    assert outcome.response.error_type is AuthErrorType.INVALID_CREDENTIALS


def test_close_is_idempotent(clock):
    guard = AuthGuard(_config(), clock=clock, sinks=[])
    guard.start()
    guard.close()
    guard.close()

    assert not guard.state_manager.running
    assert not guard.monitor.is_running


def test_background_work_starts_when_enabled(clock):
    config = _config().replace(state=StateConfig())

    with AuthGuard(config, clock=clock, sinks=[]) as guard:
        assert guard.state_manager.running
        assert guard.monitor.is_running

    assert not guard.state_manager.running
    assert not guard.monitor.is_running
