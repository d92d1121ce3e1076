import pytest

from authguard.core.config import MINUTE_MS, RateLimitConfig
from authguard.security.events import SecurityEventType
from authguard.security.rate_limiter import RateLimiter
from authguard.storage.secure_store import StorageError

LOCKOUT_MS = 15 * MINUTE_MS


def _fail(limiter, identifier, times):
    status = None
    for _ in range(times):
        status = limiter.increment_failed_attempts(identifier)
    return status


def test_unknown_identifier_is_open(rate_limiter):
    status = rate_limiter.check_rate_limit("new@example.com")

    assert status.can_attempt
    assert not status.is_locked
    assert status.attempts_remaining == 5
    assert status.remaining_time == 0


def test_fifth_failure_locks_account(rate_limiter, security_log):
    status = _fail(rate_limiter, "u@example.com", 5)

    assert status.is_locked
    assert not status.can_attempt
    assert status.attempts_remaining == 0
    assert 0 < status.remaining_time <= LOCKOUT_MS
    assert rate_limiter.is_account_locked("u@example.com")
    assert len(security_log.recent_events(SecurityEventType.ACCOUNT_LOCKED)) == 1
    assert len(security_log.recent_events(SecurityEventType.FAILED_LOGIN)) == 4


def test_lockout_counts_down(rate_limiter, clock):
    _fail(rate_limiter, "u", 5)
    clock.advance(60_000)

    assert rate_limiter.get_remaining_lockout_time("u") == LOCKOUT_MS - 60_000


def test_increment_while_locked_does_not_count(rate_limiter, state_manager, security_log):
    _fail(rate_limiter, "u", 5)

    status = rate_limiter.increment_failed_attempts("u")

    assert status.is_locked
    assert state_manager.get_security_state("u").failed_attempts == 5
    blocked = security_log.recent_events(SecurityEventType.RATE_LIMIT_EXCEEDED)
    assert blocked[-1].message == "Attempt to increment failed attempts while account locked"


def test_expired_lockout_reads_open_then_starts_fresh(rate_limiter, security_log, clock):
    _fail(rate_limiter, "u", 5)
    clock.advance(LOCKOUT_MS + 1)

    status = rate_limiter.check_rate_limit("u")
    assert not status.is_locked
    assert status.can_attempt
    assert status.attempts_remaining == 5

    status = rate_limiter.increment_failed_attempts("u")
    assert status.attempts_remaining == 4
    assert security_log.recent_events(SecurityEventType.LOCKOUT_EXPIRED)


def test_reset_restores_full_allowance(rate_limiter, state_manager):
    _fail(rate_limiter, "u", 5)

    rate_limiter.reset_failed_attempts("u")

    assert state_manager.get_security_state("u") is None
    status = rate_limiter.check_rate_limit("u")
    assert status.can_attempt
    assert status.attempts_remaining == 5


def test_identifier_locks_are_released(rate_limiter):
    for i in range(200):
        rate_limiter.increment_failed_attempts(f"user{i}@example.com")
        rate_limiter.reset_failed_attempts(f"user{i}@example.com")

    assert rate_limiter._locks == {}


def test_progressive_delay_curve(rate_limiter):
    delays = [rate_limiter.calculate_progressive_delay(n) for n in range(0, 9)]

    assert delays == [0, 1000, 2000, 4000, 8000, 16000, 30000, 30000, 30000]


def test_progressive_delay_disabled(state_manager, security_log, clock):
    limiter = RateLimiter(
        state_manager, security_log, RateLimitConfig(enable_progressive_delay=False), clock=clock,
    )

    assert limiter.calculate_progressive_delay(4) == 0
    status = limiter.increment_failed_attempts("u")
    assert status.can_attempt
    assert status.progressive_delay == 0


def test_delay_blocks_until_elapsed(rate_limiter, clock):
    _fail(rate_limiter, "u", 2)

    status = rate_limiter.check_rate_limit("u")
    assert not status.can_attempt
    assert not status.is_locked
    assert status.remaining_time == 2000

    clock.advance(2000)
    assert rate_limiter.check_rate_limit("u").can_attempt


def test_check_never_writes(rate_limiter, memory_store):
    _fail(rate_limiter, "u", 1)
    token = memory_store.change_token()

    for _ in range(3):
        rate_limiter.check_rate_limit("u")

    assert memory_store.change_token() == token


def test_disabled_rate_limiting_always_allows(state_manager, security_log, clock):
    limiter = RateLimiter(
        state_manager, security_log, RateLimitConfig(enable_rate_limiting=False), clock=clock,
    )
    _fail(limiter, "u", 6)

    assert limiter.check_rate_limit("u").can_attempt


def test_disabled_lockout_never_locks(state_manager, security_log, clock):
    limiter = RateLimiter(
        state_manager, security_log,
        RateLimitConfig(enable_lockout=False, enable_progressive_delay=False), clock=clock,
    )
    status = _fail(limiter, "u", 7)

    assert not status.is_locked
    assert status.can_attempt
    assert status.attempts_remaining == 0


def test_validate_lockout_time(rate_limiter, clock):
    assert rate_limiter.validate_lockout_time(clock() + 1000)
    assert not rate_limiter.validate_lockout_time(clock() - 1)
    assert not rate_limiter.validate_lockout_time(clock() + 25 * 60 * MINUTE_MS)


def test_update_config_changes_threshold(rate_limiter):
    rate_limiter.update_config(max_attempts=2)

    assert _fail(rate_limiter, "u", 2).is_locked
    assert rate_limiter.get_config().max_attempts == 2


def test_storage_failure_surfaces_as_storage_error(rate_limiter, state_manager, security_log, monkeypatch):
    def refuse(*args, **kwargs):
        raise StorageError("Failed to store security state")

    monkeypatch.setattr(state_manager, "set_security_state", refuse)

    with pytest.raises(StorageError, match="Failed to update security state"):
        rate_limiter.increment_failed_attempts("u")
    assert security_log.recent_events(SecurityEventType.STORAGE_ERROR)
    assert rate_limiter._locks == {}


def test_listeners_see_lockout(rate_limiter):
    seen = []
    rate_limiter.add_state_change_listener("u", seen.append)

    _fail(rate_limiter, "u", 5)
    rate_limiter.reset_failed_attempts("u")

    assert seen[-2].lockout_until is not None
    assert seen[-1] is None
