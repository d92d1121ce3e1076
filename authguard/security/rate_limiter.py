"""
Rate Limiter
============

Per-identifier attempt counting, progressive delay and account lockout.

States, driven by failed attempts, resets and time:
- Open: attempts remain and no lockout is active
- Delayed: open, but the progressive delay since the last attempt has not
  elapsed yet
- Locked: ``lockout_until`` is in the future

A lockout that has run out reads as Open on the next check; the stale
record is replaced on the next failed attempt. This component signals
``can_attempt``; enforcing it is the caller's job.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Optional

from authguard.core.config import RateLimitConfig
from authguard.security.constants import MAX_DELAY_EXPONENT, MAX_LOCKOUT_HORIZON_MS
from authguard.security.events import SecurityEventType, SecurityLog, hash_identifier
from authguard.security.state import SecurityStateManager, SecurityStateRecord, StateListener
from authguard.storage.secure_store import StorageError
from authguard.utils.clock import Clock, now_ms

_COMPONENT = "RateLimiter"


@dataclass(frozen=True)
class RateLimitStatus:
    """What a caller may do right now. Times are milliseconds."""
    is_locked: bool
    can_attempt: bool
    attempts_remaining: int
    remaining_time: int = 0
    progressive_delay: int = 0


class _KeyLock:
    """Per-identifier lock plus the number of callers using it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class RateLimiter:
    """
    Failed-attempt tracking on top of SecurityStateManager.

    Usage:
        limiter = RateLimiter(state_manager, security_log)
        status = limiter.check_rate_limit("a@b.com")
        if status.can_attempt:
            ...
            limiter.increment_failed_attempts("a@b.com")
    """

    def __init__(
        self,
        state_manager: SecurityStateManager,
        security_log: SecurityLog,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._state = state_manager
        self._security_log = security_log
        self._config = config or RateLimitConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.rate_limit")

        self._locks_guard = threading.Lock()
        self._locks: Dict[str, _KeyLock] = {}

    @contextmanager
    def _serialized(self, identifier: str) -> Iterator[None]:
        """Orders increments and resets for one identifier within this process."""
        with self._locks_guard:
            entry = self._locks.setdefault(identifier, _KeyLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[identifier]

    def _open_status(self) -> RateLimitStatus:
        return RateLimitStatus(
            is_locked=False,
            can_attempt=True,
            attempts_remaining=self._config.max_attempts,
        )

    def calculate_progressive_delay(self, failed_attempts: int) -> int:
        """Required wait after ``failed_attempts`` failures, capped at ``max_delay_ms``."""
        if not self._config.enable_progressive_delay or failed_attempts <= 0:
            return 0

        exponent = min(failed_attempts - 1, MAX_DELAY_EXPONENT)
        delay = self._config.base_delay_ms * self._config.delay_multiplier ** exponent
        return int(min(delay, self._config.max_delay_ms))

    def _status_for(self, record: Optional[SecurityStateRecord], now: int) -> RateLimitStatus:
        if record is None:
            return self._open_status()

        if self._config.enable_lockout and record.is_locked(now):
            return RateLimitStatus(
                is_locked=True,
                can_attempt=False,
                attempts_remaining=0,
                remaining_time=record.lockout_until - now,
                progressive_delay=record.progressive_delay or 0,
            )

        if record.lockout_until is not None:
            # Lockout ran out
            return self._open_status()

        attempts_remaining = max(0, self._config.max_attempts - record.failed_attempts)
        progressive_delay = (record.progressive_delay or 0) if self._config.enable_progressive_delay else 0

        delay_left = 0
        if progressive_delay and record.last_attempt is not None:
            delay_left = max(0, record.last_attempt + progressive_delay - now)

        has_attempts = attempts_remaining > 0 or not self._config.enable_lockout
        return RateLimitStatus(
            is_locked=False,
            can_attempt=has_attempts and delay_left == 0,
            attempts_remaining=attempts_remaining,
            remaining_time=delay_left,
            progressive_delay=progressive_delay,
        )

    def check_rate_limit(self, identifier: str) -> RateLimitStatus:
        """
        Current status for ``identifier``. Never writes state.

        ``remaining_time`` is the lockout remainder when locked, the delay
        remainder when delayed, and 0 otherwise.
        """
        if not self._config.enable_rate_limiting:
            return self._open_status()

        return self._status_for(self._state.get_security_state(identifier), self._clock())

    def increment_failed_attempts(self, identifier: str) -> RateLimitStatus:
        """
        Record one failed attempt.

        Returns:
            Status after the attempt was recorded

        Raises:
            StorageError: If the updated state cannot be persisted
        """
        with self._serialized(identifier):
            try:
                record = self._state.get_security_state(identifier)
                now = self._clock()
                hashed = hash_identifier(identifier)

                if record is not None and record.is_locked(now):
                    self._security_log.log_event(SecurityEventType.RATE_LIMIT_EXCEEDED, {
                        "attempt_count": record.failed_attempts,
                        "additional_context": {
                            "user_identifier": hashed,
                            "component": _COMPONENT,
                            "action": "increment_failed_attempts",
                            "already_locked": True,
                            "remaining_lockout_time": record.lockout_until - now,
                        },
                    }, "Attempt to increment failed attempts while account locked")
                    return self._status_for(record, now)

                previous = 0
                if record is not None:
                    if record.lockout_until is not None:
                        self._security_log.log_event(SecurityEventType.LOCKOUT_EXPIRED, {
                            "additional_context": {
                                "user_identifier": hashed,
                                "component": _COMPONENT,
                                "action": "increment_failed_attempts",
                            },
                        })
                    else:
                        previous = record.failed_attempts

                failed_attempts = previous + 1
                progressive_delay = self.calculate_progressive_delay(failed_attempts)
                lockout_until = None

                if self._config.enable_lockout and failed_attempts >= self._config.max_attempts:
                    lockout_until = now + self._config.lockout_duration_ms
                    self._security_log.log_account_locked(
                        identifier, self._config.lockout_duration_ms, failed_attempts,
                    )
                else:
                    self._security_log.log_event(SecurityEventType.FAILED_LOGIN, {
                        "attempt_count": failed_attempts,
                        "additional_context": {
                            "user_identifier": hashed,
                            "component": _COMPONENT,
                            "action": "increment_failed_attempts",
                            "attempts_remaining": max(0, self._config.max_attempts - failed_attempts),
                            "progressive_delay": progressive_delay,
                            "lockout_pending": failed_attempts == self._config.max_attempts - 1,
                        },
                    }, f"Failed attempt {failed_attempts} of {self._config.max_attempts}")

                record = self._state.set_security_state(
                    identifier,
                    failed_attempts=failed_attempts,
                    lockout_until=lockout_until,
                    last_attempt=now,
                    progressive_delay=progressive_delay,
                )
            except StorageError as e:
                self._log.error(f"Error incrementing failed attempts: {e}")
                self._security_log.log_security_error(SecurityEventType.STORAGE_ERROR, e, {
                    "component": _COMPONENT,
                    "action": "increment_failed_attempts",
                    "user_identifier": hash_identifier(identifier),
                })
                raise StorageError("Failed to update security state") from e

            return self._status_for(record, now)

    def reset_failed_attempts(self, identifier: str) -> None:
        """
        Forget every failure and any lockout for ``identifier``.

        Raises:
            StorageError: If the record cannot be removed
        """
        with self._serialized(identifier):
            try:
                self._state.clear_security_state(identifier)
            except StorageError as e:
                self._log.error(f"Error resetting failed attempts: {e}")
                self._security_log.log_security_error(SecurityEventType.STORAGE_ERROR, e, {
                    "component": _COMPONENT,
                    "action": "reset_failed_attempts",
                    "user_identifier": hash_identifier(identifier),
                })
                raise StorageError("Failed to reset security state") from e

    def is_account_locked(self, identifier: str) -> bool:
        return self.check_rate_limit(identifier).is_locked

    def get_remaining_lockout_time(self, identifier: str) -> int:
        """Milliseconds until the lockout ends, 0 when not locked."""
        status = self.check_rate_limit(identifier)
        return status.remaining_time if status.is_locked else 0

    def validate_lockout_time(self, lockout_until: int) -> bool:
        """True if ``lockout_until`` is in the future and at most 24 hours away."""
        now = self._clock()
        return now < lockout_until <= now + MAX_LOCKOUT_HORIZON_MS

    def add_state_change_listener(self, identifier: str, callback: StateListener) -> None:
        self._state.add_state_change_listener(identifier, callback)

    def remove_state_change_listener(self, identifier: str, callback: StateListener) -> None:
        self._state.remove_state_change_listener(identifier, callback)

    def get_config(self) -> RateLimitConfig:
        return self._config

    def update_config(self, **changes: Any) -> RateLimitConfig:
        self._config = replace(self._config, **changes)
        return self._config
