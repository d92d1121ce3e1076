"""
AuthGuard Service
=================

One object that wires the store, event log, state manager, rate limiter,
error triage and monitor together, and runs the guarded login flow:

    guard = AuthGuard(AuthGuardConfig.load())
    outcome = guard.attempt_login(email, lambda: backend.sign_in(email, password))
    if not outcome.success:
        show(outcome.response.user_message)

The credential check itself is the caller's ``authenticate`` callable.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Set

from authguard.core.config import AuthGuardConfig
from authguard.security.error_triage import ErrorContext, SecureErrorResponse, SecurityErrorHandler
from authguard.security.events import EventSink, SecurityLog
from authguard.security.messages import AuthErrorType
from authguard.security.monitor import SecurityMonitor
from authguard.security.rate_limiter import RateLimiter, RateLimitStatus
from authguard.security.state import SecurityStateManager
from authguard.storage.secure_store import SecureStore, StorageError
from authguard.utils.clock import Clock, now_ms
from authguard.utils.validators import ValidationError, normalize_identifier

# Raised error types that spend a login attempt
_COUNTED_ERROR_TYPES = frozenset({
    AuthErrorType.INVALID_CREDENTIALS,
    AuthErrorType.RATE_LIMIT_EXCEEDED,
    AuthErrorType.ACCOUNT_LOCKED,
})


@dataclass(frozen=True)
class LoginOutcome:
    """Result of one guarded login attempt."""
    success: bool
    result: Any = None
    response: Optional[SecureErrorResponse] = None
    status: Optional[RateLimitStatus] = None


class AuthGuard:
    """
    Abuse-prevention front for an authentication backend.

    Attempts for the same identifier are not allowed to overlap within this
    process; the second one is answered with a concurrent-request response.
    """

    def __init__(
        self,
        config: Optional[AuthGuardConfig] = None,
        clock: Optional[Clock] = None,
        store: Optional[SecureStore] = None,
        sinks: Optional[Iterable[EventSink]] = None,
    ) -> None:
        """
        Args:
            config: Full configuration (defaults to AuthGuardConfig.get_instance())
            clock: Millisecond clock shared by every component
            store: Pre-built store, e.g. with explicit tiers
            sinks: Extra security event sinks instead of the configured ones
        """
        self._config = config or AuthGuardConfig.get_instance()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.service")

        self.store = store or SecureStore(self._config.storage, clock=self._clock)
        self.security_log = SecurityLog(self._config.logging, self._clock, sinks)
        self.state_manager = SecurityStateManager(self.store, self._config.state, self._clock)
        self.rate_limiter = RateLimiter(
            self.state_manager, self.security_log, self._config.rate_limit, self._clock,
        )
        self.error_handler = SecurityErrorHandler(
            self.security_log, self._config.error_handling, self._clock,
        )
        self.monitor = SecurityMonitor(
            self.state_manager, self.security_log, self._config.monitor, self._clock,
        )

        self._in_flight_lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._closed = False

    @property
    def config(self) -> AuthGuardConfig:
        return self._config

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Start background cleanup, sync and monitoring, as configured."""
        if not self._config.state.enable_background_tasks:
            return
        self.state_manager.start()
        if not self.monitor.is_running:
            self.monitor.start()

    def close(self) -> None:
        """Stop background work and release storage. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self.monitor.close()
        self.state_manager.cleanup()
        self.store.close()

    def __enter__(self) -> AuthGuard:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ login

    def attempt_login(
        self,
        identifier: str,
        authenticate: Callable[[], Any],
        context: Optional[ErrorContext] = None,
    ) -> LoginOutcome:
        """
        Run one guarded authentication attempt.

        Args:
            identifier: Login handle; normalized before use
            authenticate: Performs the credential check. Returning a mapping
                with a non-empty ``"error"`` counts as a failed attempt. A
                raised exception counts only when it classifies as a
                credential, rate-limit or lockout error.
            context: Request details for triage and logging

        Returns:
            LoginOutcome. Failures carry a SecureErrorResponse.
        """
        context = context or ErrorContext()

        try:
            normalized = normalize_identifier(identifier)
        except ValidationError as e:
            return LoginOutcome(
                success=False,
                response=self.error_handler.handle_validation_error(e, context),
            )

        context = replace(context, user_identifier=normalized)

        with self._in_flight_lock:
            if normalized in self._in_flight:
                concurrent = True
            else:
                concurrent = False
                self._in_flight.add(normalized)

        if concurrent:
            error = self.error_handler.create_auth_security_error(AuthErrorType.CONCURRENT_REQUEST, context)
            return LoginOutcome(success=False, response=self.error_handler.handle_auth_error(error, context))

        try:
            return self._guarded_attempt(normalized, authenticate, context)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(normalized)

    def _guarded_attempt(
        self,
        identifier: str,
        authenticate: Callable[[], Any],
        context: ErrorContext,
    ) -> LoginOutcome:
        status = self.rate_limiter.check_rate_limit(identifier)
        if not status.can_attempt:
            if status.is_locked:
                response = self.error_handler.handle_account_lockout_error(context, status.remaining_time)
            else:
                response = self.error_handler.handle_rate_limit_error(
                    context, self._attempts_used(status),
                )
            return LoginOutcome(success=False, response=response, status=status)

        try:
            result = authenticate()
        except Exception as e:
            if self.error_handler.classify_error(e) in _COUNTED_ERROR_TYPES:
                return self._record_failure(identifier, e, context)
            self._log.warning(f"Authentication backend error not counted as an attempt: {type(e).__name__}")
            return LoginOutcome(
                success=False,
                response=self.error_handler.handle_auth_error(e, context),
                status=status,
            )

        if isinstance(result, Mapping) and result.get("error"):
            return self._record_failure(identifier, result["error"], context)

        try:
            self.rate_limiter.reset_failed_attempts(identifier)
        except StorageError as e:
            self._log.warning(f"Login succeeded but failed attempts were not reset: {e}")

        self.security_log.log_successful_login(identifier)
        return LoginOutcome(
            success=True,
            result=result,
            status=self.rate_limiter.check_rate_limit(identifier),
        )

    def _attempts_used(self, status: RateLimitStatus) -> int:
        return self.rate_limiter.get_config().max_attempts - status.attempts_remaining

    def _record_failure(self, identifier: str, error: Any, context: ErrorContext) -> LoginOutcome:
        status: Optional[RateLimitStatus]
        try:
            status = self.rate_limiter.increment_failed_attempts(identifier)
        except StorageError as e:
            self._log.error(f"Failed attempt could not be recorded: {e}")
            status = None

        if status is not None:
            context = replace(context, attempt_count=self._attempts_used(status))

        if status is not None and status.is_locked:
            response = self.error_handler.handle_account_lockout_error(context, status.remaining_time)
        else:
            response = self.error_handler.handle_auth_error(error, context)

        return LoginOutcome(success=False, response=response, status=status)
