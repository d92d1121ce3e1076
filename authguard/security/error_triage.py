"""
Error Triage
============

Turns any inbound authentication error into a generic, non-leaking
response and, for security-relevant types, a redacted security event.

Every error is first normalized into one shape (message, name, code,
HTTP status), then classified by ordered rules. Validation wording is
tested before credential wording, so "invalid format" stays a validation
error.

handle_auth_error never raises. If triage itself fails, a fixed fallback
response is returned.
"""

from __future__ import annotations

import logging
import re
import traceback
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Final, Mapping, Optional

from authguard.core.config import ErrorHandlingConfig
from authguard.security.constants import (
    BUSINESS_HOURS,
    HASHED_IDENTIFIER_PREFIX,
    HIGH_FREQUENCY_ATTEMPTS,
    MAX_USER_MESSAGE_LENGTH,
    USER_MESSAGE_ELLIPSIS,
)
from authguard.security.events import (
    SecurityEvent,
    SecurityEventType,
    SecurityLog,
    hash_identifier,
    mask_ip_address,
    redact_user_agent,
    sanitize_context_values,
)
from authguard.security.messages import (
    FALLBACK_ERROR_MESSAGE,
    SECURITY_EVENT_DESCRIPTIONS,
    AuthErrorType,
    ErrorSeverity,
    get_error_config,
    should_log_security_event,
)
from authguard.utils.clock import Clock, ms_to_datetime, now_ms

_COMPONENT: Final[str] = "SecurityErrorHandler"

_ERROR_EVENT_TYPES: Final[dict[AuthErrorType, SecurityEventType]] = {
    AuthErrorType.RATE_LIMIT_EXCEEDED: SecurityEventType.RATE_LIMIT_EXCEEDED,
    AuthErrorType.ACCOUNT_LOCKED: SecurityEventType.ACCOUNT_LOCKED,
    AuthErrorType.INVALID_CREDENTIALS: SecurityEventType.INVALID_CREDENTIALS,
    AuthErrorType.NETWORK_ERROR: SecurityEventType.NETWORK_ERROR,
    AuthErrorType.VALIDATION_ERROR: SecurityEventType.VALIDATION_ERROR,
    AuthErrorType.STORAGE_ERROR: SecurityEventType.STORAGE_ERROR,
    AuthErrorType.ENCRYPTION_ERROR: SecurityEventType.ENCRYPTION_ERROR,
    AuthErrorType.CONCURRENT_REQUEST: SecurityEventType.CONCURRENT_REQUEST_BLOCKED,
    AuthErrorType.UNKNOWN_ERROR: SecurityEventType.FAILED_LOGIN,
}

# Ordered (error type, message keywords, exception name keywords)
_EXCEPTION_RULES: Final[tuple[tuple[AuthErrorType, tuple[str, ...], tuple[str, ...]], ...]] = (
    (AuthErrorType.NETWORK_ERROR,
     ("network", "fetch", "connection"),
     ("networkerror", "connectionerror", "timeout")),
    (AuthErrorType.RATE_LIMIT_EXCEEDED,
     ("rate limit", "too many requests", "429"),
     ()),
    (AuthErrorType.ACCOUNT_LOCKED,
     ("locked", "blocked", "suspended"),
     ()),
    (AuthErrorType.VALIDATION_ERROR,
     ("validation", "invalid format", "required field"),
     ("validationerror",)),
    (AuthErrorType.STORAGE_ERROR,
     ("storage", "quota"),
     ("storageerror", "quotaexceedederror")),
    (AuthErrorType.ENCRYPTION_ERROR,
     ("encrypt", "decrypt", "crypto"),
     ("encryptionerror", "decryptionerror", "cryptoerror")),
    (AuthErrorType.INVALID_CREDENTIALS,
     ("auth", "login", "credential", "unauthorized"),
     ()),
)

_HTML_TAGS: Final[re.Pattern[str]] = re.compile(r"<[^>]*>")
_DANGEROUS_CHARS: Final[re.Pattern[str]] = re.compile(r"[<>'\"&]")
_JS_PROTOCOL: Final[re.Pattern[str]] = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER: Final[re.Pattern[str]] = re.compile(r"on\w+=", re.IGNORECASE)

_MOBILE_AGENT: Final[re.Pattern[str]] = re.compile(r"Mobile|Android|iPhone|iPad")
_BOT_AGENT: Final[re.Pattern[str]] = re.compile(r"bot|crawler|spider", re.IGNORECASE)
_CHROME_VERSION: Final[re.Pattern[str]] = re.compile(r"Chrome/(\d+)")
_FIREFOX_VERSION: Final[re.Pattern[str]] = re.compile(r"Firefox/(\d+)")


@dataclass
class ErrorContext:
    """What is known about the attempt that failed."""
    user_identifier: Optional[str] = None
    attempt_count: Optional[int] = None
    timestamp: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    additional_context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SecureErrorResponse:
    """Safe to show: ``user_message`` never reflects the inbound error."""
    user_message: str
    error_type: AuthErrorType
    severity: ErrorSeverity
    should_retry: bool
    retry_delay_ms: Optional[int] = None
    should_log: bool = False
    log_event: Optional[SecurityEvent] = None


class AuthSecurityError(Exception):
    """A pre-classified authentication error carrying its response policy."""

    def __init__(
        self,
        error_type: AuthErrorType,
        context: Optional[ErrorContext] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        config = get_error_config(error_type)
        super().__init__(config.log_message)
        self.type = error_type
        self.code = error_type.value
        self.user_message = config.user_message
        self.log_message = config.log_message
        self.context = context or ErrorContext()
        self.should_retry = config.should_retry
        self.original_error = original_error


@dataclass(frozen=True)
class NormalizedError:
    """Canonical view of any inbound error."""
    message: str
    name: str
    code: Optional[str] = None
    http_status: Optional[int] = None
    kind: str = "unknown"  # none, exception, backend, string or unknown


def _as_status(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_code(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize_error(error: Any) -> NormalizedError:
    """
    Reduce an exception, backend payload, string or None to NormalizedError.

    Backend payloads are mappings, or objects, that carry ``status``,
    ``status_code``/``statusCode`` or ``code``.
    """
    if error is None:
        return NormalizedError(message="", name="", kind="none")

    if isinstance(error, str):
        return NormalizedError(message=error, name="", kind="string")

    if isinstance(error, Mapping):
        status = error.get("status", error.get("status_code", error.get("statusCode")))
        code = error.get("code")
        is_backend = any(k in error for k in ("status", "status_code", "statusCode", "code"))
        return NormalizedError(
            message=str(error.get("message") or ""),
            name=str(error.get("name") or ""),
            code=_as_code(code),
            http_status=_as_status(status),
            kind="backend" if is_backend else "unknown",
        )

    status = getattr(error, "status", getattr(error, "status_code", None))
    code = getattr(error, "code", None)

    if isinstance(error, BaseException):
        return NormalizedError(
            message=str(error),
            name=type(error).__name__,
            code=_as_code(code),
            http_status=_as_status(status),
            kind="exception",
        )

    has_backend_fields = any(hasattr(error, a) for a in ("status", "status_code", "code"))
    return NormalizedError(
        message=str(getattr(error, "message", "") or ""),
        name=type(error).__name__,
        code=_as_code(code),
        http_status=_as_status(status),
        kind="backend" if has_backend_fields else "unknown",
    )


def _classify_exception(normalized: NormalizedError) -> Optional[AuthErrorType]:
    message = normalized.message.lower()
    name = normalized.name.lower()
    for error_type, message_keywords, name_keywords in _EXCEPTION_RULES:
        if any(k in message for k in message_keywords) or any(k in name for k in name_keywords):
            return error_type
    return None


def _classify_backend(normalized: NormalizedError) -> AuthErrorType:
    status = normalized.http_status
    message = normalized.message.lower()

    if status == 429:
        return AuthErrorType.RATE_LIMIT_EXCEEDED
    if status in (401, 403):
        return AuthErrorType.INVALID_CREDENTIALS
    if status is not None and status >= 500:
        return AuthErrorType.NETWORK_ERROR

    if normalized.code in ("invalid_credentials", "email_not_confirmed"):
        return AuthErrorType.INVALID_CREDENTIALS
    if normalized.code == "too_many_requests":
        return AuthErrorType.RATE_LIMIT_EXCEEDED

    if "invalid" in message or "wrong" in message:
        return AuthErrorType.INVALID_CREDENTIALS

    return AuthErrorType.NETWORK_ERROR


def _classify_string(message: str) -> AuthErrorType:
    lowered = message.lower()
    if "rate limit" in lowered or "too many" in lowered:
        return AuthErrorType.RATE_LIMIT_EXCEEDED
    if "network" in lowered or "connection" in lowered:
        return AuthErrorType.NETWORK_ERROR
    if "invalid" in lowered or "wrong" in lowered:
        return AuthErrorType.INVALID_CREDENTIALS
    return AuthErrorType.UNKNOWN_ERROR


def classify_error(error: Any) -> AuthErrorType:
    """Map any inbound error to exactly one AuthErrorType."""
    if isinstance(error, AuthSecurityError):
        return error.type

    normalized = normalize_error(error)

    if normalized.kind == "none":
        return AuthErrorType.UNKNOWN_ERROR

    if normalized.kind == "exception":
        error_type = _classify_exception(normalized)
        if error_type is not None:
            return error_type

    if normalized.kind == "backend" or normalized.http_status is not None or normalized.code is not None:
        return _classify_backend(normalized)

    if normalized.kind == "string":
        return _classify_string(normalized.message)

    return AuthErrorType.UNKNOWN_ERROR


def extract_browser_info(user_agent: str) -> Dict[str, Any]:
    """Coarse browser facts for pattern analysis."""
    info: Dict[str, Any] = {
        "is_chrome": "Chrome" in user_agent,
        "is_firefox": "Firefox" in user_agent,
        "is_safari": "Safari" in user_agent and "Chrome" not in user_agent,
        "is_edge": "Edge" in user_agent,
        "is_mobile": bool(_MOBILE_AGENT.search(user_agent)),
        "is_bot": bool(_BOT_AGENT.search(user_agent)),
    }

    chrome = _CHROME_VERSION.search(user_agent)
    if chrome:
        info["chrome_version"] = int(chrome.group(1))

    firefox = _FIREFOX_VERSION.search(user_agent)
    if firefox:
        info["firefox_version"] = int(firefox.group(1))

    return info


class SecurityErrorHandler:
    """
    Classifies errors, answers with generic messages and logs what matters.

    Usage:
        handler = SecurityErrorHandler(security_log)
        response = handler.handle_auth_error(exc, ErrorContext(user_identifier=email))
        show(response.user_message)
    """

    def __init__(
        self,
        security_log: SecurityLog,
        config: Optional[ErrorHandlingConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._security_log = security_log
        self._config = config or ErrorHandlingConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.triage")

    def classify_error(self, error: Any) -> AuthErrorType:
        return classify_error(error)

    def handle_auth_error(self, error: Any, context: Optional[ErrorContext] = None) -> SecureErrorResponse:
        """
        Triage ``error``.

        Returns:
            A SecureErrorResponse. Never raises.
        """
        context = context or ErrorContext()
        try:
            error_type = self.classify_error(error)
            error_config = get_error_config(error_type)
            sanitized = self.sanitize_context(context)
            should_log = should_log_security_event(error_type)

            log_event = None
            if self._config.enable_logging and should_log:
                log_event = self._log_security_event(error_type, error, sanitized)
                self._log_contextual_information(sanitized, log_event)

            return SecureErrorResponse(
                user_message=self.sanitize_user_message(error_config.user_message),
                error_type=error_type,
                severity=error_config.severity,
                should_retry=error_config.should_retry,
                retry_delay_ms=error_config.retry_delay_ms,
                should_log=should_log,
                log_event=log_event,
            )
        except Exception as e:
            return self._fallback_response(e)

    def sanitize_user_message(self, message: str) -> str:
        """Strip markup and script fragments, cap the length, never return empty."""
        if not self._config.sanitize_messages:
            return message

        sanitized = _HTML_TAGS.sub("", message)
        sanitized = _DANGEROUS_CHARS.sub("", sanitized)
        sanitized = _JS_PROTOCOL.sub("", sanitized)
        sanitized = _EVENT_HANDLER.sub("", sanitized).strip()

        if len(sanitized) > MAX_USER_MESSAGE_LENGTH:
            sanitized = sanitized[:MAX_USER_MESSAGE_LENGTH] + USER_MESSAGE_ELLIPSIS

        return sanitized or FALLBACK_ERROR_MESSAGE.user_message

    def sanitize_context(self, context: ErrorContext) -> ErrorContext:
        """
        Copy of ``context`` that is safe to log.

        The identifier becomes ``hash_<digest>``, user agents lose system
        details, IPv4 addresses lose their last octet, secret-looking keys
        are redacted and long values truncated.
        """
        return ErrorContext(
            user_identifier=(
                HASHED_IDENTIFIER_PREFIX + hash_identifier(context.user_identifier)
                if context.user_identifier else None
            ),
            attempt_count=context.attempt_count,
            timestamp=context.timestamp or ms_to_datetime(self._clock()),
            user_agent=redact_user_agent(context.user_agent) if context.user_agent else None,
            ip_address=mask_ip_address(context.ip_address) if context.ip_address else None,
            session_id=context.session_id,
            additional_context=sanitize_context_values(
                context.additional_context or {}, self._config.max_context_length,
            ),
        )

    def _log_security_event(
        self,
        error_type: AuthErrorType,
        error: Any,
        context: ErrorContext,
    ) -> SecurityEvent:
        stack = None
        if (self._config.include_stack_trace and isinstance(error, BaseException)
                and error.__traceback__ is not None):
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        details = {
            "attempt_count": context.attempt_count,
            "user_agent": context.user_agent,
            "ip_address": context.ip_address,
            "session_id": context.session_id,
            "error_code": type(error).__name__ if isinstance(error, BaseException) else "UnknownError",
            "additional_context": {
                "error_type": error_type.value,
                "user_identifier": context.user_identifier,
                "original_message": str(error),
                "stack": stack,
                **context.additional_context,
            },
        }

        return self._security_log.log_event(
            _ERROR_EVENT_TYPES.get(error_type, SecurityEventType.FAILED_LOGIN),
            details,
            SECURITY_EVENT_DESCRIPTIONS[error_type],
        )

    def _log_contextual_information(self, context: ErrorContext, primary_event: SecurityEvent) -> None:
        """Secondary events correlated to ``primary_event`` by id."""
        try:
            batch = self._security_log.create_event_batch()

            def correlated(action: str, **extra: Any) -> Dict[str, Any]:
                return {
                    "related_event_id": primary_event.id,
                    "component": _COMPONENT,
                    "action": action,
                    "user_identifier": context.user_identifier,
                    **extra,
                }

            if context.user_agent:
                batch.add_event(SecurityEventType.FAILED_LOGIN, {
                    "user_agent": context.user_agent,
                    "additional_context": correlated(
                        "user_agent_analysis", browser_info=extract_browser_info(context.user_agent),
                    ),
                })

            if context.timestamp is not None:
                hour = context.timestamp.hour
                start_hour, end_hour = BUSINESS_HOURS
                batch.add_event(SecurityEventType.FAILED_LOGIN, {
                    "additional_context": correlated(
                        "timing_analysis",
                        time_of_day=hour,
                        day_of_week=context.timestamp.isoweekday() % 7,
                        is_business_hours=start_hour <= hour <= end_hour,
                        is_weekend=context.timestamp.weekday() >= 5,
                    ),
                })

            if context.attempt_count and context.attempt_count > 1:
                batch.add_event(SecurityEventType.RATE_LIMIT_EXCEEDED, {
                    "attempt_count": context.attempt_count,
                    "additional_context": correlated(
                        "attempt_frequency_analysis",
                        is_high_frequency=context.attempt_count >= HIGH_FREQUENCY_ATTEMPTS,
                    ),
                })

            if context.session_id:
                batch.add_event(SecurityEventType.FAILED_LOGIN, {
                    "session_id": context.session_id,
                    "additional_context": correlated(
                        "session_analysis", session_length=len(context.session_id),
                    ),
                })
        except Exception as e:
            self._security_log.log_security_error(SecurityEventType.STORAGE_ERROR, e, {
                "component": _COMPONENT,
                "action": "log_contextual_information",
                "primary_event_id": primary_event.id,
            })

    def _fallback_response(self, error: Exception) -> SecureErrorResponse:
        if self._config.enable_logging:
            try:
                self._security_log.log_security_error(SecurityEventType.STORAGE_ERROR, error, {
                    "component": _COMPONENT,
                    "error_handler_failure": True,
                })
            except Exception as e:
                self._log.error(f"Error handler failure could not be logged: {e}")

        return SecureErrorResponse(
            user_message=FALLBACK_ERROR_MESSAGE.user_message,
            error_type=AuthErrorType.UNKNOWN_ERROR,
            severity=FALLBACK_ERROR_MESSAGE.severity,
            should_retry=FALLBACK_ERROR_MESSAGE.should_retry,
            retry_delay_ms=FALLBACK_ERROR_MESSAGE.retry_delay_ms,
            should_log=True,
        )

    def create_auth_security_error(
        self,
        error_type: AuthErrorType,
        context: Optional[ErrorContext] = None,
        original_error: Optional[BaseException] = None,
    ) -> AuthSecurityError:
        return AuthSecurityError(error_type, context, original_error)

    def handle_network_error(self, error: Any, context: Optional[ErrorContext] = None) -> SecureErrorResponse:
        return self.handle_auth_error(
            self.create_auth_security_error(
                AuthErrorType.NETWORK_ERROR, context,
                error if isinstance(error, BaseException) else None,
            ),
            context,
        )

    def handle_validation_error(self, error: Any, context: Optional[ErrorContext] = None) -> SecureErrorResponse:
        return self.handle_auth_error(
            self.create_auth_security_error(
                AuthErrorType.VALIDATION_ERROR, context,
                error if isinstance(error, BaseException) else None,
            ),
            context,
        )

    def handle_rate_limit_error(
        self,
        context: Optional[ErrorContext] = None,
        attempt_count: Optional[int] = None,
    ) -> SecureErrorResponse:
        context = context or ErrorContext()
        if attempt_count is not None:
            context = replace(context, attempt_count=attempt_count)
        return self.handle_auth_error(
            self.create_auth_security_error(AuthErrorType.RATE_LIMIT_EXCEEDED, context), context,
        )

    def handle_account_lockout_error(
        self,
        context: Optional[ErrorContext] = None,
        lockout_duration_ms: Optional[int] = None,
    ) -> SecureErrorResponse:
        context = context or ErrorContext()
        context = replace(context, additional_context={
            **context.additional_context, "lockout_duration": lockout_duration_ms,
        })
        return self.handle_auth_error(
            self.create_auth_security_error(AuthErrorType.ACCOUNT_LOCKED, context), context,
        )

    def get_configuration(self) -> ErrorHandlingConfig:
        return self._config

    def update_configuration(self, **changes: Any) -> ErrorHandlingConfig:
        self._config = replace(self._config, **changes)
        return self._config
