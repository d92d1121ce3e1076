"""
Security Error Messages
=======================

Closed error taxonomy with the generic, non-leaking text shown to users
and the log text recorded for each type.

Every authentication failure is shown with the same wording so that a
caller cannot tell a wrong password from an unknown account.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional


class AuthErrorType(Enum):
    """Every inbound error is classified into exactly one of these."""
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    ENCRYPTION_ERROR = "ENCRYPTION_ERROR"
    CONCURRENT_REQUEST = "CONCURRENT_REQUEST"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class ErrorMessageConfig:
    """Static response policy for one error type."""
    user_message: str
    log_message: str
    severity: ErrorSeverity
    should_retry: bool
    retry_delay_ms: Optional[int] = None


_LOCKOUT_USER_MESSAGE: Final[str] = "Too many login attempts. Please try again later."

SECURITY_ERROR_MESSAGES: Final[dict[AuthErrorType, ErrorMessageConfig]] = {
    AuthErrorType.RATE_LIMIT_EXCEEDED: ErrorMessageConfig(
        user_message=_LOCKOUT_USER_MESSAGE,
        log_message="Rate limit exceeded for authentication attempts",
        severity=ErrorSeverity.HIGH,
        should_retry=True,
        retry_delay_ms=900_000,
    ),
    AuthErrorType.ACCOUNT_LOCKED: ErrorMessageConfig(
        user_message=_LOCKOUT_USER_MESSAGE,
        log_message="Account locked due to excessive failed attempts",
        severity=ErrorSeverity.HIGH,
        should_retry=True,
        retry_delay_ms=900_000,
    ),
    AuthErrorType.INVALID_CREDENTIALS: ErrorMessageConfig(
        user_message="Invalid credentials. Please check your email and password.",
        log_message="Authentication failed with invalid credentials",
        severity=ErrorSeverity.MEDIUM,
        should_retry=True,
        retry_delay_ms=1000,
    ),
    AuthErrorType.NETWORK_ERROR: ErrorMessageConfig(
        user_message="Connection error. Please check your internet connection and try again.",
        log_message="Network error during authentication request",
        severity=ErrorSeverity.LOW,
        should_retry=True,
        retry_delay_ms=5000,
    ),
    AuthErrorType.VALIDATION_ERROR: ErrorMessageConfig(
        user_message="Please check your input and try again.",
        log_message="Input validation failed for authentication request",
        severity=ErrorSeverity.LOW,
        should_retry=False,
    ),
    AuthErrorType.STORAGE_ERROR: ErrorMessageConfig(
        user_message="A temporary error occurred. Please try again.",
        log_message="Security state storage operation failed",
        severity=ErrorSeverity.MEDIUM,
        should_retry=True,
        retry_delay_ms=2000,
    ),
    AuthErrorType.ENCRYPTION_ERROR: ErrorMessageConfig(
        user_message="A security error occurred. Please refresh the page and try again.",
        log_message="Encryption/decryption operation failed",
        severity=ErrorSeverity.HIGH,
        should_retry=False,
    ),
    AuthErrorType.CONCURRENT_REQUEST: ErrorMessageConfig(
        user_message="Please wait for the current request to complete.",
        log_message="Concurrent authentication request blocked",
        severity=ErrorSeverity.MEDIUM,
        should_retry=True,
        retry_delay_ms=1000,
    ),
    AuthErrorType.UNKNOWN_ERROR: ErrorMessageConfig(
        user_message="An unexpected error occurred. Please try again.",
        log_message="Unknown error during authentication process",
        severity=ErrorSeverity.MEDIUM,
        should_retry=True,
        retry_delay_ms=3000,
    ),
}

FALLBACK_ERROR_MESSAGE: Final[ErrorMessageConfig] = ErrorMessageConfig(
    user_message="An unexpected error occurred. Please try again.",
    log_message="Unhandled error in authentication flow",
    severity=ErrorSeverity.MEDIUM,
    should_retry=True,
    retry_delay_ms=3000,
)

SECURITY_EVENT_DESCRIPTIONS: Final[dict[AuthErrorType, str]] = {
    AuthErrorType.RATE_LIMIT_EXCEEDED: "User exceeded maximum authentication attempts",
    AuthErrorType.ACCOUNT_LOCKED: "Account locked due to security policy violation",
    AuthErrorType.INVALID_CREDENTIALS: "Authentication attempt with invalid credentials",
    AuthErrorType.NETWORK_ERROR: "Network connectivity issue during authentication",
    AuthErrorType.VALIDATION_ERROR: "Input validation failure in authentication form",
    AuthErrorType.STORAGE_ERROR: "Security state storage operation failure",
    AuthErrorType.ENCRYPTION_ERROR: "Cryptographic operation failure",
    AuthErrorType.CONCURRENT_REQUEST: "Multiple simultaneous authentication requests detected",
    AuthErrorType.UNKNOWN_ERROR: "Unidentified error in authentication process",
}

# Only these are worth a security event; the rest are ordinary user mistakes
_LOGGED_ERROR_TYPES: Final[frozenset[AuthErrorType]] = frozenset({
    AuthErrorType.RATE_LIMIT_EXCEEDED,
    AuthErrorType.ACCOUNT_LOCKED,
    AuthErrorType.ENCRYPTION_ERROR,
    AuthErrorType.CONCURRENT_REQUEST,
})


def get_error_config(error_type: AuthErrorType) -> ErrorMessageConfig:
    return SECURITY_ERROR_MESSAGES.get(error_type, FALLBACK_ERROR_MESSAGE)


def should_log_security_event(error_type: AuthErrorType) -> bool:
    """True if this error type warrants a security event."""
    return error_type in _LOGGED_ERROR_TYPES


def get_user_message(error_type: AuthErrorType) -> str:
    return get_error_config(error_type).user_message


def get_log_message(error_type: AuthErrorType) -> str:
    return get_error_config(error_type).log_message


def get_error_severity(error_type: AuthErrorType) -> ErrorSeverity:
    return get_error_config(error_type).severity
