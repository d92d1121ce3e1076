"""
Security Event Log
==================

Structured, severity-tagged security events with PII redaction.

Security Features:
- Identifiers are hashed before they enter an event
- User agents lose system details, IPv4 addresses lose their last octet
- Context keys that look like secrets are replaced with [REDACTED]
- Long values are truncated with a visible marker
- Egress only through the secret-filtering logger and the hash-chained
  audit file; nothing is sent over the network

Usage:
    security_log = SecurityLog(LoggingConfig())
    security_log.log_failed_login("a@b.com", attempt_count=2)
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Final, Iterable, List, Mapping, Optional, Protocol

from authguard.core.config import LoggingConfig
from authguard.core.logging import get_secure_logger, mask_sensitive_text
from authguard.security.audit import TamperAwareAuditLog
from authguard.security.constants import (
    EVENT_SOURCE,
    IDENTIFIER_HASH_LENGTH,
    REDACTED_TEXT,
    SENSITIVE_CONTEXT_KEYS,
    TRUNCATION_MARKER,
)
from authguard.utils.clock import Clock, ms_to_datetime, now_ms


class SecurityEventType(Enum):
    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN = "successful_login"
    ACCOUNT_LOCKED = "account_locked"
    LOCKOUT_EXPIRED = "lockout_expired"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_CREDENTIALS = "invalid_credentials"
    NETWORK_ERROR = "network_error"
    VALIDATION_ERROR = "validation_error"
    STORAGE_ERROR = "storage_error"
    ENCRYPTION_ERROR = "encryption_error"
    SECURITY_STATE_CORRUPTED = "security_state_corrupted"
    CONCURRENT_REQUEST_BLOCKED = "concurrent_request_blocked"
    SECURITY_MAINTENANCE = "security_maintenance"


class SecuritySeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LogLevel(Enum):
    """Log level derived from severity. Values are stdlib logging levels."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


_SEVERITY_MAP: Final[dict[SecurityEventType, SecuritySeverity]] = {
    SecurityEventType.FAILED_LOGIN: SecuritySeverity.MEDIUM,
    SecurityEventType.SUCCESSFUL_LOGIN: SecuritySeverity.LOW,
    SecurityEventType.ACCOUNT_LOCKED: SecuritySeverity.HIGH,
    SecurityEventType.LOCKOUT_EXPIRED: SecuritySeverity.LOW,
    SecurityEventType.RATE_LIMIT_EXCEEDED: SecuritySeverity.HIGH,
    SecurityEventType.INVALID_CREDENTIALS: SecuritySeverity.MEDIUM,
    SecurityEventType.NETWORK_ERROR: SecuritySeverity.LOW,
    SecurityEventType.VALIDATION_ERROR: SecuritySeverity.LOW,
    SecurityEventType.STORAGE_ERROR: SecuritySeverity.MEDIUM,
    SecurityEventType.ENCRYPTION_ERROR: SecuritySeverity.HIGH,
    SecurityEventType.SECURITY_STATE_CORRUPTED: SecuritySeverity.CRITICAL,
    SecurityEventType.CONCURRENT_REQUEST_BLOCKED: SecuritySeverity.MEDIUM,
    SecurityEventType.SECURITY_MAINTENANCE: SecuritySeverity.LOW,
}

_LEVEL_MAP: Final[dict[SecuritySeverity, LogLevel]] = {
    SecuritySeverity.LOW: LogLevel.INFO,
    SecuritySeverity.MEDIUM: LogLevel.WARNING,
    SecuritySeverity.HIGH: LogLevel.ERROR,
    SecuritySeverity.CRITICAL: LogLevel.ERROR,
}


def _suffix(template: str, value: Any) -> str:
    return template.format(value) if value else ""


_MESSAGE_TEMPLATES: Final[dict[SecurityEventType, Callable[[Mapping[str, Any]], str]]] = {
    SecurityEventType.FAILED_LOGIN:
        lambda d: "Authentication failed" + _suffix(" (attempt {})", d.get("attempt_count")),
    SecurityEventType.SUCCESSFUL_LOGIN: lambda d: "User successfully authenticated",
    SecurityEventType.ACCOUNT_LOCKED:
        lambda d: "Account locked" + _suffix(" for {}ms", d.get("lockout_duration")),
    SecurityEventType.LOCKOUT_EXPIRED: lambda d: "Account lockout expired, access restored",
    SecurityEventType.RATE_LIMIT_EXCEEDED: lambda d: "Rate limit exceeded, request blocked",
    SecurityEventType.INVALID_CREDENTIALS: lambda d: "Invalid credentials provided",
    SecurityEventType.NETWORK_ERROR: lambda d: "Network error during authentication",
    SecurityEventType.VALIDATION_ERROR: lambda d: "Input validation failed",
    SecurityEventType.STORAGE_ERROR: lambda d: "Security state storage error",
    SecurityEventType.ENCRYPTION_ERROR: lambda d: "Encryption/decryption error",
    SecurityEventType.SECURITY_STATE_CORRUPTED: lambda d: "Security state corruption detected",
    SecurityEventType.CONCURRENT_REQUEST_BLOCKED: lambda d: "Concurrent authentication request blocked",
    SecurityEventType.SECURITY_MAINTENANCE: lambda d: "Security state maintenance",
}

_USER_AGENT_DETAILS: Final[re.Pattern[str]] = re.compile(r"\(([^)]+)\)")
_IPV4_LAST_OCTET: Final[re.Pattern[str]] = re.compile(r"(\d+\.\d+\.\d+)\.\d+")

_id_lock = threading.Lock()
_id_counter = 0


def _next_event_id(timestamp_ms: int) -> str:
    """Process-unique, monotonically numbered event id."""
    global _id_counter
    with _id_lock:
        _id_counter += 1
        return f"sec_{timestamp_ms}_{_id_counter}"


def hash_identifier(identifier: str) -> str:
    """
    Deterministic, non-reversible stand-in for a login identifier.

    Returns:
        First 16 hex characters of SHA-256 over the identifier
    """
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:IDENTIFIER_HASH_LENGTH]


def redact_user_agent(user_agent: str) -> str:
    """Drop the parenthesised platform details from a user agent string."""
    return _USER_AGENT_DETAILS.sub("(system-info-removed)", user_agent)


def mask_ip_address(ip_address: str) -> str:
    """Replace the last octet of the first IPv4 address with 'xxx'."""
    return _IPV4_LAST_OCTET.sub(r"\1.xxx", ip_address, count=1)


def is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_CONTEXT_KEYS)


def truncate(value: str, max_length: int) -> str:
    if len(value) > max_length:
        return value[:max_length] + TRUNCATION_MARKER
    return value


def sanitize_context_values(context: Mapping[str, Any], max_length: int) -> Dict[str, Any]:
    """
    Redact secret-looking keys, mask emails and inline secrets in string
    values and truncate long strings, recursing into nested mappings.
    ``None`` values are dropped.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in context.items():
        if value is None:
            continue
        if is_sensitive_key(str(key)):
            sanitized[key] = REDACTED_TEXT
        elif isinstance(value, str):
            sanitized[key] = truncate(mask_sensitive_text(value), max_length)
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_context_values(value, max_length)
        else:
            sanitized[key] = value
    return sanitized


@dataclass
class SecurityEvent:
    """A structured, redacted security event."""
    id: str
    type: SecurityEventType
    severity: SecuritySeverity
    level: LogLevel
    message: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    source: str = EVENT_SOURCE

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation."""
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "level": self.level.name,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


class EventSink(Protocol):
    def emit(self, event: SecurityEvent) -> None: ...


class LoggerSink:
    """Writes events to a stdlib logger at the event's derived level."""

    __slots__ = ("_logger",)

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def emit(self, event: SecurityEvent) -> None:
        self._logger.log(
            event.level.value,
            f"[SECURITY] [{event.type.value}] {event.message} ({event.id})",
            extra={"security_event": event.to_dict()},
        )


class MemorySink:
    """Bounded buffer of the most recent events."""

    __slots__ = ("_events", "_lock")

    def __init__(self, max_events: int = 256) -> None:
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def emit(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class AuditFileSink:
    """Appends events to the hash-chained audit file."""

    __slots__ = ("_audit_log",)

    def __init__(self, audit_log: TamperAwareAuditLog) -> None:
        self._audit_log = audit_log

    @property
    def audit_log(self) -> TamperAwareAuditLog:
        return self._audit_log

    def emit(self, event: SecurityEvent) -> None:
        self._audit_log.append(event.to_dict())


class SecurityLog:
    """
    Emits security events to the configured sinks.

    Every call returns the constructed event, even when logging is disabled
    or the event is below the minimum level, so callers can correlate
    follow-up events by id. Sink failures are reported on the module logger
    and never reach the caller.
    """

    def __init__(
        self,
        config: Optional[LoggingConfig] = None,
        clock: Optional[Clock] = None,
        sinks: Optional[Iterable[EventSink]] = None,
    ) -> None:
        """
        Args:
            config: Logging configuration
            clock: Millisecond clock for event timestamps and ids
            sinks: Extra sinks. When omitted, a secure logger sink (and an
                audit sink if ``audit_log_path`` is set) are created from
                config.
        """
        self._config = config or LoggingConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.security")
        self._recent = MemorySink(self._config.recent_event_limit)
        self._sinks: List[EventSink] = [self._recent]
        self._sinks.extend(sinks if sinks is not None else self._default_sinks())

    def _default_sinks(self) -> List[EventSink]:
        sinks: List[EventSink] = [
            LoggerSink(get_secure_logger(
                "authguard.security_events",
                level=self._config.min_level,
                enable_console=self._config.enable_console,
                log_dir=self._config.log_dir if self._config.enable_file else None,
                enable_json=self._config.enable_json,
            ))
        ]
        if self._config.audit_log_path is not None:
            sinks.append(AuditFileSink(TamperAwareAuditLog(self._config.audit_log_path)))
        return sinks

    @property
    def config(self) -> LoggingConfig:
        return self._config

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks and sink is not self._recent:
            self._sinks.remove(sink)

    def set_min_level(self, level: str) -> None:
        """Change the minimum level that reaches the sinks."""
        self._config = replace(self._config, min_level=level)

    def set_enabled(self, enabled: bool) -> None:
        self._config = replace(self._config, enabled=enabled)

    def recent_events(self, event_type: Optional[SecurityEventType] = None) -> List[SecurityEvent]:
        """Events recently dispatched, oldest first."""
        events = self._recent.events()
        if event_type is not None:
            events = [e for e in events if e.type is event_type]
        return events

    def _should_dispatch(self, level: LogLevel) -> bool:
        return self._config.enabled and level.value >= getattr(logging, self._config.min_level)

    def sanitize_details(self, details: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply the redaction rules to an event's details."""
        max_length = self._config.max_detail_length
        sanitized: Dict[str, Any] = {}

        for key, value in details.items():
            if value is None:
                continue
            if key == "user_agent" and isinstance(value, str):
                sanitized[key] = redact_user_agent(value)
            elif key == "ip_address" and isinstance(value, str):
                sanitized[key] = mask_ip_address(value)
            elif key == "additional_context" and isinstance(value, Mapping):
                context = dict(value)
                if not self._config.include_stack_trace:
                    context.pop("stack", None)
                sanitized[key] = sanitize_context_values(context, max_length)
            elif isinstance(value, str):
                sanitized[key] = truncate(mask_sensitive_text(value), max_length)
            else:
                sanitized[key] = value

        return sanitized

    def log_event(
        self,
        event_type: SecurityEventType,
        details: Optional[Mapping[str, Any]] = None,
        message: Optional[str] = None,
    ) -> SecurityEvent:
        """
        Build an event and dispatch it.

        Args:
            event_type: What happened
            details: Context; sanitized before use
            message: Overrides the per-type message template

        Returns:
            The event, whether or not it was dispatched
        """
        severity = _SEVERITY_MAP.get(event_type, SecuritySeverity.MEDIUM)
        level = _LEVEL_MAP[severity]
        sanitized = self.sanitize_details(details or {})
        timestamp_ms = self._clock()

        event = SecurityEvent(
            id=_next_event_id(timestamp_ms),
            type=event_type,
            severity=severity,
            level=level,
            message=message or _MESSAGE_TEMPLATES[event_type](sanitized),
            timestamp=ms_to_datetime(timestamp_ms),
            details=sanitized,
        )

        if self._should_dispatch(level):
            for sink in list(self._sinks):
                try:
                    sink.emit(event)
                except Exception as e:
                    self._log.error(f"Security event sink {type(sink).__name__} failed: {e}")

        return event

    def log_failed_login(
        self,
        user_identifier: Optional[str] = None,
        attempt_count: Optional[int] = None,
        additional_context: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        return self.log_event(SecurityEventType.FAILED_LOGIN, {
            "attempt_count": attempt_count,
            "additional_context": {
                "user_identifier": hash_identifier(user_identifier) if user_identifier else None,
                **(additional_context or {}),
            },
        })

    def log_successful_login(
        self,
        user_identifier: Optional[str] = None,
        additional_context: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        return self.log_event(SecurityEventType.SUCCESSFUL_LOGIN, {
            "additional_context": {
                "user_identifier": hash_identifier(user_identifier) if user_identifier else None,
                **(additional_context or {}),
            },
        })

    def log_account_locked(
        self,
        user_identifier: Optional[str] = None,
        lockout_duration: Optional[int] = None,
        attempt_count: Optional[int] = None,
    ) -> SecurityEvent:
        return self.log_event(SecurityEventType.ACCOUNT_LOCKED, {
            "lockout_duration": lockout_duration,
            "attempt_count": attempt_count,
            "additional_context": {
                "user_identifier": hash_identifier(user_identifier) if user_identifier else None,
            },
        })

    def log_rate_limit_exceeded(
        self,
        user_identifier: Optional[str] = None,
        attempt_count: Optional[int] = None,
    ) -> SecurityEvent:
        return self.log_event(SecurityEventType.RATE_LIMIT_EXCEEDED, {
            "attempt_count": attempt_count,
            "additional_context": {
                "user_identifier": hash_identifier(user_identifier) if user_identifier else None,
            },
        })

    def log_security_error(
        self,
        event_type: SecurityEventType,
        error: BaseException,
        additional_context: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        """Record an exception. The traceback is kept only when configured."""
        stack = None
        if self._config.include_stack_trace and error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return self.log_event(event_type, {
            "error_code": type(error).__name__,
            "additional_context": {
                "error_message": str(error),
                "stack": stack,
                **(additional_context or {}),
            },
        })

    @staticmethod
    def hash_identifier(identifier: str) -> str:
        return hash_identifier(identifier)

    def create_event_batch(self) -> SecurityEventBatch:
        """Start a batch of related events."""
        return SecurityEventBatch(self)


class SecurityEventBatch:
    """Collects events logged together so they can be summarized."""

    def __init__(self, security_log: SecurityLog) -> None:
        self._security_log = security_log
        self._events: List[SecurityEvent] = []

    def add_event(
        self,
        event_type: SecurityEventType,
        details: Optional[Mapping[str, Any]] = None,
        message: Optional[str] = None,
    ) -> SecurityEvent:
        event = self._security_log.log_event(event_type, details, message)
        self._events.append(event)
        return event

    @property
    def events(self) -> List[SecurityEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def summary(self) -> Dict[str, Any]:
        """Counts of the batch's events by severity and by type."""
        return {
            "total": len(self._events),
            "by_severity": dict(Counter(e.severity.value for e in self._events)),
            "by_type": dict(Counter(e.type.value for e in self._events)),
        }
