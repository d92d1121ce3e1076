"""
Security module - Event logging, error triage and cipher self-tests.

Security Considerations:
- Users only ever see generic messages; detail stays in redacted logs
- Identifiers are hashed before they are logged
- Corrupted state is purged, never surfaced

State management, rate limiting and monitoring build on the storage
package and are imported from their own modules:
    from authguard.security.state import SecurityStateManager
    from authguard.security.rate_limiter import RateLimiter
    from authguard.security.monitor import SecurityMonitor
"""

from authguard.security.constants import (
    ENCRYPTION_ALGORITHM,
    KEY_DERIVATION_FUNCTION,
    RECORD_FORMAT_VERSION,
)
from authguard.security.messages import (
    AuthErrorType,
    ErrorSeverity,
    ErrorMessageConfig,
    SECURITY_ERROR_MESSAGES,
    get_error_config,
    should_log_security_event,
)
from authguard.security.events import (
    SecurityEvent,
    SecurityEventBatch,
    SecurityEventType,
    SecurityLog,
    SecuritySeverity,
    hash_identifier,
)
from authguard.security.error_triage import (
    AuthSecurityError,
    ErrorContext,
    SecureErrorResponse,
    SecurityErrorHandler,
    classify_error,
    normalize_error,
)
from authguard.security.hardening import CryptoSelfTest, verify_cipher
from authguard.security.audit import TamperAwareAuditLog

__all__ = [
    # Constants
    "ENCRYPTION_ALGORITHM",
    "KEY_DERIVATION_FUNCTION",
    "RECORD_FORMAT_VERSION",
    # Messages
    "AuthErrorType",
    "ErrorSeverity",
    "ErrorMessageConfig",
    "SECURITY_ERROR_MESSAGES",
    "get_error_config",
    "should_log_security_event",
    # Events
    "SecurityEvent",
    "SecurityEventBatch",
    "SecurityEventType",
    "SecurityLog",
    "SecuritySeverity",
    "hash_identifier",
    # Error triage
    "AuthSecurityError",
    "ErrorContext",
    "SecureErrorResponse",
    "SecurityErrorHandler",
    "classify_error",
    "normalize_error",
    # Hardening
    "CryptoSelfTest",
    "verify_cipher",
    # Audit
    "TamperAwareAuditLog",
]
