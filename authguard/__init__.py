"""
AuthGuard - Authentication Abuse Prevention
===========================================

Rate limiting, lockout and secure error handling for login flows, backed
by encrypted, self-healing state storage.

Security Notice:
- No secrets or raw identifiers are logged
- Users only see generic error messages
- Corrupted state is purged, never trusted
"""

from authguard.core.config import AuthGuardConfig
from authguard.core.logging import get_secure_logger
from authguard.security.error_triage import ErrorContext, SecurityErrorHandler
from authguard.security.events import SecurityLog
from authguard.security.monitor import SecurityMonitor
from authguard.security.rate_limiter import RateLimiter, RateLimitStatus
from authguard.security.state import SecurityStateManager
from authguard.service import AuthGuard, LoginOutcome
from authguard.storage.secure_store import SecureStore, StorageError

__version__ = "0.1.0"

__all__ = [
    "AuthGuard",
    "AuthGuardConfig",
    "ErrorContext",
    "LoginOutcome",
    "RateLimiter",
    "RateLimitStatus",
    "SecureStore",
    "SecurityErrorHandler",
    "SecurityLog",
    "SecurityMonitor",
    "SecurityStateManager",
    "StorageError",
    "get_secure_logger",
    "__version__",
]
