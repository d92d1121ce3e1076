"""
Core module - Configuration, logging and cryptographic primitives.
"""

from authguard.core.config import AuthGuardConfig, ConfigurationError, SecurityLevel
from authguard.core.logging import SecureLogFilter, get_secure_logger

__all__ = [
    "AuthGuardConfig",
    "ConfigurationError",
    "SecurityLevel",
    "SecureLogFilter",
    "get_secure_logger",
]
