"""
Security Constants
==================

Fixed policy values used throughout the package. These bound what
configuration may request and should not be changed without a security
review.
"""

from typing import Final

# Encryption Settings
ENCRYPTION_ALGORITHM: Final[str] = "AES-256-GCM"
KEY_DERIVATION_FUNCTION: Final[str] = "PBKDF2-SHA256"
RECORD_FORMAT_VERSION: Final[int] = 1

# Rate limiting
MAX_LOCKOUT_HORIZON_MS: Final[int] = 24 * 60 * 60 * 1000  # lockouts further out are corrupt
MAX_DELAY_EXPONENT: Final[int] = 5  # delay stops doubling after the 6th failure

# Message hygiene
MAX_USER_MESSAGE_LENGTH: Final[int] = 200
USER_MESSAGE_ELLIPSIS: Final[str] = "..."
TRUNCATION_MARKER: Final[str] = "...[TRUNCATED]"
REDACTED_TEXT: Final[str] = "[REDACTED]"
SENSITIVE_CONTEXT_KEYS: Final[tuple[str, ...]] = (
    "password", "token", "secret", "key", "auth", "credential",
)

# Identifier hashing
IDENTIFIER_HASH_LENGTH: Final[int] = 16
HASHED_IDENTIFIER_PREFIX: Final[str] = "hash_"

# Event emission
EVENT_SOURCE: Final[str] = "authguard"
HIGH_FREQUENCY_ATTEMPTS: Final[int] = 3
BUSINESS_HOURS: Final[tuple[int, int]] = (9, 17)
