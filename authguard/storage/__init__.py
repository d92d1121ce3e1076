"""
Storage module - Encrypted, self-healing persistence across fallback tiers.
"""

from authguard.storage.secure_store import (
    CorruptRecordError,
    RecordMetadata,
    SecureStore,
    StorageError,
    StorageRecord,
)
from authguard.storage.tiers import MemoryTier, SessionTier, SQLiteTier, StorageTier

__all__ = [
    "CorruptRecordError",
    "RecordMetadata",
    "SecureStore",
    "StorageError",
    "StorageRecord",
    "MemoryTier",
    "SessionTier",
    "SQLiteTier",
    "StorageTier",
]
