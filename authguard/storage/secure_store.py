"""
Secure Store
============

Encrypted, checksummed persistence of opaque text records with fallback
across storage tiers.

Security Features:
- AES-256-GCM with a fresh nonce per record
- SHA-256 integrity checksum over the plaintext
- Corrupted or tampered records are purged on sight, never surfaced
- Tier failures degrade to the next tier; the memory tier always works

Record envelope (JSON, stable across versions):
    {"data": ..., "checksum": ..., "timestamp": <epoch ms>, "version": 1}
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Final, Hashable, Iterable, Optional

from authguard.core.config import StorageConfig
from authguard.core.crypto.aes_gcm import AesGcmCipher, DecryptionError, EncryptionError
from authguard.core.crypto.kdf import derive_storage_key
from authguard.security.hardening import verify_cipher
from authguard.storage.tiers import MemoryTier, SessionTier, SQLiteTier, StorageTier
from authguard.utils.clock import Clock, now_ms
from authguard.utils.paths import get_session_dir

_TIER_ERRORS: Final[tuple[type[BaseException], ...]] = (OSError, sqlite3.Error)

_RECORD_FIELDS: Final[tuple[str, ...]] = ("data", "checksum", "timestamp", "version")

CorruptionCallback = Callable[[str, str], None]


class StorageError(Exception):
    """Raised when security state cannot be persisted or removed."""


class CorruptRecordError(ValueError):
    """Raised when a stored envelope cannot be parsed or verified."""


@dataclass(frozen=True, slots=True)
class StorageRecord:
    """The envelope written to a storage tier."""

    data: str
    checksum: str
    timestamp: int
    version: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "checksum": self.checksum,
                "timestamp": self.timestamp,
                "version": self.version,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> StorageRecord:
        """
        Parse and structurally validate an envelope.

        Raises:
            CorruptRecordError: If the JSON is invalid, a field is missing
                or a field has the wrong type
        """
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorruptRecordError("unparsable envelope") from e

        if not isinstance(payload, dict):
            raise CorruptRecordError("envelope is not an object")

        missing = [name for name in _RECORD_FIELDS if name not in payload]
        if missing:
            raise CorruptRecordError(f"missing fields: {', '.join(missing)}")

        data, checksum = payload["data"], payload["checksum"]
        timestamp, version = payload["timestamp"], payload["version"]
        if not isinstance(data, str) or not isinstance(checksum, str) or not checksum:
            raise CorruptRecordError("data and checksum must be text")
        if not _is_int(timestamp) or not _is_int(version):
            raise CorruptRecordError("timestamp and version must be integers")

        return cls(data=data, checksum=checksum, timestamp=timestamp, version=version)


@dataclass(frozen=True, slots=True)
class RecordMetadata:
    """Envelope metadata read without decrypting the payload."""

    key: str
    tier: str
    timestamp: int
    version: int
    size: int


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SecureStore:
    """
    Tiered, encrypted key/value store for small text records.

    Usage:
        store = SecureStore(StorageConfig(durable_path=path))
        store.store("security_state_abc", payload)
        payload = store.retrieve("security_state_abc")

    Write path: checksum the plaintext, encrypt it when the cipher passed its
    self-test, wrap it in a StorageRecord and write to the first tier that
    accepts it.

    Read path: take the record from the first tier that has the key. A record
    that cannot be parsed, decrypted or verified is deleted from that tier
    and reported as absent.
    """

    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        tiers: Optional[Iterable[StorageTier]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Args:
            config: Storage configuration (defaults apply when omitted)
            tiers: Explicit tier chain. A MemoryTier is appended when the
                chain does not already end with one.
            clock: Millisecond clock used for record timestamps
        """
        self._config = config or StorageConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.storage")
        self._corruption_callbacks: list[CorruptionCallback] = []

        self._tiers: list[StorageTier] = (
            list(tiers) if tiers is not None else self._build_tiers(self._config)
        )
        if not self._tiers or not isinstance(self._tiers[-1], MemoryTier):
            self._tiers.append(MemoryTier())

        self._cipher: Optional[AesGcmCipher] = None
        if self._config.enable_encryption:
            self._cipher = self._init_cipher()

    def _build_tiers(self, config: StorageConfig) -> list[StorageTier]:
        tiers: list[StorageTier] = []

        if config.durable_path is not None:
            try:
                tiers.append(SQLiteTier(config.durable_path))
            except _TIER_ERRORS as e:
                self._log.warning(f"Durable storage unavailable, skipping tier: {e}")

        if config.enable_session_tier:
            try:
                tiers.append(SessionTier(config.session_dir or get_session_dir()))
            except _TIER_ERRORS as e:
                self._log.warning(f"Session storage unavailable, skipping tier: {e}")

        return tiers

    def _init_cipher(self) -> Optional[AesGcmCipher]:
        """Derive the key and self-test the cipher. None means plaintext mode."""
        try:
            key = derive_storage_key(
                self._config.key_passphrase,
                self._config.key_salt,
                self._config.kdf_iterations,
                self._config.kdf,
            )
            cipher = AesGcmCipher(key)
        except Exception as e:
            self._log.error(f"Cryptographic provider unavailable, storing plaintext: {type(e).__name__}")
            return None

        if not verify_cipher(cipher, self._log):
            self._log.error("Cipher self-test failed, storing plaintext")
            return None
        return cipher

    @property
    def encryption_active(self) -> bool:
        """True when payloads are encrypted at rest."""
        return self._cipher is not None

    @property
    def tiers(self) -> tuple[StorageTier, ...]:
        return tuple(self._tiers)

    # ------------------------------------------------------------------ crypto

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt text with AES-256-GCM.

        Returns:
            base64 of ``nonce || ciphertext || tag``

        Raises:
            EncryptionError: If no working cipher is available
        """
        if self._cipher is None:
            raise EncryptionError("Cryptographic provider unavailable")
        return self._cipher.encrypt_text(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        """
        Inverse of :meth:`encrypt`.

        Raises:
            DecryptionError: On any decoding, nonce or authentication failure
        """
        if self._cipher is None:
            raise DecryptionError("Cryptographic provider unavailable")
        return self._cipher.decrypt_text(ciphertext)

    @staticmethod
    def checksum(data: str) -> str:
        """base64 SHA-256 digest of the UTF-8 text."""
        return base64.b64encode(hashlib.sha256(data.encode("utf-8")).digest()).decode("ascii")

    def validate_integrity(self, data: str, digest: str) -> bool:
        """Constant-time check that ``digest`` is the checksum of ``data``."""
        return hmac.compare_digest(
            self.checksum(data).encode("utf-8"), digest.encode("utf-8")
        )

    # -------------------------------------------------------------- key/value

    def store(self, key: str, value: str) -> str:
        """
        Persist ``value`` under ``key``.

        Returns:
            Name of the tier that accepted the write

        Raises:
            EncryptionError: Only if encryption itself fails
        """
        data = self.encrypt(value) if self._cipher is not None else value
        record = StorageRecord(
            data=data,
            checksum=self.checksum(value),
            timestamp=self._clock(),
            version=self._config.format_version,
        )
        raw = record.to_json()

        for index, tier in enumerate(self._tiers):
            try:
                tier.set(key, raw)
            except _TIER_ERRORS as e:
                self._log.warning(f"Write to {tier.name} tier failed, falling back: {e}")
                continue

            # Stale copies above the accepting tier would shadow this write
            for stale in self._tiers[:index]:
                try:
                    stale.delete(key)
                except _TIER_ERRORS as e:
                    self._log.warning(f"Could not drop stale {key} from {stale.name} tier: {e}")
            return tier.name

        # Unreachable while the chain ends with a MemoryTier
        raise StorageError("No storage tier accepted the write")

    def retrieve(self, key: str) -> Optional[str]:
        """
        Read the value stored under ``key``.

        Returns:
            The plaintext value, or None when absent or corrupt
        """
        newest: Optional[tuple[StorageTier, StorageRecord]] = None
        for tier in self._tiers:
            try:
                raw = tier.get(key)
            except _TIER_ERRORS as e:
                self._log.warning(f"Read from {tier.name} tier failed, falling back: {e}")
                continue

            if raw is None:
                continue

            try:
                record = StorageRecord.from_json(raw)
            except CorruptRecordError as e:
                self._purge(tier, key, str(e))
                return None

            # A copy left behind by an earlier fallback loses to a newer write
            if newest is None or record.timestamp > newest[1].timestamp:
                newest = (tier, record)

        if newest is None:
            return None

        tier, record = newest
        try:
            return self._open(record)
        except CorruptRecordError as e:
            self._purge(tier, key, str(e))
            return None

    def _open(self, record: StorageRecord) -> str:
        if self._cipher is not None:
            try:
                value = self._cipher.decrypt_text(record.data)
            except DecryptionError as e:
                raise CorruptRecordError(f"decryption failed: {e}") from e
        else:
            value = record.data

        if self._config.enable_integrity_validation and not self.validate_integrity(value, record.checksum):
            raise CorruptRecordError("checksum mismatch")

        return value

    def _purge(self, tier: StorageTier, key: str, reason: str) -> None:
        self._log.warning(f"Purging corrupt record {key} from {tier.name} tier: {reason}")
        try:
            tier.delete(key)
        except _TIER_ERRORS as e:
            self._log.error(f"Could not purge corrupt record {key} from {tier.name} tier: {e}")

        for callback in list(self._corruption_callbacks):
            try:
                callback(key, reason)
            except Exception as e:
                self._log.error(f"Corruption callback error: {e}")

    def remove(self, key: str) -> None:
        """Remove ``key`` from every tier."""
        for tier in self._tiers:
            try:
                tier.delete(key)
            except _TIER_ERRORS as e:
                self._log.warning(f"Delete from {tier.name} tier failed: {e}")

    def exists(self, key: str) -> bool:
        """True when a valid record is stored under ``key``."""
        return self.retrieve(key) is not None

    def clear(self, prefix: Optional[str] = None) -> None:
        """Remove every record, or only those whose key starts with ``prefix``."""
        for tier in self._tiers:
            try:
                if prefix is None:
                    tier.clear()
                else:
                    for key in tier.keys():
                        if key.startswith(prefix):
                            tier.delete(key)
            except _TIER_ERRORS as e:
                self._log.warning(f"Clear of {tier.name} tier failed: {e}")

    def keys(self, prefix: Optional[str] = None) -> list[str]:
        """Union of keys across tiers, optionally filtered by prefix."""
        found: set[str] = set()
        for tier in self._tiers:
            try:
                found.update(tier.keys())
            except _TIER_ERRORS as e:
                self._log.warning(f"Listing {tier.name} tier failed: {e}")
        return sorted(k for k in found if prefix is None or k.startswith(prefix))

    def get_metadata(self, key: str) -> Optional[RecordMetadata]:
        """Envelope metadata for ``key`` without decrypting. None if absent or unparsable."""
        for tier in self._tiers:
            try:
                raw = tier.get(key)
            except _TIER_ERRORS:
                continue
            if raw is None:
                continue
            try:
                record = StorageRecord.from_json(raw)
            except CorruptRecordError:
                return None
            return RecordMetadata(
                key=key,
                tier=tier.name,
                timestamp=record.timestamp,
                version=record.version,
                size=len(raw),
            )
        return None

    def cleanup_expired(self, max_age_ms: int, prefix: Optional[str] = None) -> int:
        """
        Remove records older than ``max_age_ms`` and records that cannot be parsed.

        Only envelope metadata is read; payloads are not decrypted.

        Returns:
            Number of records removed across all tiers
        """
        now = self._clock()
        removed = 0

        for tier in self._tiers:
            try:
                keys = tier.keys()
            except _TIER_ERRORS as e:
                self._log.warning(f"Listing {tier.name} tier failed during cleanup: {e}")
                continue

            for key in keys:
                if prefix is not None and not key.startswith(prefix):
                    continue
                try:
                    raw = tier.get(key)
                    if raw is None:
                        continue
                    try:
                        expired = now - StorageRecord.from_json(raw).timestamp > max_age_ms
                    except CorruptRecordError:
                        expired = True
                    if expired:
                        tier.delete(key)
                        removed += 1
                except _TIER_ERRORS as e:
                    self._log.warning(f"Cleanup of {key} in {tier.name} tier failed: {e}")

        if removed:
            self._log.info(f"Removed {removed} expired or unreadable records")
        return removed

    # ----------------------------------------------------------- observation

    def change_token(self) -> tuple[Hashable, ...]:
        """Opaque value that changes when any tier is written by anyone."""
        tokens: list[Hashable] = []
        for tier in self._tiers:
            try:
                tokens.append(tier.change_token())
            except _TIER_ERRORS:
                tokens.append(None)
        return tuple(tokens)

    def add_corruption_listener(self, callback: CorruptionCallback) -> None:
        """Register ``callback(key, reason)`` for purged records."""
        self._corruption_callbacks.append(callback)

    def remove_corruption_listener(self, callback: CorruptionCallback) -> None:
        if callback in self._corruption_callbacks:
            self._corruption_callbacks.remove(callback)

    def close(self) -> None:
        """Release tier resources. The store stays usable afterwards."""
        for tier in self._tiers:
            tier.close()
