"""
Security State Manager
======================

Lifecycle of the per-identifier rate-limit record: read, validate, expire,
write and sweep, plus change notification across processes that share the
same backing store.

Records are JSON with stable camelCase field names:
    {"identifier": ..., "failedAttempts": 0, "lockoutUntil": <ms>,
     "lastAttempt": <ms>, "progressiveDelay": <ms>,
     "createdAt": <ms>, "updatedAt": <ms>, "version": 1}

There is no cross-process lock. Concurrent writers for one identifier
resolve last-write-wins.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Final, Hashable, List, Mapping, Optional, Tuple

from authguard.core.config import StateConfig
from authguard.core.crypto.aes_gcm import EncryptionError
from authguard.security.constants import MAX_LOCKOUT_HORIZON_MS
from authguard.storage.secure_store import SecureStore, StorageError
from authguard.utils.clock import Clock, ms_to_datetime, now_ms
from authguard.utils.periodic import PeriodicTask

StateListener = Callable[[Optional["SecurityStateRecord"]], None]

_UNSET: Final = object()

# Full re-read cadence when the store reports no change, in sync intervals
_RECOVERY_SYNC_FACTOR: Final[int] = 12


@dataclass
class SecurityStateRecord:
    """Rate-limit state for one identifier. All timestamps are epoch ms."""
    identifier: str
    failed_attempts: int
    created_at: int
    updated_at: int
    version: int
    lockout_until: Optional[int] = None
    last_attempt: Optional[int] = None
    progressive_delay: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "identifier": self.identifier,
            "failedAttempts": self.failed_attempts,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "version": self.version,
        }
        if self.lockout_until is not None:
            data["lockoutUntil"] = self.lockout_until
        if self.last_attempt is not None:
            data["lastAttempt"] = self.last_attempt
        if self.progressive_delay is not None:
            data["progressiveDelay"] = self.progressive_delay
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SecurityStateRecord:
        """Build from a mapping that has already passed ``validate_state``."""
        def optional_int(name: str) -> Optional[int]:
            value = data.get(name)
            return None if value is None else int(value)

        return cls(
            identifier=data["identifier"],
            failed_attempts=int(data["failedAttempts"]),
            created_at=int(data["createdAt"]),
            updated_at=int(data["updatedAt"]),
            version=int(data["version"]),
            lockout_until=optional_int("lockoutUntil"),
            last_attempt=optional_int("lastAttempt"),
            progressive_delay=optional_int("progressiveDelay"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def is_locked(self, now: int) -> bool:
        return self.lockout_until is not None and self.lockout_until > now


@dataclass
class StateValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    corrected_state: Optional[SecurityStateRecord] = None


@dataclass(frozen=True)
class SecurityStatistics:
    """Aggregate view of live records. Expired records are not counted as live."""
    total_states: int
    expired_states: int
    locked_states: int
    oldest_state: Optional[datetime] = None
    newest_state: Optional[datetime] = None


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class SecurityStateManager:
    """
    Reads and writes SecurityStateRecords through a SecureStore.

    Usage:
        manager = SecurityStateManager(store, StateConfig())
        manager.set_security_state("a@b.com", failed_attempts=1)
        record = manager.get_security_state("a@b.com")

    Invalid or expired records are removed when they are read. Listener
    callbacks receive the new record, or None when the record went away.
    """

    def __init__(
        self,
        store: SecureStore,
        config: Optional[StateConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._config = config or StateConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.state")

        self._listeners_lock = threading.RLock()
        self._listeners: Dict[str, List[StateListener]] = {}

        self._sync_lock = threading.Lock()
        self._seen: Dict[str, int] = {}
        self._last_token: Optional[Tuple[Hashable, ...]] = None
        self._last_full_sync = 0

        self._cleanup_task: Optional[PeriodicTask] = None
        self._sync_task: Optional[PeriodicTask] = None

    @property
    def store(self) -> SecureStore:
        return self._store

    # ------------------------------------------------------------------ keys

    @property
    def key_prefix(self) -> str:
        return f"{self._config.storage_prefix}_"

    def storage_key(self, identifier: str) -> str:
        """Deterministic store key for ``identifier``."""
        encoded = base64.urlsafe_b64encode(identifier.encode("utf-8")).rstrip(b"=")
        return self.key_prefix + encoded.decode("ascii")

    def identifier_from_key(self, key: str) -> Optional[str]:
        """Inverse of :meth:`storage_key`. None for foreign or undecodable keys."""
        if not key.startswith(self.key_prefix):
            return None
        encoded = key[len(self.key_prefix):]
        try:
            padded = encoded + "=" * (-len(encoded) % 4)
            return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            return None

    # ---------------------------------------------------------------- records

    def is_state_expired(self, record: SecurityStateRecord) -> bool:
        return self._clock() - record.updated_at > self._config.max_age_ms

    def _load(self, key: str) -> Tuple[Optional[SecurityStateRecord], bool]:
        """
        Read and validate the record under ``key``.

        Returns:
            Tuple of (live record or None, whether something had to be discarded)
        """
        raw = self._store.retrieve(key)
        if raw is None:
            return None, False

        try:
            payload = json.loads(raw)
        except ValueError:
            payload = None

        validation = self.validate_state(payload)
        if not validation.is_valid:
            self._log.warning(f"Invalid security state found, removing: {', '.join(validation.errors)}")
            return None, True

        record = SecurityStateRecord.from_dict(payload)
        if self.is_state_expired(record):
            return None, True
        return record, False

    def _discard(self, key: str) -> None:
        self._store.remove(key)
        identifier = self.identifier_from_key(key)
        if identifier is not None:
            self._notify(identifier, None)

    def get_security_state(self, identifier: str) -> Optional[SecurityStateRecord]:
        """
        Current record for ``identifier``.

        Returns:
            The record, or None when absent. Invalid and expired records are
            removed and read as absent.
        """
        key = self.storage_key(identifier)
        record, discard = self._load(key)
        if discard:
            self._discard(key)
        return record

    def set_security_state(
        self,
        identifier: str,
        *,
        failed_attempts: Any = _UNSET,
        lockout_until: Any = _UNSET,
        last_attempt: Any = _UNSET,
        progressive_delay: Any = _UNSET,
    ) -> SecurityStateRecord:
        """
        Merge the given fields over the stored record and persist it.

        Omitted fields keep their stored value. ``created_at`` is preserved,
        ``updated_at`` becomes now. Passing ``lockout_until=None`` clears a
        lockout; ``last_attempt=None`` means now and ``progressive_delay=None``
        means 0.

        Raises:
            StorageError: If the merged record is invalid or cannot be written.
                Nothing is written in that case.
        """
        now = self._clock()
        existing = self.get_security_state(identifier)

        def merged(value: Any, name: str, default: Any) -> Any:
            if value is _UNSET:
                value = getattr(existing, name) if existing is not None else None
            return default if value is None else value

        record = SecurityStateRecord(
            identifier=identifier,
            failed_attempts=merged(failed_attempts, "failed_attempts", 0),
            lockout_until=merged(lockout_until, "lockout_until", None),
            last_attempt=merged(last_attempt, "last_attempt", now),
            progressive_delay=merged(progressive_delay, "progressive_delay", 0),
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
            version=self._config.version,
        )

        validation = self.validate_state(record.to_dict())
        if not validation.is_valid:
            self._log.error(f"Refusing to store invalid security state: {', '.join(validation.errors)}")
            raise StorageError("Failed to store security state")

        try:
            self._store.store(self.storage_key(identifier), record.to_json())
        except (EncryptionError, StorageError) as e:
            self._log.error(f"Error storing security state: {e}")
            raise StorageError("Failed to store security state") from e

        self._notify(identifier, record)
        return record

    def clear_security_state(self, identifier: str) -> None:
        """
        Remove the record for ``identifier`` and notify listeners with None.

        Raises:
            StorageError: Only if the store itself raises on removal
        """
        try:
            self._store.remove(self.storage_key(identifier))
        except Exception as e:
            self._log.error(f"Error clearing security state: {e}")
            raise StorageError("Failed to clear security state") from e

        self._notify(identifier, None)

    def _scan(self) -> Tuple[List[SecurityStateRecord], int]:
        """Live records under the prefix, and how many were discarded on the way."""
        records: List[SecurityStateRecord] = []
        discarded = 0

        for key in self._store.keys(prefix=self.key_prefix):
            record, discard = self._load(key)
            if discard:
                self._discard(key)
                discarded += 1
            elif record is not None:
                records.append(record)

        return records, discarded

    def get_all_security_states(self) -> List[SecurityStateRecord]:
        """Every live record. Invalid and expired ones are removed silently."""
        records, _ = self._scan()
        return records

    def validate_state(self, candidate: Any) -> StateValidationResult:
        """
        Structural and semantic check of a persisted record.

        Args:
            candidate: A mapping with camelCase keys, or a SecurityStateRecord

        Returns:
            StateValidationResult. When invalid but recoverable, carries a
            best-effort ``corrected_state`` that is never persisted.
        """
        if isinstance(candidate, SecurityStateRecord):
            candidate = candidate.to_dict()
        if not isinstance(candidate, Mapping):
            return StateValidationResult(is_valid=False, errors=["State must be an object"])

        now = self._clock()
        errors: List[str] = []

        identifier = candidate.get("identifier")
        failed_attempts = candidate.get("failedAttempts")
        created_at = candidate.get("createdAt")
        updated_at = candidate.get("updatedAt")
        version = candidate.get("version")
        lockout_until = candidate.get("lockoutUntil")
        last_attempt = candidate.get("lastAttempt")
        progressive_delay = candidate.get("progressiveDelay")

        if not isinstance(identifier, str) or not identifier.strip():
            errors.append("Identifier must be a non-empty string")
        if not _is_number(failed_attempts) or failed_attempts < 0:
            errors.append("Failed attempts must be a non-negative number")
        if not _is_number(created_at) or created_at <= 0:
            errors.append("Created timestamp must be a positive number")
        if not _is_number(updated_at) or updated_at <= 0:
            errors.append("Updated timestamp must be a positive number")
        if not _is_number(version) or version <= 0:
            errors.append("Version must be a positive number")

        if lockout_until is not None:
            if not _is_number(lockout_until) or lockout_until <= 0:
                errors.append("Lockout timestamp must be a positive number")
            elif lockout_until > now + MAX_LOCKOUT_HORIZON_MS:
                errors.append("Lockout time is too far in the future")

        if last_attempt is not None and (not _is_number(last_attempt) or last_attempt <= 0):
            errors.append("Last attempt timestamp must be a positive number")

        if progressive_delay is not None and (not _is_number(progressive_delay) or progressive_delay < 0):
            errors.append("Progressive delay must be a non-negative number")

        if _is_number(created_at) and _is_number(updated_at) and updated_at < created_at:
            errors.append("Updated timestamp cannot be before created timestamp")

        corrected_state = None
        if errors and isinstance(identifier, str) and identifier and _is_number(failed_attempts):
            corrected_state = SecurityStateRecord(
                identifier=identifier,
                failed_attempts=max(0, int(failed_attempts)),
                lockout_until=(
                    int(lockout_until)
                    if _is_number(lockout_until) and now < lockout_until <= now + MAX_LOCKOUT_HORIZON_MS
                    else None
                ),
                last_attempt=int(last_attempt) if _is_number(last_attempt) and last_attempt > 0 else now,
                progressive_delay=max(0, int(progressive_delay)) if _is_number(progressive_delay) else 0,
                created_at=int(created_at) if _is_number(created_at) and created_at > 0 else now,
                updated_at=now,
                version=self._config.version,
            )

        return StateValidationResult(
            is_valid=not errors,
            errors=errors,
            corrected_state=corrected_state,
        )

    def cleanup_expired_states(self) -> int:
        """
        Sweep every record under the prefix.

        Returns:
            Number of expired or invalid records removed
        """
        _, removed = self._scan()
        self._log.info(f"Cleaned up {removed} expired security states")
        return removed

    def get_statistics(self) -> SecurityStatistics:
        """
        Aggregate counts over live records.

        ``expired_states`` is the number of expired or invalid records the
        scan removed.
        """
        records, removed = self._scan()
        now = self._clock()

        return SecurityStatistics(
            total_states=len(records),
            expired_states=removed,
            locked_states=sum(1 for r in records if r.is_locked(now)),
            oldest_state=ms_to_datetime(min(r.created_at for r in records)) if records else None,
            newest_state=ms_to_datetime(max(r.updated_at for r in records)) if records else None,
        )

    # -------------------------------------------------------------- listeners

    def add_state_change_listener(self, identifier: str, callback: StateListener) -> None:
        with self._listeners_lock:
            callbacks = self._listeners.setdefault(identifier, [])
            if callback not in callbacks:
                callbacks.append(callback)

    def remove_state_change_listener(self, identifier: str, callback: StateListener) -> None:
        with self._listeners_lock:
            callbacks = self._listeners.get(identifier)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._listeners[identifier]

    def _notify(self, identifier: str, record: Optional[SecurityStateRecord]) -> None:
        with self._sync_lock:
            if record is None:
                self._seen.pop(identifier, None)
            else:
                self._seen[identifier] = record.updated_at

        with self._listeners_lock:
            callbacks = list(self._listeners.get(identifier, ()))

        for callback in callbacks:
            try:
                callback(record)
            except Exception as e:
                self._log.error(f"Error in state change listener: {e}")

    # ------------------------------------------------------------------- sync

    def sync_now(self, force: bool = False) -> int:
        """
        Re-read state written by other processes and notify local listeners.

        The full re-read runs when the store's change token moved, when
        ``force`` is set, or every ``sync_interval_ms * 12`` as a recovery
        path.

        Returns:
            Number of identifiers whose listeners were notified
        """
        now = self._clock()
        token = self._store.change_token()
        with self._sync_lock:
            due = (
                force
                or token != self._last_token
                or now - self._last_full_sync >= self._config.sync_interval_ms * _RECOVERY_SYNC_FACTOR
            )
            if not due:
                return 0
            self._last_token = token
            self._last_full_sync = now
            previously_seen = dict(self._seen)

        records = self.get_all_security_states()
        notified = 0

        live = set()
        for record in records:
            live.add(record.identifier)
            if previously_seen.get(record.identifier) != record.updated_at:
                self._notify(record.identifier, record)
                notified += 1

        for identifier in previously_seen.keys() - live:
            with self._sync_lock:
                still_seen = identifier in self._seen
            if still_seen:
                self._notify(identifier, None)
                notified += 1

        return notified

    # ------------------------------------------------------- background tasks

    @property
    def running(self) -> bool:
        return any(t is not None and t.running for t in (self._cleanup_task, self._sync_task))

    def run_cleanup_once(self) -> int:
        """One iteration of the cleanup loop."""
        return self.cleanup_expired_states()

    def start(self) -> None:
        """Start the cleanup sweep and the sync poller, as configured."""
        if not self._config.enable_background_tasks or self.running:
            return

        self._last_token = self._store.change_token()
        self._last_full_sync = self._clock()

        self._cleanup_task = PeriodicTask(
            "SecurityState-Cleanup", self.run_cleanup_once, self._config.cleanup_interval_ms, self._log,
        )
        self._cleanup_task.start()

        if self._config.enable_cross_context_sync:
            self._sync_task = PeriodicTask(
                "SecurityState-Sync", self.sync_now, self._config.sync_interval_ms, self._log,
            )
            self._sync_task.start()

        self._log.info("Security state background tasks started")

    def _stop_tasks(self) -> None:
        for task in (self._cleanup_task, self._sync_task):
            if task is not None:
                task.stop()
        self._cleanup_task = None
        self._sync_task = None

    def cleanup(self) -> None:
        """Stop background tasks and drop all listeners. Safe to call repeatedly."""
        self._stop_tasks()
        with self._listeners_lock:
            self._listeners.clear()

    def get_config(self) -> StateConfig:
        return self._config

    def update_config(self, **changes: Any) -> StateConfig:
        """Apply config changes. Running background tasks restart with the new timing."""
        was_running = self.running
        self._config = replace(self._config, **changes)
        if was_running:
            self._stop_tasks()
            self.start()
        return self._config

    def __enter__(self) -> SecurityStateManager:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()
