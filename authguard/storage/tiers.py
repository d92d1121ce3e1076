"""
Storage Tiers
=============

Backends tried in order by SecureStore: durable (SQLite), session-scoped
(one file per key in a private directory) and in-process memory.

Every tier stores opaque text under text keys. Tiers raise ``OSError`` or
``sqlite3.Error`` on failure; SecureStore absorbs those and moves on to
the next tier. The memory tier never raises.
"""

from __future__ import annotations

import errno
import os
import secrets
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Final, Hashable, Iterator, Optional

from authguard.utils.clock import now_ms
from authguard.utils.paths import filename_to_key, key_to_filename


class StorageTier(ABC):
    """A key/value text store with change detection."""

    name: str = "tier"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored text or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store text under key, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """All keys currently stored."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every key."""

    @abstractmethod
    def change_token(self) -> Hashable:
        """Opaque value that changes whenever another writer touches the tier."""

    def close(self) -> None:
        """Release any held resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class SQLiteTier(StorageTier):
    """
    Durable tier backed by a single SQLite table.

    A new connection is opened per operation. One long-lived watch
    connection reads ``PRAGMA data_version``, which changes whenever any
    other connection (in this process or another) commits to the file.
    """

    name = "durable"

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS secure_records (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    );
    """

    def __init__(self, db_path: Path | str, timeout_seconds: float = 5.0) -> None:
        """
        Args:
            db_path: Path to the SQLite database file
            timeout_seconds: How long to wait on a locked database
        """
        self._db_path = Path(db_path)
        self._timeout = timeout_seconds
        self._watch_conn: Optional[sqlite3.Connection] = None
        self._watch_lock = threading.Lock()
        self.initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        return sqlite3.connect(self._db_path, timeout=self._timeout)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with closing(self._get_connection()) as conn:
            with conn:
                yield conn

    def initialize_db(self) -> None:
        """Create the parent directory and schema."""
        self._db_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self._transaction() as conn:
            conn.executescript(self._SCHEMA)

    def get(self, key: str) -> Optional[str]:
        with closing(self._get_connection()) as conn:
            row = conn.execute(
                "SELECT value FROM secure_records WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO secure_records (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, now_ms()),
            )

    def delete(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM secure_records WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        with closing(self._get_connection()) as conn:
            rows = conn.execute("SELECT key FROM secure_records ORDER BY key").fetchall()
        return [row[0] for row in rows]

    def clear(self) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM secure_records")

    def change_token(self) -> Hashable:
        with self._watch_lock:
            if self._watch_conn is None:
                self._watch_conn = sqlite3.connect(
                    self._db_path, timeout=self._timeout, check_same_thread=False
                )
            return self._watch_conn.execute("PRAGMA data_version").fetchone()[0]

    def close(self) -> None:
        with self._watch_lock:
            if self._watch_conn is not None:
                self._watch_conn.close()
                self._watch_conn = None


class SessionTier(StorageTier):
    """
    Session-scoped tier: one file per key inside an owner-only directory.

    Writes go to a temporary file first and are moved into place with
    ``os.replace`` so readers never see a partial record.
    """

    name = "session"

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path_for(self, key: str) -> Path:
        try:
            return self._dir / key_to_filename(key)
        except ValueError as e:
            raise OSError(errno.ENAMETOOLONG, str(e)) from e

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path_for(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        target = self._path_for(key)
        tmp = self._dir / f".{target.name}.{secrets.token_hex(4)}.tmp"
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        found = []
        for entry in sorted(self._dir.iterdir()):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            try:
                found.append(filename_to_key(entry.name))
            except (ValueError, UnicodeDecodeError):
                # Not one of ours
                continue
        return found

    def clear(self) -> None:
        for key in self.keys():
            self.delete(key)

    def change_token(self) -> Hashable:
        return self._dir.stat().st_mtime_ns


class MemoryTier(StorageTier):
    """In-process dictionary. Always succeeds."""

    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()
        self._writes = 0

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._writes += 1

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._writes += 1

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._writes += 1

    def change_token(self) -> Hashable:
        with self._lock:
            return self._writes
