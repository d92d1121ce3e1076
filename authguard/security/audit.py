"""
Tamper-Aware Audit Log
======================

Append-only JSON Lines file of security events with a hash chain.

Each line carries the hash of the line before it, so deleting, editing or
reordering lines breaks verification from that point on.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Final, List, Optional

GENESIS_HASH: Final[str] = "genesis"


def _entry_hash(entry: Dict[str, Any], previous_hash: str) -> str:
    """SHA-256 over the canonical JSON of the entry and its predecessor's hash."""
    data = dict(entry)
    data.pop("event_hash", None)
    data["previous_hash"] = previous_hash
    return hashlib.sha256(
        json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()


class TamperAwareAuditLog:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained hashes for integrity
    - Append-only (no deletion)
    - JSON Lines format, fsynced per entry
    """

    def __init__(self, log_path: Path | str) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._event_count = 0
        self._log = logging.getLogger("authguard.audit")

        self._log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self) -> None:
        """Resume the chain from the last readable line."""
        if not self._log_path.exists():
            return

        try:
            with open(self._log_path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        entry = json.loads(line)
                        self._last_hash = entry.get("event_hash", self._last_hash)
                        self._event_count += 1
        except (OSError, ValueError) as e:
            self._log.warning(f"Audit log {self._log_path} is unreadable, chain resumes from last good line: {e}")

    def append(self, entry: Dict[str, Any]) -> str:
        """
        Append one entry to the chain.

        Args:
            entry: JSON-serializable event fields

        Returns:
            The new entry's hash
        """
        with self._lock:
            record = dict(entry)
            record["previous_hash"] = self._last_hash
            record["event_hash"] = _entry_hash(record, self._last_hash)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = record["event_hash"]
            self._event_count += 1
            return record["event_hash"]

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Walk the chain and recompute every hash.

        Returns:
            Tuple of (is_valid, number of entries verified before any break)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = GENESIS_HASH
        count = 0

        try:
            with open(self._log_path, "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue

                    entry = json.loads(line)
                    if entry.get("previous_hash") != previous_hash:
                        return False, count
                    if entry.get("event_hash") != _entry_hash(entry, previous_hash):
                        return False, count

                    previous_hash = entry["event_hash"]
                    count += 1
        except (OSError, ValueError):
            return False, count

        return True, count

    def get_events(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back entries, oldest first, with optional filters."""
        events: List[Dict[str, Any]] = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    self._log.warning(f"Skipping unreadable audit line in {self._log_path}")
                    continue

                if since is not None and datetime.fromisoformat(entry["timestamp"]) < since:
                    continue
                if event_type is not None and entry.get("type") != event_type:
                    continue
                if severity is not None and entry.get("severity") != severity:
                    continue

                events.append(entry)
                if len(events) >= limit:
                    break

        return events
