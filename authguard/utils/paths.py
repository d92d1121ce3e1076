"""
Path Utilities
==============

OS-aware path handling for the session-scoped storage tier.
"""

from __future__ import annotations

import base64
import os
import platform
import tempfile
from pathlib import Path


def get_secure_temp_dir() -> Path:
    """
    Get the owner-only temporary directory used by this package.

    Returns:
        Path to an existing directory with 0700 permissions
    """
    secure_temp = Path(tempfile.gettempdir()) / "authguard_temp"
    secure_temp.mkdir(mode=0o700, exist_ok=True)

    # On Windows, permissions work differently
    if platform.system().lower() != "windows":
        secure_temp.chmod(0o700)

    return secure_temp


def get_session_scope_id() -> str:
    """
    Identify the current OS login session.

    Processes started from the same terminal session share the scope, so the
    session tier behaves like per-session browser storage.
    """
    getsid = getattr(os, "getsid", None)
    if getsid is not None:
        try:
            return f"sid{getsid(0)}"
        except OSError:
            pass
    return f"ppid{os.getppid()}"


def get_session_dir() -> Path:
    """Get (and create) the session-scoped storage directory."""
    session_dir = get_secure_temp_dir() / f"session_{get_session_scope_id()}"
    session_dir.mkdir(mode=0o700, exist_ok=True)
    return session_dir


def key_to_filename(key: str) -> str:
    """
    Map a storage key to a filename that is safe on every platform.

    URL-safe base64 keeps the mapping reversible and free of separators.

    Raises:
        ValueError: If the key is empty or the encoded name is too long
    """
    if not key:
        raise ValueError("Storage key cannot be empty")

    encoded = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")
    # 255 is the common filename limit; leave room for the temp suffix
    if len(encoded) > 200:
        raise ValueError("Storage key too long for the session tier")
    return encoded


def filename_to_key(filename: str) -> str:
    """Inverse of :func:`key_to_filename`."""
    padding = "=" * (-len(filename) % 4)
    return base64.urlsafe_b64decode(filename + padding).decode("utf-8")

