"""
Secure Logging Module
=====================

Security-aware logger factory used as the egress point for security events.

Security Features:
- Automatic secret/sensitive data filtering
- Email addresses masked before they reach any handler
- Rotating log files with size limits
- Structured (JSON) output carrying security event metadata
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Optional, Pattern


_SENSITIVE_PATTERNS: Final[list[tuple[str, Pattern[str]]]] = [
    ("password", re.compile(r'(?i)(password|passwd|pwd)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("token", re.compile(r'(?i)(token|bearer)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("secret", re.compile(r'(?i)(secret|private[_-]?key)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("credential", re.compile(r'(?i)(credential|auth)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
]

# Long base64 runs are likely ciphertext or key material
_BASE64_SECRET: Final[Pattern[str]] = re.compile(r'[A-Za-z0-9+/]{40,}={0,2}')

_EMAIL_PATTERN: Final[Pattern[str]] = re.compile(r'([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})')

_REDACTED_TEXT: Final[str] = "[REDACTED]"

_CONSOLE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_FILE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


def mask_sensitive_text(text: str) -> str:
    """
    Mask email addresses and ``key=value`` secrets in free text.

    Used for structured event details as well as log lines. Long opaque
    runs are left alone here; only the log filter redacts those.
    """
    result = _EMAIL_PATTERN.sub(r"\1***@\2", text)
    for name, pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(f"{name}={_REDACTED_TEXT}", result)
    return result


class SecureLogFilter(logging.Filter):
    """
    Log filter that removes sensitive information from log messages.

    Secrets matching known patterns become [REDACTED]. Email addresses keep
    only their first character and domain, so a raw login identifier never
    lands in a log file.
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        """
        Initialize the secure log filter.

        Args:
            name: Logger name filter (empty string matches all)
            additional_patterns: Additional regex patterns to redact
        """
        super().__init__(name)
        self._additional_patterns = additional_patterns or []

    def filter(self, record: logging.LogRecord) -> bool:
        """Sanitize the record in place. Always keeps the record."""
        if record.msg and isinstance(record.msg, str):
            record.msg = self.sanitize(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.sanitize(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self.sanitize(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True

    def sanitize(self, text: str) -> str:
        """Remove sensitive data from text."""
        result = _BASE64_SECRET.sub(f"base64_secret={_REDACTED_TEXT}", mask_sensitive_text(text))

        for pattern in self._additional_patterns:
            result = pattern.sub(_REDACTED_TEXT, result)

        return result


class StructuredLogFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.

    Records emitted by SecurityLog carry a ``security_event`` attribute
    (the event as a dict) which is embedded under the same key.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        event = getattr(record, "security_event", None)
        if event is not None:
            log_data["security_event"] = event

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class SecureRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that refuses traversal paths and creates its
    parent directory with owner-only permissions.
    """

    def __init__(
        self,
        filename: str | Path,
        mode: str = "a",
        maxBytes: int = 10 * 1024 * 1024,
        backupCount: int = 5,
        encoding: str = "utf-8",
    ) -> None:
        if ".." in Path(filename).parts:
            raise ValueError("Log path cannot contain path traversal sequences")

        log_path = Path(filename).resolve()
        log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        super().__init__(
            str(log_path),
            mode=mode,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
        )


def get_secure_logger(
    name: str,
    level: str = "INFO",
    enable_console: bool = True,
    log_dir: Optional[Path] = None,
    enable_json: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Create a logger with automatic secret filtering.

    Handlers are attached once per logger name. Later calls with the same
    name return the existing logger with only its level updated.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_console: Whether to output to stderr
        log_dir: Directory for a rotating log file (no file when None)
        enable_json: Whether to use JSON format for file output
        max_file_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    if logger.handlers:
        return logger

    secure_filter = SecureLogFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        console_handler.addFilter(secure_filter)
        logger.addHandler(console_handler)

    if log_dir is not None:
        file_handler = SecureRotatingFileHandler(
            filename=Path(log_dir) / f"{name.replace('.', '_')}.log",
            maxBytes=max_file_size,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        if enable_json:
            file_handler.setFormatter(StructuredLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(secure_filter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    # Security events stay on their own handlers
    logger.propagate = False

    return logger
