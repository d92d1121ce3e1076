"""
Utils module - Utility functions and helpers.
"""

from authguard.utils.clock import Clock, ms_to_datetime, now_ms
from authguard.utils.paths import get_secure_temp_dir, get_session_dir
from authguard.utils.periodic import PeriodicTask
from authguard.utils.validators import ValidationError, normalize_identifier

__all__ = [
    "Clock",
    "ms_to_datetime",
    "now_ms",
    "get_secure_temp_dir",
    "get_session_dir",
    "PeriodicTask",
    "ValidationError",
    "normalize_identifier",
]
