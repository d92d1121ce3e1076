"""
Security State Monitor
======================

Periodic upkeep of stored security state:
- Automatic cleanup of expired records
- Health checks with corruption counts
- Corruption reports with escalating severity and automatic remediation

Corruption found by the store (unreadable, undecryptable or checksum
failures) is reported here through the store's corruption callback.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from authguard.core.config import MonitorConfig
from authguard.security.constants import REDACTED_TEXT, TRUNCATION_MARKER
from authguard.security.events import SecurityEventType, SecurityLog, SecuritySeverity, hash_identifier
from authguard.security.state import SecurityStateManager, SecurityStateRecord
from authguard.utils.clock import Clock, ms_to_datetime, now_ms
from authguard.utils.periodic import PeriodicTask

_COMPONENT = "SecurityMonitor"

CHECKSUM_MISMATCH = "checksum_mismatch"
INVALID_STRUCTURE = "invalid_structure"
INVALID_TIMESTAMPS = "invalid_timestamps"

_MAX_STATE_DATA_STRING = 100


@dataclass(frozen=True)
class SecurityStateHealth:
    """Result of one health check. Ages are milliseconds."""
    total_states: int
    expired_states: int
    corrupted_states: int
    valid_states: int
    oldest_state_age_ms: int
    newest_state_age_ms: int
    memory_usage_estimate: int
    last_cleanup_time: datetime
    last_health_check_time: datetime


@dataclass(frozen=True)
class CorruptionReport:
    identifier: str  # hashed
    corruption_type: str
    detected_at: datetime
    severity: SecuritySeverity
    corruption_count: int
    state_data: Dict[str, Any] = field(default_factory=dict)


def _corruption_type_for(reason: str) -> str:
    """Map a store purge reason to a corruption type."""
    if "checksum" in reason or "decryption" in reason:
        return CHECKSUM_MISMATCH
    return INVALID_STRUCTURE


class SecurityMonitor:
    """
    Background maintenance for a SecurityStateManager.

    Usage:
        monitor = SecurityMonitor(state_manager, security_log)
        monitor.start()
        ...
        monitor.close()
    """

    def __init__(
        self,
        state_manager: SecurityStateManager,
        security_log: SecurityLog,
        config: Optional[MonitorConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._state = state_manager
        self._security_log = security_log
        self._config = config or MonitorConfig()
        self._clock = clock or now_ms
        self._log = logging.getLogger("authguard.monitor")

        self._lock = threading.Lock()
        self._corruption_counts: Dict[str, int] = {}
        self._running = False
        self._cleanup_task: Optional[PeriodicTask] = None
        self._health_task: Optional[PeriodicTask] = None
        self._last_cleanup_time = ms_to_datetime(self._clock())
        self._last_health_check_time = ms_to_datetime(self._clock())

        self._hooked = False
        if self._config.enable_corruption_detection:
            self._state.store.add_corruption_listener(self._on_store_corruption)
            self._hooked = True

    @property
    def is_running(self) -> bool:
        return self._running

    def _event(self, event_type: SecurityEventType, action: str, message: str, **context: Any) -> None:
        self._security_log.log_event(event_type, {
            "additional_context": {"component": _COMPONENT, "action": action, **context},
        }, message)

    def _security_error(self, error: BaseException, action: str, **context: Any) -> None:
        self._security_log.log_security_error(SecurityEventType.STORAGE_ERROR, error, {
            "component": _COMPONENT, "action": action, **context,
        })

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Start the cleanup and health-check loops, as configured."""
        if self._running:
            self._event(
                SecurityEventType.STORAGE_ERROR, "start",
                "Attempted to start security monitor that is already running",
            )
            return

        self._running = True
        self._start_tasks()
        self._event(
            SecurityEventType.SECURITY_MAINTENANCE, "start", "Security monitor started successfully",
            cleanup_interval_ms=self._config.cleanup_interval_ms,
            health_check_interval_ms=self._config.health_check_interval_ms,
            max_state_age_ms=self._config.max_state_age_ms,
        )

    def _start_tasks(self) -> None:
        if self._config.enable_auto_cleanup:
            self._cleanup_task = PeriodicTask(
                "SecurityMonitor-Cleanup", self.cleanup_expired_states,
                self._config.cleanup_interval_ms, self._log,
            )
            self._cleanup_task.start()

        if self._config.enable_health_checks:
            self._health_task = PeriodicTask(
                "SecurityMonitor-Health", self.perform_health_check,
                self._config.health_check_interval_ms, self._log,
            )
            self._health_task.start()

    def _stop_tasks(self) -> None:
        for task in (self._cleanup_task, self._health_task):
            if task is not None:
                task.stop()
        self._cleanup_task = None
        self._health_task = None

    def stop(self) -> None:
        """Stop the loops. Safe to call when not running."""
        if not self._running:
            return

        self._running = False
        self._stop_tasks()
        self._event(SecurityEventType.SECURITY_MAINTENANCE, "stop", "Security monitor stopped")

    def close(self) -> None:
        """Stop and detach from the store's corruption callback."""
        self.stop()
        if self._hooked:
            self._state.store.remove_corruption_listener(self._on_store_corruption)
            self._hooked = False

    # ---------------------------------------------------------------- cleanup

    def cleanup_expired_states(self) -> int:
        """Sweep expired state now."""
        try:
            cleaned = self._state.cleanup_expired_states()
        except Exception as e:
            self._security_error(e, "cleanup_expired_states")
            raise

        self._last_cleanup_time = ms_to_datetime(self._clock())
        if cleaned > 0:
            self._event(
                SecurityEventType.SECURITY_MAINTENANCE, "cleanup_expired_states",
                f"Cleaned up {cleaned} expired security states",
                cleaned_count=cleaned,
            )
        return cleaned

    # ------------------------------------------------------------- integrity

    def _valid_timestamps(self, record: SecurityStateRecord, now: int) -> bool:
        last_attempt = record.last_attempt
        if last_attempt is not None:
            if last_attempt > now or now - last_attempt > self._config.max_state_age_ms:
                return False
            if record.lockout_until is not None and last_attempt > record.lockout_until:
                return False
        return True

    def validate_state_integrity(self, identifier: str) -> bool:
        """
        Check the stored record for ``identifier``.

        Problems are reported through :meth:`report_corruption`.

        Returns:
            True when there is no record or the record is sound
        """
        try:
            record = self._state.get_security_state(identifier)
            if record is None:
                return True

            if not self._state.validate_state(record).is_valid:
                self.report_corruption(identifier, INVALID_STRUCTURE, record.to_dict())
                return False

            if not self._valid_timestamps(record, self._clock()):
                self.report_corruption(identifier, INVALID_TIMESTAMPS, record.to_dict())
                return False

            return True
        except Exception as e:
            self._security_log.log_security_error(SecurityEventType.SECURITY_STATE_CORRUPTED, e, {
                "component": _COMPONENT,
                "action": "validate_state_integrity",
                "identifier": hash_identifier(identifier),
            })
            return False

    def determine_severity(self, corruption_type: str, count: int) -> SecuritySeverity:
        if count >= self._config.corruption_threshold:
            return SecuritySeverity.CRITICAL
        if corruption_type == CHECKSUM_MISMATCH:
            return SecuritySeverity.HIGH if count > 1 else SecuritySeverity.MEDIUM
        if corruption_type == INVALID_STRUCTURE:
            return SecuritySeverity.HIGH
        if corruption_type == INVALID_TIMESTAMPS:
            return SecuritySeverity.MEDIUM
        return SecuritySeverity.LOW

    @staticmethod
    def sanitize_state_data(state_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        sanitized: Dict[str, Any] = {}
        for key, value in (state_data or {}).items():
            if key in ("checksum", "identifier"):
                sanitized[key] = REDACTED_TEXT
            elif isinstance(value, str) and len(value) > _MAX_STATE_DATA_STRING:
                sanitized[key] = value[:_MAX_STATE_DATA_STRING] + TRUNCATION_MARKER
            else:
                sanitized[key] = value
        return sanitized

    def report_corruption(
        self,
        identifier: str,
        corruption_type: str,
        state_data: Optional[Dict[str, Any]] = None,
    ) -> CorruptionReport:
        """
        Record a corruption and remediate by severity.

        Critical and high reports clear the state; medium reports try a
        timestamp repair; low reports are only logged.
        """
        hashed = hash_identifier(identifier)
        with self._lock:
            count = self._corruption_counts.get(hashed, 0) + 1
            self._corruption_counts[hashed] = count

        report = CorruptionReport(
            identifier=hashed,
            corruption_type=corruption_type,
            detected_at=ms_to_datetime(self._clock()),
            severity=self.determine_severity(corruption_type, count),
            corruption_count=count,
            state_data=self.sanitize_state_data(state_data),
        )

        self._event(
            SecurityEventType.SECURITY_STATE_CORRUPTED, "report_corruption",
            f"Security state corruption detected: {corruption_type}",
            identifier=hashed,
            corruption_type=corruption_type,
            corruption_count=count,
            severity=report.severity.value,
            state_data=report.state_data,
        )

        self._handle_corruption(identifier, report)
        return report

    def _handle_corruption(self, identifier: str, report: CorruptionReport) -> None:
        try:
            if report.severity is SecuritySeverity.CRITICAL:
                self._state.clear_security_state(identifier)
                self._event(
                    SecurityEventType.SECURITY_STATE_CORRUPTED, "handle_corruption",
                    "Critical corruption detected - security state cleared",
                    severity=report.severity.value,
                    identifier=report.identifier,
                    action_taken="state_cleared",
                )
            elif report.severity is SecuritySeverity.HIGH:
                self._state.clear_security_state(identifier)
            elif report.severity is SecuritySeverity.MEDIUM:
                self.attempt_state_repair(identifier, report)
        except Exception as e:
            self._security_error(e, "handle_corruption", identifier=report.identifier)

    def attempt_state_repair(self, identifier: str, report: CorruptionReport) -> bool:
        """
        Fix timestamp problems in place.

        A last attempt in the future becomes now; a lockout in the past is
        dropped.

        Returns:
            True if a repaired record was written
        """
        if report.corruption_type != INVALID_TIMESTAMPS:
            return False

        try:
            record = self._state.get_security_state(identifier)
            if record is None:
                return False

            now = self._clock()
            last_attempt = record.last_attempt
            if last_attempt is not None and (last_attempt > now or last_attempt < 0):
                last_attempt = now

            lockout_until = record.lockout_until
            if lockout_until is not None and lockout_until < now:
                lockout_until = None

            self._state.set_security_state(
                identifier,
                failed_attempts=record.failed_attempts,
                lockout_until=lockout_until,
                last_attempt=last_attempt,
                progressive_delay=record.progressive_delay,
            )
        except Exception as e:
            self._security_error(e, "attempt_state_repair", identifier=report.identifier)
            return False

        self._event(
            SecurityEventType.SECURITY_MAINTENANCE, "attempt_state_repair",
            "Security state repaired successfully",
            identifier=report.identifier,
            repair_type="timestamp_fix",
            success=True,
        )
        return True

    def _on_store_corruption(self, key: str, reason: str) -> None:
        identifier = self._state.identifier_from_key(key)
        if identifier is None:
            return
        self.report_corruption(identifier, _corruption_type_for(reason), {"reason": reason})

    # ---------------------------------------------------------------- health

    def perform_health_check(self) -> SecurityStateHealth:
        """Validate every live record and log a summary."""
        try:
            records = self._state.get_all_security_states()
            now = self._clock()

            expired = corrupted = valid = 0
            oldest_age = 0
            newest_age: Optional[int] = None
            memory_usage = 0

            for record in records:
                if record.lockout_until is not None and record.lockout_until < now:
                    expired += 1

                if self.validate_state_integrity(record.identifier):
                    valid += 1
                else:
                    corrupted += 1

                if record.last_attempt is not None:
                    age = max(0, now - record.last_attempt)
                    oldest_age = max(oldest_age, age)
                    newest_age = age if newest_age is None else min(newest_age, age)

                memory_usage += len(record.to_json())

            self._last_health_check_time = ms_to_datetime(now)
            health = SecurityStateHealth(
                total_states=len(records),
                expired_states=expired,
                corrupted_states=corrupted,
                valid_states=valid,
                oldest_state_age_ms=oldest_age,
                newest_state_age_ms=newest_age or 0,
                memory_usage_estimate=memory_usage,
                last_cleanup_time=self._last_cleanup_time,
                last_health_check_time=self._last_health_check_time,
            )
        except Exception as e:
            self._security_error(e, "perform_health_check")
            raise

        self._event(
            SecurityEventType.SECURITY_MAINTENANCE, "perform_health_check",
            f"Security state health check completed - {health.total_states} total states",
            health={
                "total_states": health.total_states,
                "expired_states": health.expired_states,
                "corrupted_states": health.corrupted_states,
                "valid_states": health.valid_states,
                "memory_usage_kb": round(health.memory_usage_estimate / 1024),
            },
        )

        if health.corrupted_states > 0:
            self._event(
                SecurityEventType.SECURITY_STATE_CORRUPTED, "health_check_alert",
                f"Health check detected {health.corrupted_states} corrupted security states",
                corrupted_states=health.corrupted_states,
                total_states=health.total_states,
                corruption_rate=health.corrupted_states / health.total_states * 100,
            )

        return health

    def force_maintenance_check(self) -> Tuple[int, SecurityStateHealth]:
        """Run a cleanup and a health check now."""
        cleaned = self.cleanup_expired_states()
        health = self.perform_health_check()
        self._event(
            SecurityEventType.SECURITY_MAINTENANCE, "force_maintenance_check",
            "Forced maintenance check completed",
            cleaned_states=cleaned,
            total_states=health.total_states,
            corrupted_states=health.corrupted_states,
        )
        return cleaned, health

    # ---------------------------------------------------------------- status

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            counts = dict(self._corruption_counts)
        return {
            "is_running": self._running,
            "config": self._config,
            "last_cleanup_time": self._last_cleanup_time,
            "last_health_check_time": self._last_health_check_time,
            "corruption_counts": counts,
        }

    def update_config(self, **changes: Any) -> MonitorConfig:
        """Apply config changes and restart running loops on the new intervals."""
        self._config = replace(self._config, **changes)
        if self._running:
            self._stop_tasks()
            self._start_tasks()

        self._event(
            SecurityEventType.SECURITY_MAINTENANCE, "update_config",
            "Security monitor configuration updated",
            changed=sorted(changes),
        )
        return self._config
