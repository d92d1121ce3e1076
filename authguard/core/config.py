"""
Secure Configuration Module
===========================

Immutable, environment-aware configuration for the abuse-prevention engine.

Security Features:
- Immutable configuration after initialization
- Environment variable override support
- Sensitive keys can never be overridden from the environment
- Named security levels and deployment profiles
- All durations expressed in milliseconds, matching persisted records
"""

from __future__ import annotations

import dataclasses
import hashlib
import os
import platform
import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Final, Optional


_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "api_key",
    "private", "credential", "auth", "salt", "passphrase",
})

_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})

_VALID_LOG_LEVELS: Final[frozenset[str]] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR"})

SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS
HOUR_MS: Final[int] = 60 * MINUTE_MS


class ConfigurationError(ValueError):
    """Raised when a configuration value is out of range."""


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "AuthGuard"


def _default_durable_path() -> Path:
    return _get_default_data_dir() / "security_state.db"


def _require_positive(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Where and how records are persisted."""

    durable_path: Optional[Path] = field(default_factory=_default_durable_path)
    session_dir: Optional[Path] = None  # None means a per-login-session temp dir
    enable_session_tier: bool = True
    enable_encryption: bool = True
    enable_integrity_validation: bool = True
    kdf: str = "pbkdf2"
    kdf_iterations: int = 100_000
    key_passphrase: str = "authguard-security-salt"
    key_salt: bytes = b"authguard-security"
    format_version: int = 1

    def __post_init__(self) -> None:
        """Validate storage settings."""
        if self.kdf not in ("pbkdf2", "argon2id"):
            raise ConfigurationError(f"Unsupported key derivation function: {self.kdf}")
        if self.kdf_iterations < 100_000:
            raise ConfigurationError("Key derivation iterations must be at least 100,000")
        if not self.key_passphrase or not self.key_salt:
            raise ConfigurationError("Key derivation inputs cannot be empty")
        _require_positive("format_version", self.format_version)
        for field_name in ("durable_path", "session_dir"):
            path = getattr(self, field_name)
            if path is not None and not Path(path).is_absolute():
                raise ConfigurationError(f"{field_name} must be an absolute path: {path}")


@dataclass(frozen=True, slots=True)
class StateConfig:
    """Lifecycle of per-identifier security state records."""

    storage_prefix: str = "security_state"
    max_age_ms: int = 24 * HOUR_MS
    cleanup_interval_ms: int = HOUR_MS
    sync_interval_ms: int = 5 * SECOND_MS
    version: int = 1
    enable_background_tasks: bool = True
    enable_cross_context_sync: bool = True

    def __post_init__(self) -> None:
        """Validate state settings."""
        if not self.storage_prefix or self.storage_prefix.endswith("_"):
            raise ConfigurationError("storage_prefix must be non-empty and not end with '_'")
        _require_positive("max_age_ms", self.max_age_ms)
        _require_positive("cleanup_interval_ms", self.cleanup_interval_ms)
        _require_positive("sync_interval_ms", self.sync_interval_ms)
        _require_positive("version", self.version)


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Attempt threshold, lockout window and progressive delay curve."""

    max_attempts: int = 5
    lockout_duration_ms: int = 15 * MINUTE_MS
    enable_rate_limiting: bool = True
    enable_progressive_delay: bool = True
    enable_lockout: bool = True
    base_delay_ms: int = 1000
    max_delay_ms: int = 30 * SECOND_MS
    delay_multiplier: float = 2.0

    def __post_init__(self) -> None:
        """Validate rate limit settings."""
        _require_positive("max_attempts", self.max_attempts)
        _require_positive("lockout_duration_ms", self.lockout_duration_ms)
        if self.lockout_duration_ms > 24 * HOUR_MS:
            raise ConfigurationError("lockout_duration_ms cannot exceed 24 hours")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ConfigurationError("Delay bounds must satisfy 0 <= base_delay_ms <= max_delay_ms")
        if self.delay_multiplier < 1.0:
            raise ConfigurationError("delay_multiplier must be at least 1.0")


@dataclass(frozen=True, slots=True)
class ErrorHandlingConfig:
    """Error triage behaviour."""

    enable_logging: bool = True
    sanitize_messages: bool = True
    include_stack_trace: bool = False
    max_context_length: int = 500

    def __post_init__(self) -> None:
        _require_positive("max_context_length", self.max_context_length)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Security event logging."""

    enabled: bool = True
    min_level: str = "INFO"
    enable_console: bool = True
    enable_file: bool = False
    enable_json: bool = False
    log_dir: Optional[Path] = None
    audit_log_path: Optional[Path] = None
    max_detail_length: int = 1000
    include_stack_trace: bool = False
    recent_event_limit: int = 256

    def __post_init__(self) -> None:
        """Validate logging settings."""
        level = "WARNING" if self.min_level.upper() == "WARN" else self.min_level.upper()
        if level not in _VALID_LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.min_level}")
        object.__setattr__(self, "min_level", level)
        _require_positive("max_detail_length", self.max_detail_length)
        _require_positive("recent_event_limit", self.recent_event_limit)


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Periodic health checks and corruption handling."""

    cleanup_interval_ms: int = 5 * MINUTE_MS
    health_check_interval_ms: int = 10 * MINUTE_MS
    max_state_age_ms: int = 24 * HOUR_MS
    corruption_threshold: int = 3
    enable_auto_cleanup: bool = True
    enable_health_checks: bool = True
    enable_corruption_detection: bool = True

    def __post_init__(self) -> None:
        _require_positive("cleanup_interval_ms", self.cleanup_interval_ms)
        _require_positive("health_check_interval_ms", self.health_check_interval_ms)
        _require_positive("max_state_age_ms", self.max_state_age_ms)
        _require_positive("corruption_threshold", self.corruption_threshold)


class SecurityLevel(Enum):
    """Named rate-limit presets."""
    LENIENT = "lenient"
    MODERATE = "moderate"
    STRICT = "strict"


# Section attribute name -> section dataclass
_SECTIONS: Final[dict[str, type]] = {
    "storage": StorageConfig,
    "state": StateConfig,
    "rate_limit": RateLimitConfig,
    "error_handling": ErrorHandlingConfig,
    "logging": LoggingConfig,
    "monitor": MonitorConfig,
}


class AuthGuardConfig:
    """
    Centralized, immutable configuration with environment override support.

    Environment variables are prefixed with AUTHGUARD_ and use a double
    underscore between section and field:

        AUTHGUARD_RATE_LIMIT__MAX_ATTEMPTS=3
        AUTHGUARD_STATE__SYNC_INTERVAL_MS=2000
        AUTHGUARD_LOGGING__MIN_LEVEL=DEBUG

    Usage:
        config = AuthGuardConfig.load()
        max_attempts = config.rate_limit.max_attempts
    """

    __slots__ = (
        "_storage", "_state", "_rate_limit", "_error_handling",
        "_logging", "_monitor", "_environment", "_frozen", "_config_hash",
    )

    _instance: Optional[AuthGuardConfig] = None

    def __init__(
        self,
        storage: Optional[StorageConfig] = None,
        state: Optional[StateConfig] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        error_handling: Optional[ErrorHandlingConfig] = None,
        logging: Optional[LoggingConfig] = None,
        monitor: Optional[MonitorConfig] = None,
        environment: str = "production",
    ) -> None:
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_storage", storage or StorageConfig())
        object.__setattr__(self, "_state", state or StateConfig())
        object.__setattr__(self, "_rate_limit", rate_limit or RateLimitConfig())
        object.__setattr__(self, "_error_handling", error_handling or ErrorHandlingConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_monitor", monitor or MonitorConfig())
        object.__setattr__(self, "_environment", environment)
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

        if environment == "production" and not self._storage.enable_encryption:
            warnings.warn(
                "Encrypted storage is disabled in a production configuration.",
                SecurityWarning,
                stacklevel=2,
            )

    def _compute_hash(self) -> str:
        """Compute a hash of the configuration for integrity checking."""
        config_str = "|".join(
            repr(getattr(self, f"_{name}")) for name in _SECTIONS
        ) + f"|{self._environment}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def storage(self) -> StorageConfig:
        return self._storage

    @property
    def state(self) -> StateConfig:
        return self._state

    @property
    def rate_limit(self) -> RateLimitConfig:
        return self._rate_limit

    @property
    def error_handling(self) -> ErrorHandlingConfig:
        return self._error_handling

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def monitor(self) -> MonitorConfig:
        return self._monitor

    @property
    def environment(self) -> str:
        return self._environment

    @property
    def config_hash(self) -> str:
        """Get configuration integrity hash."""
        return self._config_hash

    def replace(self, **sections: Any) -> AuthGuardConfig:
        """
        Return a copy with whole sections swapped out.

        Args:
            **sections: Section name to new section instance, plus
                optionally ``environment``

        Returns:
            New AuthGuardConfig
        """
        kwargs: dict[str, Any] = {name: getattr(self, name) for name in _SECTIONS}
        kwargs["environment"] = self._environment
        unknown = set(sections) - set(kwargs)
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")
        kwargs.update(sections)
        return AuthGuardConfig(**kwargs)

    @classmethod
    def load(
        cls,
        env_prefix: str = "AUTHGUARD",
        base: Optional[AuthGuardConfig] = None,
    ) -> AuthGuardConfig:
        """
        Load configuration with environment variable overrides.

        Args:
            env_prefix: Prefix for environment variables (default: AUTHGUARD)
            base: Configuration to apply overrides on top of. Defaults to the
                profile named by ``<PREFIX>_ENVIRONMENT``, or production.

        Returns:
            Configured AuthGuardConfig instance

        Raises:
            ConfigurationError: If an override cannot be coerced or is out of range
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        # AUTHGUARD_ENVIRONMENT selects the starting profile
        environment = env_overrides.pop("environment", None)
        if base is None:
            base = cls.for_environment(environment) if environment else cls()
        environment = environment or base.environment

        grouped: dict[str, dict[str, str]] = {}
        for dotted, raw in env_overrides.items():
            section, _, name = dotted.partition(".")
            if section in _SECTIONS and name:
                grouped.setdefault(section, {})[name] = raw

        sections: dict[str, Any] = {}
        for section, raw_values in grouped.items():
            current = getattr(base, section)
            sections[section] = dataclasses.replace(
                current, **_coerce_overrides(current, raw_values)
            )

        return base.replace(environment=environment, **sections)

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                # Never accept key material from the environment
                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    @classmethod
    def for_environment(cls, environment: str) -> AuthGuardConfig:
        """
        Build the profile for a deployment environment.

        Args:
            environment: "production", "development" or "test"

        Returns:
            AuthGuardConfig tuned for that environment
        """
        if environment == "production":
            return cls()
        if environment == "development":
            return cls(
                storage=StorageConfig(enable_encryption=False),
                state=StateConfig(storage_prefix="dev_security_state"),
                rate_limit=RateLimitConfig(
                    max_attempts=3,
                    lockout_duration_ms=5 * MINUTE_MS,
                    base_delay_ms=500,
                    max_delay_ms=10 * SECOND_MS,
                    delay_multiplier=1.5,
                ),
                error_handling=ErrorHandlingConfig(sanitize_messages=False),
                logging=LoggingConfig(min_level="DEBUG"),
                monitor=MonitorConfig(cleanup_interval_ms=30 * SECOND_MS),
                environment="development",
            )
        if environment == "test":
            return cls(
                storage=StorageConfig(
                    durable_path=None,
                    enable_session_tier=False,
                    enable_encryption=False,
                    enable_integrity_validation=False,
                ),
                state=StateConfig(
                    storage_prefix="test_security_state",
                    enable_background_tasks=False,
                    enable_cross_context_sync=False,
                ),
                rate_limit=RateLimitConfig(
                    max_attempts=2,
                    lockout_duration_ms=SECOND_MS,
                    enable_progressive_delay=False,
                    base_delay_ms=100,
                    max_delay_ms=SECOND_MS,
                ),
                error_handling=ErrorHandlingConfig(enable_logging=False),
                logging=LoggingConfig(enabled=False, min_level="ERROR", enable_console=False),
                monitor=MonitorConfig(cleanup_interval_ms=SECOND_MS),
                environment="test",
            )
        raise ConfigurationError(f"Unknown environment: {environment}")

    @classmethod
    def for_security_level(
        cls,
        level: SecurityLevel,
        base: Optional[AuthGuardConfig] = None,
    ) -> AuthGuardConfig:
        """
        Apply a named security level on top of a base configuration.

        Args:
            level: LENIENT, MODERATE or STRICT
            base: Configuration to start from (defaults to production)

        Returns:
            AuthGuardConfig with the preset's rate limit and logging policy
        """
        base = base or cls()
        if level is SecurityLevel.MODERATE:
            return base.replace(rate_limit=RateLimitConfig())
        if level is SecurityLevel.LENIENT:
            return base.replace(
                rate_limit=RateLimitConfig(
                    max_attempts=10,
                    lockout_duration_ms=5 * MINUTE_MS,
                    enable_progressive_delay=False,
                    base_delay_ms=500,
                    max_delay_ms=5 * SECOND_MS,
                ),
                logging=dataclasses.replace(base.logging, min_level="WARNING"),
            )
        return base.replace(
            rate_limit=RateLimitConfig(
                max_attempts=3,
                lockout_duration_ms=30 * MINUTE_MS,
                base_delay_ms=2 * SECOND_MS,
                max_delay_ms=MINUTE_MS,
            ),
            error_handling=dataclasses.replace(base.error_handling, sanitize_messages=True),
            monitor=dataclasses.replace(base.monitor, cleanup_interval_ms=30 * SECOND_MS),
        )

    @classmethod
    def get_instance(cls) -> AuthGuardConfig:
        """Get or create the process-wide configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Use only for testing."""
        cls._instance = None

    def __repr__(self) -> str:
        """Safe string representation without key material."""
        return f"AuthGuardConfig(hash={self._config_hash}, environment={self._environment})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if getattr(self, "_frozen", False):
            raise AttributeError("AuthGuardConfig is immutable after initialization")
        super().__setattr__(name, value)


def _coerce_overrides(section: Any, raw_values: dict[str, str]) -> dict[str, Any]:
    """Convert raw environment strings to the type of each field's current value."""
    names = {f.name: f for f in dataclasses.fields(section)}
    coerced: dict[str, Any] = {}

    for name, raw in raw_values.items():
        if name not in names:
            raise ConfigurationError(f"Unknown configuration field: {name}")
        current = getattr(section, name)
        try:
            if isinstance(current, bool):
                coerced[name] = raw.strip().lower() in _TRUE_VALUES
            elif isinstance(current, int):
                coerced[name] = int(raw)
            elif isinstance(current, float):
                coerced[name] = float(raw)
            elif isinstance(current, Path) or "Path" in str(names[name].type):
                coerced[name] = Path(raw) if raw else None
            else:
                coerced[name] = raw
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e

    return coerced
