"""
Configuration Management for the Alert Engine

Provides layered configuration (defaults, then a YAML/JSON file, then
CKD_ALERTS_* environment variables) with validation of ranges and clinical
business rules for rule thresholds and escalation intervals.
"""

import os
import json
import yaml
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, asdict, field, fields
from enum import Enum
from pathlib import Path


class ConfigurationError(ValueError):
    """Raised when configuration fails validation or cannot be parsed."""
    pass


class ConfigSource(Enum):
    """Configuration sources in order of precedence."""
    ENVIRONMENT = "environment"
    FILE = "file"
    DEFAULT = "default"


@dataclass
class ConfigValue:
    """Configuration value with metadata."""
    key: str
    value: Any
    source: ConfigSource
    last_updated: datetime
    description: Optional[str] = None


@dataclass
class AlertEngineConfig:
    """Complete alert engine configuration."""

    # Weight gain rule (absolute delta in kg over a trailing window)
    weight_gain_window_hours: int = 48
    weight_gain_warning_kg: float = 1.36   # ~3 lbs
    weight_gain_critical_kg: float = 2.27  # ~5 lbs

    # Single-reading rules
    bp_systolic_high_warning: float = 180.0
    bp_systolic_high_critical: float = 200.0
    bp_systolic_low_warning: float = 90.0
    bp_systolic_low_critical: float = 80.0
    spo2_low_warning: float = 92.0
    spo2_low_critical: float = 88.0

    # Escalation policy: minutes before each level, last entry repeats
    escalation_tick_seconds: float = 60.0
    critical_escalation_minutes: List[int] = field(default_factory=lambda: [15, 30, 60])
    warning_escalation_minutes: List[int] = field(default_factory=lambda: [60, 120, 240])
    info_escalation_minutes: List[int] = field(default_factory=lambda: [240, 480])
    critical_max_escalation_level: int = 3
    warning_max_escalation_level: int = 3
    info_max_escalation_level: int = 2

    # Notification settings
    notification_rate_limit_minutes: int = 60
    notification_max_retries: int = 2
    notification_retry_base_delay: float = 30.0
    notification_retry_max_delay: float = 300.0
    email_timeout_seconds: float = 10.0
    email_from: str = "alerts@ckd-platform.local"
    dashboard_url: str = "http://localhost:3000"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True

    # Concurrency
    lock_timeout_seconds: float = 5.0
    tick_claim_enabled: bool = False
    tick_claim_key: str = "ckd_alerts:escalation_tick"
    tick_claim_ttl_seconds: int = 300
    redis_url: Optional[str] = None

    # Environment-specific settings
    environment: str = "development"
    debug_enabled: bool = False
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlertEngineConfig':
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


class ConfigValidator:
    """Configuration validation with type checking and business rules."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

        self.validation_rules = {
            'weight_gain_window_hours': {
                'type': int,
                'min': 1,
                'max': 168,
                'description': 'Trailing window for weight gain in hours'
            },
            'weight_gain_warning_kg': {
                'type': (int, float),
                'min': 0.1,
                'max': 10.0,
                'description': 'Weight gain that raises a WARNING alert'
            },
            'weight_gain_critical_kg': {
                'type': (int, float),
                'min': 0.1,
                'max': 20.0,
                'description': 'Weight gain that raises a CRITICAL alert'
            },
            'spo2_low_warning': {
                'type': (int, float),
                'min': 50.0,
                'max': 100.0,
                'description': 'SpO2 below which a WARNING alert is raised'
            },
            'escalation_tick_seconds': {
                'type': (int, float),
                'min': 1.0,
                'max': 3600.0,
                'description': 'Escalation tick period'
            },
            'notification_rate_limit_minutes': {
                'type': int,
                'min': 0,
                'max': 1440,
                'description': 'Minimum gap between initial notifications per clinician and patient'
            },
            'notification_max_retries': {
                'type': int,
                'min': 0,
                'max': 10,
                'description': 'Retries for FAILED notification attempts'
            },
            'email_timeout_seconds': {
                'type': (int, float),
                'min': 0.1,
                'max': 120.0,
                'description': 'Maximum time for one email send'
            },
            'lock_timeout_seconds': {
                'type': (int, float),
                'min': 0.1,
                'max': 60.0,
                'description': 'Maximum wait for the per-patient evaluation lock'
            },
            'tick_claim_ttl_seconds': {
                'type': int,
                'min': 1,
                'max': 3600,
                'description': 'Expiry of the distributed escalation tick claim'
            },
            'environment': {
                'type': str,
                'allowed_values': ['development', 'testing', 'staging', 'production'],
                'description': 'Deployment environment'
            },
            'log_level': {
                'type': str,
                'allowed_values': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                'description': 'Logging level'
            }
        }

    def validate_config(self, config: AlertEngineConfig) -> List[str]:
        """
        Validate configuration against rules.

        Args:
            config: Configuration to validate

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        config_dict = config.to_dict()

        for key, value in config_dict.items():
            if key in self.validation_rules:
                errors.extend(self._validate_field(key, value, self.validation_rules[key]))

        errors.extend(self._validate_business_rules(config))
        return errors

    def _validate_field(self, field_name: str, value: Any, rules: Dict[str, Any]) -> List[str]:
        """Validate individual field against rules."""
        errors = []

        expected_type = rules.get('type')
        if expected_type and (not isinstance(value, expected_type) or isinstance(value, bool)):
            type_name = getattr(expected_type, '__name__', 'number')
            errors.append(f"{field_name}: Expected {type_name}, got {type(value).__name__}")
            return errors

        if isinstance(value, (int, float)):
            min_val = rules.get('min')
            max_val = rules.get('max')

            if min_val is not None and value < min_val:
                errors.append(f"{field_name}: Value {value} below minimum {min_val}")

            if max_val is not None and value > max_val:
                errors.append(f"{field_name}: Value {value} above maximum {max_val}")

        allowed_values = rules.get('allowed_values')
        if allowed_values and value not in allowed_values:
            errors.append(f"{field_name}: Value '{value}' not in allowed values: {allowed_values}")

        return errors

    def _validate_business_rules(self, config: AlertEngineConfig) -> List[str]:
        """Validate business logic rules."""
        errors = []

        # CRITICAL must be at least as strict as WARNING
        if config.weight_gain_critical_kg < config.weight_gain_warning_kg:
            errors.append("Critical weight gain threshold must not be below the warning threshold")
        if config.bp_systolic_high_critical < config.bp_systolic_high_warning:
            errors.append("Critical high systolic threshold must not be below the warning threshold")
        if config.bp_systolic_low_critical > config.bp_systolic_low_warning:
            errors.append("Critical low systolic threshold must not exceed the warning threshold")
        if config.spo2_low_critical > config.spo2_low_warning:
            errors.append("Critical SpO2 threshold must not exceed the warning threshold")
        if config.bp_systolic_low_warning >= config.bp_systolic_high_warning:
            errors.append("Low systolic threshold must be below the high systolic threshold")

        for severity in ('critical', 'warning', 'info'):
            intervals = getattr(config, f"{severity}_escalation_minutes")
            max_level = getattr(config, f"{severity}_max_escalation_level")
            errors.extend(self._validate_intervals(severity, intervals, max_level))

        if config.notification_retry_max_delay < config.notification_retry_base_delay:
            errors.append("Maximum retry delay must be greater than base delay")

        if config.tick_claim_enabled and not config.redis_url:
            errors.append("tick_claim_enabled requires redis_url")

        if config.tick_claim_ttl_seconds < config.escalation_tick_seconds:
            errors.append("Tick claim TTL should cover at least one escalation tick period")

        if config.environment == "production":
            if config.debug_enabled:
                errors.append("Debug mode should not be enabled in production")

            if config.log_level == "DEBUG":
                errors.append("Debug logging should not be used in production")

        return errors

    def _validate_intervals(self, severity: str, intervals: Any, max_level: Any) -> List[str]:
        errors = []
        if not isinstance(intervals, list) or not intervals:
            return [f"{severity}_escalation_minutes: must be a non-empty list"]
        if any(not isinstance(m, int) or isinstance(m, bool) or m <= 0 for m in intervals):
            errors.append(f"{severity}_escalation_minutes: intervals must be positive integers")
        elif any(later < earlier for earlier, later in zip(intervals, intervals[1:])):
            errors.append(f"{severity}_escalation_minutes: intervals must be non-decreasing")
        if not isinstance(max_level, int) or max_level < 0:
            errors.append(f"{severity}_max_escalation_level: must be a non-negative integer")
        return errors


class ConfigManager:
    """
    Layered configuration manager.

    Values are resolved with precedence environment > file > default, then
    validated as a whole. The source of every value is kept for reporting.
    """

    ENV_PREFIX = "CKD_ALERTS_"

    def __init__(self, config_file_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.logger = logging.getLogger(__name__)
        self.validator = ConfigValidator()

        self.config_values: Dict[str, ConfigValue] = {}
        self.current_config: Optional[AlertEngineConfig] = None
        self.config_file_path = config_file_path
        self._environ = environ if environ is not None else os.environ

    def load(self) -> AlertEngineConfig:
        """Load configuration from all sources and validate it."""
        try:
            self._load_default_config()

            if self.config_file_path:
                self._load_file_config(self.config_file_path)

            self._load_environment_config()

            config = self._build_current_config()
            self.logger.info("Configuration initialized successfully")
            return config

        except Exception as e:
            self.logger.error(f"Failed to initialize configuration: {str(e)}")
            raise

    def _load_default_config(self):
        """Load default configuration values."""
        default_config = AlertEngineConfig()

        for key, value in default_config.to_dict().items():
            self.config_values[key] = ConfigValue(
                key=key,
                value=value,
                source=ConfigSource.DEFAULT,
                last_updated=datetime.now(timezone.utc),
                description=f"Default value for {key}"
            )

        self.logger.debug("Default configuration loaded")

    def _load_file_config(self, file_path: str):
        """Load configuration from a YAML or JSON file."""
        path = Path(file_path)
        if not path.exists():
            self.logger.warning(f"Configuration file {file_path} does not exist")
            return

        suffix = path.suffix.lower()
        if suffix not in ('.json', '.yml', '.yaml'):
            raise ConfigurationError(f"Unsupported configuration file format: {path.suffix}")

        try:
            with open(path, 'r') as f:
                if suffix == '.json':
                    file_config = json.load(f)
                else:
                    file_config = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read configuration file {file_path}: {e}") from e

        if file_config is None:
            return
        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration file {file_path} must contain a mapping")

        for key, value in file_config.items():
            if key not in self.config_values:
                self.logger.warning(f"Ignoring unknown configuration key in {file_path}: {key}")
                continue
            self.config_values[key] = ConfigValue(
                key=key,
                value=value,
                source=ConfigSource.FILE,
                last_updated=datetime.now(timezone.utc),
                description=f"Value from file {file_path}"
            )

        self.logger.info(f"Configuration loaded from file: {file_path}")

    def _load_environment_config(self):
        """Load configuration from environment variables."""
        for key in list(self.config_values):
            env_var = f"{self.ENV_PREFIX}{key.upper()}"
            env_value = self._environ.get(env_var)

            if env_value is None:
                continue

            default_value = getattr(AlertEngineConfig(), key)
            try:
                parsed_value = self._parse_env_value(env_value, default_value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}") from e

            self.config_values[key] = ConfigValue(
                key=key,
                value=parsed_value,
                source=ConfigSource.ENVIRONMENT,
                last_updated=datetime.now(timezone.utc),
                description=f"Value from environment variable {env_var}"
            )

        self.logger.debug("Environment configuration loaded")

    def _parse_env_value(self, env_value: str, default_value: Any) -> Any:
        """Parse environment variable value to the type of the default."""
        if isinstance(default_value, bool):
            return env_value.lower() in ('true', '1', 'yes', 'on')
        elif isinstance(default_value, int):
            return int(env_value)
        elif isinstance(default_value, float):
            return float(env_value)
        elif isinstance(default_value, list):
            return [int(part) for part in env_value.split(',') if part.strip()]
        else:
            return env_value

    def _build_current_config(self) -> AlertEngineConfig:
        """Build current configuration from all sources."""
        config_dict = {key: value.value for key, value in self.config_values.items()}
        try:
            new_config = AlertEngineConfig.from_dict(config_dict)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e

        validation_errors = self.validator.validate_config(new_config)
        if validation_errors:
            self.logger.error(f"Configuration validation failed: {validation_errors}")
            raise ConfigurationError(f"Configuration validation errors: {validation_errors}")

        self.current_config = new_config
        self.logger.info("Configuration built and validated successfully")
        return new_config

    def get_config(self) -> AlertEngineConfig:
        """Return the current configuration."""
        if self.current_config is None:
            raise RuntimeError("Configuration not initialized")
        return self.current_config

    def get_config_info(self) -> Dict[str, Any]:
        """Configuration values with their sources."""
        return {
            'current_config': self.current_config.to_dict() if self.current_config else None,
            'config_sources': {
                key: {
                    'value': value.value,
                    'source': value.source.value,
                    'last_updated': value.last_updated.isoformat()
                }
                for key, value in self.config_values.items()
            },
            'validation_status': 'valid' if self.current_config else 'invalid'
        }


class EnvironmentConfigBuilder:
    """Pre-configured settings for deployment environments."""

    @staticmethod
    def development_config() -> AlertEngineConfig:
        return AlertEngineConfig(
            environment="development",
            debug_enabled=True,
            log_level="DEBUG",
            escalation_tick_seconds=30.0
        )

    @staticmethod
    def testing_config() -> AlertEngineConfig:
        return AlertEngineConfig(
            environment="testing",
            log_level="INFO",
            notification_retry_base_delay=0.01,
            notification_retry_max_delay=0.05,
            email_timeout_seconds=1.0,
            lock_timeout_seconds=1.0
        )

    @staticmethod
    def production_config() -> AlertEngineConfig:
        return AlertEngineConfig(
            environment="production",
            debug_enabled=False,
            log_level="WARNING",
            tick_claim_enabled=True,
            redis_url="redis://localhost:6379/0"
        )


def configure_logging(level: str = "INFO"):
    """Configure root logging for the alert engine process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
