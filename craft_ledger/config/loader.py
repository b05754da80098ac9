"""
Configuration management and loading.

Handles metering settings from YAML and runtime settings from environment
variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from craft_ledger.core.exceptions import ConfigurationError
from craft_ledger.core.guardrails import BalanceThresholds
from craft_ledger.core.ledger import RetryPolicy
from craft_ledger.storage.db import DEFAULT_DB_PATH

ENV_DB_PATH = "CRAFT_LEDGER_DB"
ENV_CONFIG_PATH = "CRAFT_LEDGER_CONFIG"
ENV_CRON_SECRET = "CRON_SECRET"
ENV_ENVIRONMENT = "CRAFT_ENV"

PRODUCTION = "production"


@dataclass(frozen=True)
class ScheduleConfig:
    """When the daily charges run, as a UTC hour of the hourly job."""
    daily_billing_hour: int = 0

    def __post_init__(self):
        """Validate hour range."""
        if not 0 <= self.daily_billing_hour <= 23:
            raise ValueError("daily_billing_hour must be between 0 and 23")


@dataclass(frozen=True)
class ExpirationConfig:
    """Top-up lifetime and the advance notice window."""
    topup_lifetime_days: int = 365
    expiry_notice_days: int = 30

    def __post_init__(self):
        """Validate day counts are positive."""
        if self.topup_lifetime_days <= 0:
            raise ValueError("topup_lifetime_days must be > 0")
        if self.expiry_notice_days <= 0:
            raise ValueError("expiry_notice_days must be > 0")


@dataclass(frozen=True)
class RunConfig:
    """Per-run limits of the metering job."""
    budget_seconds: float = 50.0
    max_workers: int = 1

    def __post_init__(self):
        """Validate run limits."""
        if self.budget_seconds <= 0:
            raise ValueError("budget_seconds must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(frozen=True)
class UsageEstimates:
    """Daily usage assumed where no measurement exists."""
    database_storage_gb: Decimal = Decimal("0.5")
    file_storage_gb: Decimal = Decimal("0.1")
    runtime_cpu_hours: Decimal = Decimal("0.01")
    runtime_memory_gb_hours: Decimal = Decimal("0.5")
    runtime_invocations: int = 100

    def __post_init__(self):
        """Validate estimates are non-negative."""
        for name, value in self.__dict__.items():
            if value < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    thresholds: BalanceThresholds = field(default_factory=BalanceThresholds)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    expiration: ExpirationConfig = field(default_factory=ExpirationConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    run: RunConfig = field(default_factory=RunConfig)
    estimates: UsageEstimates = field(default_factory=UsageEstimates)


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""
    db_path: str = DEFAULT_DB_PATH
    cron_secret: Optional[str] = None
    environment: str = "development"
    config: MeteringConfig = field(default_factory=MeteringConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION


_SECTION_KEYS = {
    "thresholds": {"minimum", "warning"},
    "schedule": {"daily_billing_hour"},
    "expiration": {"topup_lifetime_days", "expiry_notice_days"},
    "retry": {"attempts", "base_delay", "max_delay"},
    "run": {"budget_seconds", "max_workers"},
    "estimates": {
        "database_storage_gb",
        "file_storage_gb",
        "runtime_cpu_hours",
        "runtime_memory_gb_hours",
        "runtime_invocations",
    },
}


def load_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown sections
    or keys are rejected. Missing sections and keys take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeteringConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping of sections")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    thresholds = sections["thresholds"]
    retry = sections["retry"]
    estimates = sections["estimates"]

    return MeteringConfig(
        thresholds=BalanceThresholds(
            **{k: _decimal(v, f"thresholds.{k}") for k, v in thresholds.items()}
        ),
        schedule=ScheduleConfig(**_ints(sections["schedule"], "schedule")),
        expiration=ExpirationConfig(**_ints(sections["expiration"], "expiration")),
        retry=RetryPolicy(
            **{
                k: (_int(v, f"retry.{k}") if k == "attempts" else _float(v, f"retry.{k}"))
                for k, v in retry.items()
            }
        ),
        run=RunConfig(
            **{
                k: (_int(v, f"run.{k}") if k == "max_workers" else _float(v, f"run.{k}"))
                for k, v in sections["run"].items()
            }
        ),
        estimates=UsageEstimates(
            **{
                k: (
                    _int(v, f"estimates.{k}")
                    if k == "runtime_invocations"
                    else _decimal(v, f"estimates.{k}")
                )
                for k, v in estimates.items()
            }
        ),
    )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve runtime settings from environment variables.

    ``CRAFT_LEDGER_CONFIG`` optionally points at a YAML metering config.

    Raises:
        ConfigurationError: If the referenced config file cannot be loaded
    """
    env = os.environ if environ is None else environ

    config = MeteringConfig()
    config_path = env.get(ENV_CONFIG_PATH)
    if config_path:
        try:
            config = load_config(config_path)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(str(e)) from e

    return Settings(
        db_path=env.get(ENV_DB_PATH) or DEFAULT_DB_PATH,
        cron_secret=env.get(ENV_CRON_SECRET) or None,
        environment=(env.get(ENV_ENVIRONMENT) or "development").lower(),
        config=config,
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _float(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _ints(data: Dict[str, Any], section: str) -> Dict[str, int]:
    return {k: _int(v, f"{section}.{k}") for k, v in data.items()}
