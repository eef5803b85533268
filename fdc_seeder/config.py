"""Seeder configuration loaded from YAML with environment overrides."""
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from fdc_seeder.ingestion.ingestion_errors import ConfigError
from fdc_seeder.ingestion.usda_client import (
    DEMO_API_KEY,
    MAX_PAGE_SIZE,
    DataType,
)

ENV_OVERRIDES = {
    "USDA_API_KEY": "api_key",
    "FDC_SEEDER_DATABASE_URL": "database_url",
    "FDC_SEEDER_CHECKPOINT": "checkpoint_path",
    "FDC_SEEDER_LOG_LEVEL": "log_level",
}

POSITIVE_NUMBERS = (
    "page_size",
    "batch_size",
    "request_timeout",
    "max_retries",
    "backoff_base",
    "max_retry_delay",
    "page_retry_budget",
    "error_cap",
    "monitor_interval",
    "max_save_failures",
)


@dataclass
class SeederConfig:
    """All tunables of the seeding job and the monitor."""

    api_key: str = DEMO_API_KEY
    base_url: str = "https://api.nal.usda.gov/fdc/v1"
    data_types: List[str] = field(default_factory=DataType.default_partitions)
    page_size: int = MAX_PAGE_SIZE
    batch_size: int = 100
    requests_per_hour: Optional[int] = None
    request_timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 2.0
    max_retry_delay: float = 2 * 60 * 60
    page_retry_budget: int = 3
    page_retry_delay: float = 30.0
    checkpoint_path: str = "usda-seeding-progress.json"
    database_url: str = "sqlite:///ingredients.db"
    error_cap: int = 50
    monitor_interval: float = 10.0
    max_save_failures: int = 10
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    @property
    def uses_demo_key(self) -> bool:
        return not self.api_key or self.api_key == DEMO_API_KEY

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value
        """
        for name in POSITIVE_NUMBERS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"'{name}' must be a positive number, got {value!r}", key=name)
        if self.page_size > MAX_PAGE_SIZE:
            raise ConfigError(f"'page_size' cannot exceed {MAX_PAGE_SIZE}", key="page_size")
        if self.page_retry_delay < 0:
            raise ConfigError("'page_retry_delay' cannot be negative", key="page_retry_delay")
        if self.requests_per_hour is not None and self.requests_per_hour <= 0:
            raise ConfigError("'requests_per_hour' must be positive", key="requests_per_hour")
        if not self.data_types or not all(isinstance(dt, str) and dt for dt in self.data_types):
            raise ConfigError("'data_types' must be a non-empty list of names", key="data_types")
        if len(set(self.data_types)) != len(self.data_types):
            raise ConfigError("'data_types' contains duplicates", key="data_types")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SeederConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}", key=unknown[0])
        try:
            return cls(**dict(data))
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(
        cls,
        yaml_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None
    ) -> "SeederConfig":
        """Load configuration.

        Order of precedence: environment > YAML file > defaults.

        Args:
            yaml_path: Optional YAML file with top-level config keys
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ConfigError: If the file is missing, malformed or holds invalid values
        """
        data: Dict[str, Any] = {}
        if yaml_path:
            path = Path(yaml_path)
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            try:
                with open(path, "r") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")
            data.update(loaded)

        config = cls.from_mapping(data)

        env = os.environ if environ is None else environ
        overrides = {
            attr: env[var] for var, attr in ENV_OVERRIDES.items() if env.get(var)
        }
        if overrides:
            config = replace(config, **overrides)
        return config
