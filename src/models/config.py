"""Configuration management for the GitHub ingestion pipeline."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

_REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ScheduleSeed(BaseModel):
    """Schedule declared in the config file and created by `schedules seed`."""
    name: str = Field(description="Human readable schedule name")
    pipeline_type: str = Field(description="Registered pipeline type to run")
    cron_expression: str = Field(description="Five-field cron expression")
    time_zone: str = Field(default="UTC", description="IANA time zone for the cron expression")
    description: Optional[str] = Field(default=None, description="Free-form description")


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""

    # Batch execution
    batch_size: int = Field(default=10, description="Operations executed concurrently per chunk")
    batch_delay_ms: int = Field(default=1000, description="Delay between chunks in milliseconds")

    # Response cache
    cache_ttl_sec: int = Field(default=300, description="TTL for cached GET responses")
    cache_max_entries: int = Field(default=1000, description="Maximum cached responses")

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, description="Consecutive failures before opening circuit")
    circuit_cooldown_ms: int = Field(default=60000, description="Open-circuit cooldown in milliseconds")

    # Retry
    max_retries: int = Field(default=3, description="Retries after the first attempt")
    retry_base_delay: float = Field(default=1.0, description="Base delay for exponential backoff")
    retry_max_delay: float = Field(default=30.0, description="Maximum retry delay")
    retry_jitter_max: float = Field(default=0.3, description="Maximum jitter added to retry delay")

    # Quota tracking
    low_water_mark_remaining: int = Field(default=10, description="Wait for quota reset below this remaining count")
    max_quota_wait_sec: float = Field(default=900.0, description="Upper bound on a single quota wait")

    # HTTP
    github_api_url: str = Field(default="https://api.github.com", description="Upstream API base URL")
    github_token: Optional[str] = Field(default=None, description="Personal access token")
    connect_timeout: float = Field(default=5.0, description="HTTP connect timeout in seconds")
    read_timeout: float = Field(default=15.0, description="HTTP read timeout in seconds")

    # Storage
    database_url: str = Field(default="sqlite+aiosqlite:///data/ingest.db", description="SQLAlchemy async URL")

    # Ingestion targets
    repositories: List[str] = Field(default_factory=list, description="Repositories to sync as owner/repo")
    enrichment_batch_size: int = Field(default=20, description="Entities enriched per chunk")
    enrichment_limit: int = Field(default=100, description="Maximum entities enriched per type per run")

    # Scheduler
    schedule_refresh_sec: int = Field(default=60, description="Interval at which serve reloads schedules from storage")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Output
    output_directory: str = Field(default="out", description="Output directory for run summaries")
    output_filename: str = Field(default="run_summary.json", description="Run summary JSON filename")

    schedules: List[ScheduleSeed] = Field(default_factory=list, description="Seed schedules")

    @field_validator(
        'batch_size',
        'cache_max_entries',
        'circuit_failure_threshold',
        'enrichment_batch_size',
        'enrichment_limit',
        'schedule_refresh_sec',
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Validate counts are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got: {v}")
        return v

    @field_validator('batch_delay_ms', 'cache_ttl_sec', 'circuit_cooldown_ms', 'max_retries', 'low_water_mark_remaining')
    @classmethod
    def validate_non_negative(cls, v: int, info) -> int:
        if v < 0:
            raise ValueError(f"{info.field_name} must not be negative, got: {v}")
        return v

    @field_validator('github_api_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator('repositories')
    @classmethod
    def validate_repositories(cls, v: List[str]) -> List[str]:
        for name in v:
            if not _REPOSITORY_PATTERN.match(name):
                raise ValueError(f"repository must look like owner/repo, got: {name}")
        return v

    @property
    def output_path(self) -> Path:
        """Get full output file path."""
        return Path(self.output_directory) / self.output_filename

    @property
    def circuit_cooldown_seconds(self) -> float:
        return self.circuit_cooldown_ms / 1000.0

    @property
    def batch_delay_seconds(self) -> float:
        return self.batch_delay_ms / 1000.0

    # Environment variable overrides
    @classmethod
    def env_overrides(cls) -> Dict[str, Any]:
        """Collect field values from environment variables."""
        env_mappings = {
            "INGEST_BATCH_SIZE": "batch_size",
            "INGEST_BATCH_DELAY_MS": "batch_delay_ms",
            "INGEST_CACHE_TTL_SEC": "cache_ttl_sec",
            "INGEST_CIRCUIT_FAILURE_THRESHOLD": "circuit_failure_threshold",
            "INGEST_CIRCUIT_COOLDOWN_MS": "circuit_cooldown_ms",
            "INGEST_MAX_RETRIES": "max_retries",
            "INGEST_LOW_WATER_MARK": "low_water_mark_remaining",
            "INGEST_API_URL": "github_api_url",
            "INGEST_DATABASE_URL": "database_url",
            "INGEST_REPOSITORIES": "repositories",
            "INGEST_SCHEDULE_REFRESH_SEC": "schedule_refresh_sec",
            "INGEST_LOG_LEVEL": "log_level",
            "GITHUB_TOKEN": "github_token",
        }

        overrides: Dict[str, Any] = {}
        for env_var, field_name in env_mappings.items():
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]
            annotation = cls.model_fields[field_name].annotation
            if annotation is int:
                overrides[field_name] = int(value)
            elif annotation is float:
                overrides[field_name] = float(value)
            elif annotation == List[str]:
                overrides[field_name] = [item.strip() for item in value.split(",") if item.strip()]
            else:
                overrides[field_name] = value
        return overrides

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create configuration with environment variable overrides."""
        return cls(**cls.env_overrides())


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("config/config.yaml")
        self._config: Optional[PipelineConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> PipelineConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged PipelineConfig instance

        Raises:
            ValueError: If configuration validation fails
        """
        config_dict: Dict[str, Any] = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        config_dict.update(PipelineConfig.env_overrides())

        if cli_overrides:
            config_dict.update({k: v for k, v in cli_overrides.items() if v is not None})

        self._config = PipelineConfig(**config_dict)
        return self._config

    @property
    def config(self) -> PipelineConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
