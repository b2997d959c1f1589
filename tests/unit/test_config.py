"""Unit tests for configuration management."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from src.models.config import ConfigManager, PipelineConfig, ScheduleSeed


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("INGEST_BATCH_SIZE", "INGEST_REPOSITORIES", "INGEST_CIRCUIT_COOLDOWN_MS", "INGEST_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def _write_yaml(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_pipeline_config_defaults():
    """Test that PipelineConfig has correct default values."""
    config = PipelineConfig()

    # Batch execution
    assert config.batch_size == 10
    assert config.batch_delay_ms == 1000

    # Cache
    assert config.cache_ttl_sec == 300

    # Circuit breaker
    assert config.circuit_failure_threshold == 5
    assert config.circuit_cooldown_ms == 60000
    assert config.circuit_cooldown_seconds == 60.0

    # Retry
    assert config.max_retries == 3

    # Quota
    assert config.low_water_mark_remaining == 10
    assert config.max_quota_wait_sec == 900

    # Scheduler
    assert config.schedule_refresh_sec == 60

    assert config.github_api_url == "https://api.github.com"
    assert config.output_path == Path("out") / "run_summary.json"


@pytest.mark.parametrize("field", ["batch_size", "circuit_failure_threshold", "enrichment_limit", "schedule_refresh_sec"])
def test_positive_fields_reject_zero(field):
    with pytest.raises(ValidationError, match=f"{field} must be positive"):
        PipelineConfig(**{field: 0})


def test_negative_delay_rejected():
    with pytest.raises(ValidationError):
        PipelineConfig(batch_delay_ms=-1)


def test_url_validation_strips_trailing_slash():
    assert PipelineConfig(github_api_url="http://localhost:8001/").github_api_url == "http://localhost:8001"
    with pytest.raises(ValidationError):
        PipelineConfig(github_api_url="localhost:8001")


def test_repository_names_validated():
    assert PipelineConfig(repositories=["octocat/hello-world"]).repositories == ["octocat/hello-world"]
    with pytest.raises(ValidationError, match="owner/repo"):
        PipelineConfig(repositories=["just-a-name"])


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("INGEST_BATCH_SIZE", "25")
    monkeypatch.setenv("INGEST_REPOSITORIES", "a/b, c/d")
    monkeypatch.setenv("INGEST_CIRCUIT_COOLDOWN_MS", "500")

    config = PipelineConfig.from_env()

    assert config.batch_size == 25
    assert config.repositories == ["a/b", "c/d"]
    assert config.circuit_cooldown_seconds == 0.5


def test_yaml_loading_with_schedules(tmp_path):
    path = _write_yaml(tmp_path, {
        "batch_size": 7,
        "repositories": ["a/b"],
        "schedules": [{"name": "sync", "pipeline_type": "github_sync", "cron_expression": "0 * * * *"}],
    })

    config = ConfigManager(path).load_config()

    assert config.batch_size == 7
    assert config.schedules == [ScheduleSeed(name="sync", pipeline_type="github_sync", cron_expression="0 * * * *")]
    assert config.schedules[0].time_zone == "UTC"


def test_precedence_cli_over_env_over_yaml(tmp_path, monkeypatch):
    path = _write_yaml(tmp_path, {"batch_size": 7, "log_level": "WARNING"})
    monkeypatch.setenv("INGEST_BATCH_SIZE", "8")

    manager = ConfigManager(path)

    assert manager.load_config().batch_size == 8
    assert manager.load_config({"batch_size": 9}).batch_size == 9
    # None means "flag not given"
    assert manager.load_config({"batch_size": None}).batch_size == 8
    assert manager.config.log_level == "WARNING"


def test_missing_yaml_uses_defaults(tmp_path):
    config = ConfigManager(tmp_path / "missing.yaml").load_config()
    assert config.batch_size == 10


def test_invalid_yaml_value_raises(tmp_path):
    path = _write_yaml(tmp_path, {"batch_size": -3})
    with pytest.raises(ValidationError):
        ConfigManager(path).load_config()
