"""Unit tests for configuration module."""

import json
from datetime import timedelta

import pytest

from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.models import JobKind


def test_config_from_env_minimal(monkeypatch):
    """Test creating config from minimal environment variables."""
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_DSN", "postgresql://localhost/test")

    config = OrchestratorConfig.from_env()

    assert config.db_dsn == "postgresql://localhost/test"
    assert config.lease_ttl_seconds == 30
    assert config.default_concurrency == 4
    assert config.default_max_attempts == 5
    assert config.retry_unknown_errors is True
    assert config.handlers_module is None


def test_config_from_env_with_overrides(monkeypatch):
    """Test creating config with all environment variables."""
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_LEASE_TTL_SECONDS", "60")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_RENEW_MIN_MARGIN_SECONDS", "10")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DEFAULT_MAX_ATTEMPTS", "8")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_BACKOFF_BASE_SECONDS", "1.5")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_BACKOFF_CAP_SECONDS", "90")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_HOUSEKEEPING_INTERVAL_SECONDS", "7")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_RETRY_UNKNOWN_ERRORS", "false")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_HANDLERS_MODULE", "myapp.handlers")

    config = OrchestratorConfig.from_env()

    assert config.lease_ttl == timedelta(seconds=60)
    assert config.renew_min_margin == timedelta(seconds=10)
    assert config.default_max_attempts == 8
    assert config.backoff_base_seconds == 1.5
    assert config.backoff_cap_seconds == 90
    assert config.get_housekeeping_interval_seconds() == 7
    assert config.retry_unknown_errors is False
    assert config.handlers_module == "myapp.handlers"


def test_config_per_kind_concurrency(monkeypatch):
    """Test per-kind pool sizes from individual variables and the JSON map."""
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_FOLDER_SCAN_MAX_CONCURRENT", "2")
    monkeypatch.setenv(
        "SCAN_ORCHESTRATOR_POOL_CONCURRENCY",
        json.dumps({"media_analyze": 16, "thumbnail_render": 3}),
    )

    config = OrchestratorConfig.from_env()

    assert config.get_concurrency_for_kind(JobKind.FOLDER_SCAN) == 2
    assert config.get_concurrency_for_kind("media_analyze") == 16
    assert config.get_concurrency_for_kind("thumbnail_render") == 3
    assert config.get_concurrency_for_kind(JobKind.INDEX_UPSERT) == 4


def test_config_missing_dsn(monkeypatch):
    """Test that the DSN is required."""
    monkeypatch.delenv("SCAN_ORCHESTRATOR_DB_DSN", raising=False)

    with pytest.raises(ValueError, match="DB_DSN"):
        OrchestratorConfig.from_env()


def test_config_invalid_pool_concurrency_json(monkeypatch):
    """Test that invalid JSON raises ValueError."""
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_POOL_CONCURRENCY", "{not json")

    with pytest.raises(ValueError, match="POOL_CONCURRENCY"):
        OrchestratorConfig.from_env()


def test_housekeeping_interval_defaults_to_half_ttl():
    """Test the default sweep interval."""
    config = OrchestratorConfig(lease_ttl_seconds=40)

    assert config.get_housekeeping_interval_seconds() == 20


def test_pool_concurrency_accepts_enum_keys():
    """Test that JobKind keys are normalized."""
    config = OrchestratorConfig(pool_concurrency={JobKind.MEDIA_ANALYZE: 12})

    assert config.pool_concurrency == {"media_analyze": 12}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lease_ttl_seconds": 0},
        {"lease_ttl_seconds": 10, "renew_min_margin_seconds": 10},
        {"default_concurrency": 0},
        {"default_max_attempts": 0},
        {"store_retry_attempts": 0},
        {"pool_concurrency": {"folder_scan": 0}},
    ],
)
def test_invalid_config_values(kwargs):
    """Test config validation."""
    with pytest.raises(ValueError):
        OrchestratorConfig(**kwargs)


def test_actor_reconcile_interval(monkeypatch):
    """Test that reconciliation follows the sweep interval unless set."""
    assert OrchestratorConfig(lease_ttl_seconds=40).get_actor_reconcile_interval_seconds() == 20

    monkeypatch.setenv("SCAN_ORCHESTRATOR_ACTOR_RECONCILE_INTERVAL_SECONDS", "3")
    config = OrchestratorConfig.from_env()

    assert config.get_actor_reconcile_interval_seconds() == 3
