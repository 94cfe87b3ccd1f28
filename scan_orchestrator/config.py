"""Configuration for the scan orchestrator."""

import json
import os
from datetime import timedelta
from typing import Dict, Optional, Union

from scan_orchestrator.models import JobKind, kind_name

ENV_PREFIX = "SCAN_ORCHESTRATOR_"


class OrchestratorConfig:
    """Configuration object for the scan orchestrator."""

    def __init__(
        self,
        db_dsn: Optional[str] = None,
        lease_ttl_seconds: float = 30.0,
        renew_min_margin_seconds: float = 5.0,
        pool_concurrency: Optional[Dict[str, int]] = None,
        default_concurrency: int = 4,
        default_max_attempts: int = 5,
        backoff_base_seconds: float = 2.0,
        backoff_cap_seconds: float = 300.0,
        housekeeping_interval_seconds: Optional[float] = None,
        poll_interval_seconds: float = 1.0,
        actor_reconcile_interval_seconds: Optional[float] = None,
        store_retry_attempts: int = 5,
        store_retry_base_seconds: float = 0.2,
        store_retry_cap_seconds: float = 5.0,
        shutdown_grace_seconds: float = 10.0,
        default_scan_priority: int = 0,
        retry_unknown_errors: bool = True,
        handlers_module: Optional[str] = None,
    ):
        if lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be > 0")
        if renew_min_margin_seconds < 0 or renew_min_margin_seconds >= lease_ttl_seconds:
            raise ValueError("renew_min_margin_seconds must be in [0, lease_ttl_seconds)")
        if default_concurrency < 1:
            raise ValueError("default_concurrency must be >= 1")
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        if store_retry_attempts < 1:
            raise ValueError("store_retry_attempts must be >= 1")

        self.db_dsn = db_dsn
        self.lease_ttl_seconds = lease_ttl_seconds
        self.renew_min_margin_seconds = renew_min_margin_seconds
        self.pool_concurrency = {
            kind_name(kind): int(limit) for kind, limit in (pool_concurrency or {}).items()
        }
        self.default_concurrency = default_concurrency
        self.default_max_attempts = default_max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.housekeeping_interval_seconds = housekeeping_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.actor_reconcile_interval_seconds = actor_reconcile_interval_seconds
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_seconds = store_retry_base_seconds
        self.store_retry_cap_seconds = store_retry_cap_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.default_scan_priority = default_scan_priority
        self.retry_unknown_errors = retry_unknown_errors
        self.handlers_module = handlers_module

        for kind, limit in self.pool_concurrency.items():
            if limit < 1:
                raise ValueError(f"Concurrency for {kind} must be >= 1")

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv(f"{ENV_PREFIX}DB_DSN")
        if not db_dsn:
            raise ValueError(f"{ENV_PREFIX}DB_DSN environment variable is required")

        pool_concurrency = {}
        for kind in JobKind:
            value = os.getenv(f"{ENV_PREFIX}{kind.name}_MAX_CONCURRENT")
            if value:
                pool_concurrency[kind.value] = int(value)

        pool_concurrency_str = os.getenv(f"{ENV_PREFIX}POOL_CONCURRENCY")
        if pool_concurrency_str:
            try:
                pool_concurrency.update(json.loads(pool_concurrency_str))
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {ENV_PREFIX}POOL_CONCURRENCY: {e}") from e

        housekeeping_interval = os.getenv(f"{ENV_PREFIX}HOUSEKEEPING_INTERVAL_SECONDS")
        reconcile_interval = os.getenv(f"{ENV_PREFIX}ACTOR_RECONCILE_INTERVAL_SECONDS")

        return cls(
            db_dsn=db_dsn,
            lease_ttl_seconds=float(os.getenv(f"{ENV_PREFIX}LEASE_TTL_SECONDS", "30")),
            renew_min_margin_seconds=float(
                os.getenv(f"{ENV_PREFIX}RENEW_MIN_MARGIN_SECONDS", "5")
            ),
            pool_concurrency=pool_concurrency,
            default_concurrency=int(os.getenv(f"{ENV_PREFIX}DEFAULT_CONCURRENCY", "4")),
            default_max_attempts=int(os.getenv(f"{ENV_PREFIX}DEFAULT_MAX_ATTEMPTS", "5")),
            backoff_base_seconds=float(os.getenv(f"{ENV_PREFIX}BACKOFF_BASE_SECONDS", "2")),
            backoff_cap_seconds=float(os.getenv(f"{ENV_PREFIX}BACKOFF_CAP_SECONDS", "300")),
            housekeeping_interval_seconds=(
                float(housekeeping_interval) if housekeeping_interval else None
            ),
            poll_interval_seconds=float(os.getenv(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS", "1")),
            actor_reconcile_interval_seconds=(
                float(reconcile_interval) if reconcile_interval else None
            ),
            store_retry_attempts=int(os.getenv(f"{ENV_PREFIX}STORE_RETRY_ATTEMPTS", "5")),
            store_retry_base_seconds=float(
                os.getenv(f"{ENV_PREFIX}STORE_RETRY_BASE_SECONDS", "0.2")
            ),
            store_retry_cap_seconds=float(
                os.getenv(f"{ENV_PREFIX}STORE_RETRY_CAP_SECONDS", "5")
            ),
            shutdown_grace_seconds=float(
                os.getenv(f"{ENV_PREFIX}SHUTDOWN_GRACE_SECONDS", "10")
            ),
            default_scan_priority=int(os.getenv(f"{ENV_PREFIX}DEFAULT_SCAN_PRIORITY", "0")),
            retry_unknown_errors=os.getenv(f"{ENV_PREFIX}RETRY_UNKNOWN_ERRORS", "true").lower()
            in ("1", "true", "yes"),
            handlers_module=os.getenv(f"{ENV_PREFIX}HANDLERS_MODULE"),
        )

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_ttl_seconds)

    @property
    def renew_min_margin(self) -> timedelta:
        return timedelta(seconds=self.renew_min_margin_seconds)

    def get_housekeeping_interval_seconds(self) -> float:
        """Housekeeping sweep interval, half the lease TTL unless configured."""
        if self.housekeeping_interval_seconds:
            return self.housekeeping_interval_seconds
        return self.lease_ttl_seconds / 2

    def get_concurrency_for_kind(self, kind: Union[JobKind, str]) -> int:
        """Get max concurrent in-flight jobs for a job kind."""
        return self.pool_concurrency.get(kind_name(kind), self.default_concurrency)

    def get_actor_reconcile_interval_seconds(self) -> float:
        """Interval between actor reconciliations with the store, the sweep interval unless configured."""
        if self.actor_reconcile_interval_seconds:
            return self.actor_reconcile_interval_seconds
        return self.get_housekeeping_interval_seconds()
