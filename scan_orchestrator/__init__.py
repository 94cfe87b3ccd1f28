"""Durable job queue and actor runtime for media library scans."""

from scan_orchestrator.backoff import BackoffPolicy
from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.context import CancellationToken, JobContext
from scan_orchestrator.ddl import JOBS_TABLE_DDL
from scan_orchestrator.errors import (
    EntityNotConfiguredError,
    FatalHandlerError,
    HandlerRegistrationError,
    JobCancelledError,
    JobNotFoundError,
    JobStoreError,
    LeaseConflictError,
    RetryableHandlerError,
    ScanOrchestratorError,
    StoreUnavailableError,
    UnknownEntityError,
)
from scan_orchestrator.events import EventBus, EventType, OrchestratorEvent, Subscription
from scan_orchestrator.housekeeper import LeaseHousekeeper
from scan_orchestrator.models import (
    EntityStatus,
    Job,
    JobKind,
    JobOutcome,
    JobSpec,
    JobState,
    ScanState,
)
from scan_orchestrator.orchestrator_main import run_orchestrator
from scan_orchestrator.registry import HandlerRegistry, handler_registry
from scan_orchestrator.runtime import Orchestrator, init_schema
from scan_orchestrator.service import QueueService
from scan_orchestrator.store import JobStore
from scan_orchestrator.supervisor import ActorSupervisor
from scan_orchestrator.worker import WorkerPool, WorkerPoolManager

__version__ = "0.1.0"

__all__ = [
    "BackoffPolicy",
    "OrchestratorConfig",
    "CancellationToken",
    "JobContext",
    "JOBS_TABLE_DDL",
    "EntityNotConfiguredError",
    "FatalHandlerError",
    "HandlerRegistrationError",
    "JobCancelledError",
    "JobNotFoundError",
    "JobStoreError",
    "LeaseConflictError",
    "RetryableHandlerError",
    "ScanOrchestratorError",
    "StoreUnavailableError",
    "UnknownEntityError",
    "EventBus",
    "EventType",
    "OrchestratorEvent",
    "Subscription",
    "LeaseHousekeeper",
    "EntityStatus",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobSpec",
    "JobState",
    "ScanState",
    "run_orchestrator",
    "HandlerRegistry",
    "handler_registry",
    "Orchestrator",
    "init_schema",
    "QueueService",
    "JobStore",
    "ActorSupervisor",
    "WorkerPool",
    "WorkerPoolManager",
]
