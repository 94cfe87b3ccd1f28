"""Wiring of the orchestrator components into one runtime."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Iterable, List, Optional, Union

import asyncpg

from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.ddl import JOBS_TABLE_DDL
from scan_orchestrator.events import EventBus, Subscription, Topic
from scan_orchestrator.housekeeper import LeaseHousekeeper
from scan_orchestrator.models import EntityStatus, JobSpec
from scan_orchestrator.registry import HandlerRegistry, handler_registry
from scan_orchestrator.service import QueueService
from scan_orchestrator.supervisor import ActorSupervisor
from scan_orchestrator.worker import WorkerPoolManager


async def init_schema(db_pool: asyncpg.Pool) -> None:
    """Create the job tables and indexes if they do not exist."""
    async with db_pool.acquire() as conn:
        await conn.execute(JOBS_TABLE_DDL)


class Orchestrator:
    """
    One process's share of the scan runtime.

    Runs the worker pools, the lease housekeeper and the entity supervisor
    against a shared Postgres job store. Several processes can run side by
    side; all coordination goes through the store.

    Example:
        ```python
        config = OrchestratorConfig.from_env()
        pool = await asyncpg.create_pool(config.db_dsn)
        orchestrator = Orchestrator(config, pool, registry=handler_registry)
        await orchestrator.start()
        orchestrator.register_entity("library-1", ["/media/movies"])
        await orchestrator.start_scan("library-1")
        ```
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        db_pool: asyncpg.Pool,
        registry: Optional[HandlerRegistry] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        worker_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.db_pool = db_pool
        self.logger = logger or logging.getLogger(__name__)
        self.event_bus = event_bus or EventBus(self.logger)
        self.registry = registry if registry is not None else handler_registry
        self.service = QueueService(
            config, db_pool, self.event_bus, logger=self.logger, clock=clock
        )
        self.supervisor = ActorSupervisor(self.service, config, logger=self.logger)
        self.housekeeper = LeaseHousekeeper(self.service, logger=self.logger)
        self.workers = WorkerPoolManager(
            self.service, self.registry, config, worker_id=worker_id, logger=self.logger
        )
        self._started = False

    @property
    def worker_id(self) -> str:
        return self.workers.worker_id

    async def start(self) -> None:
        if self._started:
            return
        await self.supervisor.start()
        self.housekeeper.start()
        await self.workers.start()
        self._started = True
        self.logger.info(f"Orchestrator {self.worker_id} started")

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop leasing, drain in-flight jobs, then stop housekeeping and actors."""
        if not self._started:
            return
        await self.workers.stop(grace_seconds)
        await self.housekeeper.stop()
        await self.supervisor.stop()
        self._started = False
        self.logger.info(f"Orchestrator {self.worker_id} stopped")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run until ``shutdown_event`` is set."""
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()

    def register_entity(
        self,
        entity_id: str,
        scan_paths: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
        scan_priority: Optional[int] = None,
    ) -> None:
        self.supervisor.register_entity(entity_id, scan_paths, parent_id, scan_priority)

    async def start_scan(self, entity_id: str) -> EntityStatus:
        return await self.supervisor.start_scan(entity_id)

    async def pause(self, entity_id: str) -> EntityStatus:
        return await self.supervisor.pause(entity_id)

    async def resume(self, entity_id: str) -> EntityStatus:
        return await self.supervisor.resume(entity_id)

    async def cancel(self, entity_id: str) -> EntityStatus:
        return await self.supervisor.cancel(entity_id)

    async def status(self, entity_id: str) -> EntityStatus:
        return await self.supervisor.status(entity_id)

    async def enqueue(self, spec: JobSpec):
        """Enqueue a job directly, outside of any entity scan."""
        return await self.service.enqueue(spec)

    def subscribe(
        self, topics: Optional[Union[Topic, Iterable[Topic]]] = None
    ) -> Subscription:
        return self.event_bus.subscribe(topics)
