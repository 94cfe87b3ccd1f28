"""Supervisor owning the entity actors."""

import asyncio
import logging
from typing import Dict, List, Optional

from scan_orchestrator.actors import EntityActor, MessageType
from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.errors import UnknownEntityError
from scan_orchestrator.events import EventType, OrchestratorEvent
from scan_orchestrator.models import EntityStatus
from scan_orchestrator.service import QueueService

JOB_EVENT_TYPES = [
    EventType.JOB_ENQUEUED,
    EventType.JOB_COMPLETED,
    EventType.JOB_FAILED,
    EventType.JOB_CANCELLED,
]


class EntityRegistration:
    """What the supervisor knows about an entity before its actor exists."""

    def __init__(
        self,
        entity_id: str,
        scan_paths: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
        scan_priority: int = 0,
    ):
        self.entity_id = entity_id
        self.scan_paths = list(scan_paths or [])
        self.parent_id = parent_id
        self.scan_priority = scan_priority


class ActorSupervisor:
    """
    Creates entity actors on demand and routes commands and job events to
    them.

    Actors are kept in a dict keyed by entity id; parent/child relations are
    ids resolved through the registrations, so commands on a parent cascade
    to its children.
    """

    def __init__(
        self,
        service: QueueService,
        config: OrchestratorConfig,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.registrations: Dict[str, EntityRegistration] = {}
        self.actors: Dict[str, EntityActor] = {}
        self._subscription = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def register_entity(
        self,
        entity_id: str,
        scan_paths: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
        scan_priority: Optional[int] = None,
    ) -> EntityRegistration:
        """Register or update an entity and the folders its scans cover."""
        if parent_id is not None and parent_id == entity_id:
            raise ValueError(f"Entity {entity_id} cannot be its own parent")
        if scan_priority is None:
            scan_priority = self.config.default_scan_priority

        registration = EntityRegistration(entity_id, scan_paths, parent_id, scan_priority)
        self.registrations[entity_id] = registration

        actor = self.actors.get(entity_id)
        if actor is not None:
            actor.scan_paths = list(registration.scan_paths)
            actor.scan_priority = scan_priority
        return registration

    async def remove_entity(self, entity_id: str) -> None:
        """Stop an entity's actor and forget the entity. Its jobs are left as they are."""
        actor = self.actors.pop(entity_id, None)
        if actor is not None:
            await actor.stop()
        self.registrations.pop(entity_id, None)

    def children_of(self, entity_id: str) -> List[str]:
        return sorted(
            child_id
            for child_id, registration in self.registrations.items()
            if registration.parent_id == entity_id
        )

    def _descendants(self, entity_id: str) -> List[str]:
        result = []
        stack = self.children_of(entity_id)
        while stack:
            child_id = stack.pop(0)
            if child_id in result or child_id == entity_id:
                continue
            result.append(child_id)
            stack.extend(self.children_of(child_id))
        return result

    def get_actor(self, entity_id: str) -> EntityActor:
        """Return the entity's actor, creating and starting it on first use."""
        actor = self.actors.get(entity_id)
        if actor is not None:
            return actor

        registration = self.registrations.get(entity_id)
        if registration is None:
            raise UnknownEntityError(entity_id)

        actor = EntityActor(
            entity_id,
            self.service,
            scan_paths=registration.scan_paths,
            scan_priority=registration.scan_priority,
            logger=self.logger,
        )
        self.actors[entity_id] = actor
        actor.start()
        self.logger.debug(f"Created actor for entity {entity_id}")
        return actor

    async def start_scan(self, entity_id: str) -> EntityStatus:
        """Enqueue a folder scan for every configured path of the entity."""
        return await self.get_actor(entity_id).ask(MessageType.START_SCAN)

    async def pause(self, entity_id: str) -> EntityStatus:
        """Pause an entity and its children."""
        return await self._cascade(entity_id, MessageType.PAUSE)

    async def resume(self, entity_id: str) -> EntityStatus:
        """Resume an entity and its children."""
        return await self._cascade(entity_id, MessageType.RESUME)

    async def cancel(self, entity_id: str) -> EntityStatus:
        """Cancel all outstanding work of an entity and its children."""
        return await self._cascade(entity_id, MessageType.CANCEL)

    async def status(self, entity_id: str) -> EntityStatus:
        return await self.get_actor(entity_id).ask(MessageType.STATUS)

    async def _cascade(self, entity_id: str, message_type: MessageType) -> EntityStatus:
        result = await self.get_actor(entity_id).ask(message_type)
        for child_id in self._descendants(entity_id):
            await self.get_actor(child_id).ask(message_type)
        return result

    def route_event(self, event: OrchestratorEvent) -> None:
        """Forward a job event to the entity's actor, if it has one."""
        if event.entity_id is None:
            return
        actor = self.actors.get(event.entity_id)
        if actor is None:
            # A later-created actor rebuilds from the store instead
            return
        actor.tell(MessageType.JOB_EVENT, event=event)

    async def _pump_events(self) -> None:
        async for event in self._subscription:
            try:
                self.route_event(event)
            except Exception as e:
                self.logger.error(f"Error routing event {event.type.value}: {str(e)}", exc_info=True)

    async def reconcile(self) -> List[EntityStatus]:
        """Re-read every live actor's jobs from the store."""
        actors = list(self.actors.values())
        return await asyncio.gather(*(actor.ask(MessageType.RECONCILE) for actor in actors))

    async def _reconcile_loop(self) -> None:
        interval = self.config.get_actor_reconcile_interval_seconds()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.reconcile()
            except Exception as e:
                self.logger.error(f"Error reconciling actors: {str(e)}", exc_info=True)

    async def start(self) -> None:
        """Subscribe to job events and rebuild actors for entities with unfinished work."""
        self._subscription = self.service.event_bus.subscribe(JOB_EVENT_TYPES)
        self._pump_task = asyncio.create_task(self._pump_events(), name="supervisor-events")
        self._stop_event.clear()
        self._reconcile_task = asyncio.create_task(
            self._reconcile_loop(), name="supervisor-reconcile"
        )

        entity_ids = await self.service.list_active_entities()
        for entity_id in entity_ids:
            if entity_id not in self.registrations:
                self.register_entity(entity_id)
            self.get_actor(entity_id)
        self.logger.info(f"Supervisor started, {len(entity_ids)} entities with unfinished work")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._reconcile_task is not None:
            await self._reconcile_task
            self._reconcile_task = None
        if self._subscription is not None:
            self._subscription.close()
        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None

        actors = list(self.actors.values())
        self.actors.clear()
        await asyncio.gather(*(actor.stop() for actor in actors))
        self.logger.info("Supervisor stopped")
