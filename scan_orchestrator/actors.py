"""Per-entity actors tracking scan state."""

import asyncio
import logging
from enum import Enum
from typing import Any, List, Optional, Set
from uuid import UUID

from scan_orchestrator.errors import EntityNotConfiguredError
from scan_orchestrator.events import EventType, OrchestratorEvent
from scan_orchestrator.models import EntityStatus, JobSpec, JobState, ScanState
from scan_orchestrator.service import QueueService


class MessageType(str, Enum):
    """Mailbox message types."""

    REBUILD = "rebuild"
    START_SCAN = "start_scan"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    STATUS = "status"
    JOB_EVENT = "job_event"
    RECONCILE = "reconcile"
    STOP = "stop"


class ActorMessage:
    """A mailbox entry, with an optional future for the reply."""

    def __init__(
        self,
        type: MessageType,
        event: Optional[OrchestratorEvent] = None,
        reply: Optional[asyncio.Future] = None,
    ):
        self.type = type
        self.event = event
        self.reply = reply


class EntityActor:
    """
    Serializes everything that happens to one entity through a mailbox.

    State machine:
        Idle/Error --StartScan--> Scanning
        Scanning --(last outstanding job completed)--> Idle
        Scanning --JobFailed--> Error
        Scanning --Pause--> Waiting --Resume--> Scanning
        (a failure while Waiting is recorded and applied on Resume)
        any --Cancel--> Idle

    The first message is always a rebuild from the job store, so an actor
    created after a restart picks up where the previous process left off.
    Reconcile re-reads the entity's active jobs, catching outcomes that
    another process wrote and that never reached this process as events.
    """

    def __init__(
        self,
        entity_id: str,
        service: QueueService,
        scan_paths: Optional[List[str]] = None,
        scan_priority: int = 0,
        logger: Optional[logging.Logger] = None,
    ):
        self.entity_id = entity_id
        self.service = service
        self.scan_paths = list(scan_paths or [])
        self.scan_priority = scan_priority
        self.logger = logger or logging.getLogger(__name__)

        self.state = ScanState.IDLE
        self.outstanding: Set[UUID] = set()
        self.last_error: Optional[str] = None

        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._mailbox.put_nowait(ActorMessage(MessageType.REBUILD))

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"actor-{self.entity_id}")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._mailbox.put_nowait(ActorMessage(MessageType.STOP))
        await self._task
        self._task = None

    def tell(self, type: MessageType, event: Optional[OrchestratorEvent] = None) -> None:
        """Queue a message without waiting for it to be handled."""
        self._mailbox.put_nowait(ActorMessage(type, event=event))

    async def ask(self, type: MessageType) -> Any:
        """Queue a message and wait for the actor's reply."""
        reply = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait(ActorMessage(type, reply=reply))
        return await reply

    def status(self) -> EntityStatus:
        return EntityStatus(
            entity_id=self.entity_id,
            scan_state=self.state,
            outstanding_count=len(self.outstanding),
            last_error=self.last_error,
        )

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            if message.type == MessageType.STOP:
                if message.reply is not None and not message.reply.done():
                    message.reply.set_result(None)
                break

            try:
                result = await self._handle(message)
            except Exception as e:
                if message.reply is not None and not message.reply.done():
                    message.reply.set_exception(e)
                else:
                    self.logger.error(
                        f"Actor {self.entity_id} failed handling {message.type.value}: {str(e)}",
                        exc_info=True,
                    )
                continue

            if message.reply is not None and not message.reply.done():
                message.reply.set_result(result)

    async def _handle(self, message: ActorMessage) -> Any:
        if message.type == MessageType.REBUILD:
            await self._rebuild()
        elif message.type == MessageType.START_SCAN:
            await self._start_scan()
        elif message.type == MessageType.PAUSE:
            await self._pause()
        elif message.type == MessageType.RESUME:
            await self._resume()
        elif message.type == MessageType.CANCEL:
            await self._cancel()
        elif message.type == MessageType.JOB_EVENT:
            self._on_job_event(message.event)
        elif message.type == MessageType.RECONCILE:
            await self._reconcile()
        return self.status()

    def _transition(self, new_state: ScanState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self.logger.info(f"Entity {self.entity_id}: {old_state.value} -> {new_state.value}")
        self.service.event_bus.publish(
            OrchestratorEvent(
                type=EventType.ACTOR_STATE_CHANGED,
                entity_id=self.entity_id,
                error=self.last_error,
                data={
                    "from": old_state.value,
                    "to": new_state.value,
                    "outstanding_count": len(self.outstanding),
                },
            )
        )

    async def _rebuild(self) -> None:
        active = await self.service.list_active_jobs(self.entity_id)
        self.outstanding = {job.id for job in active}

        if await self.service.is_entity_paused(self.entity_id):
            self._transition(ScanState.WAITING)
        elif self.outstanding:
            self._transition(ScanState.SCANNING)
        else:
            latest = await self.service.latest_terminal_job(self.entity_id)
            if latest is not None and latest.state == JobState.FAILED:
                self.last_error = latest.last_error
                self._transition(ScanState.ERROR)

        self.logger.debug(
            f"Rebuilt entity {self.entity_id}: state={self.state.value}, "
            f"outstanding={len(self.outstanding)}"
        )

    async def _start_scan(self) -> None:
        if self.state == ScanState.WAITING:
            self.logger.info(f"Entity {self.entity_id} is paused, ignoring scan request")
            return
        if not self.scan_paths:
            raise EntityNotConfiguredError(self.entity_id)

        # Re-enqueueing while scanning merges into the active jobs
        specs = [
            JobSpec.folder_scan(self.entity_id, path, priority=self.scan_priority)
            for path in self.scan_paths
        ]
        job_ids = await self.service.enqueue_many(specs)
        self.outstanding.update(job_ids)

        if self.state in (ScanState.IDLE, ScanState.ERROR):
            self.last_error = None
            self._transition(ScanState.SCANNING)

    async def _pause(self) -> None:
        if self.state != ScanState.SCANNING:
            return
        await self.service.pause_entity(self.entity_id)
        self._transition(ScanState.WAITING)

    async def _resume(self) -> None:
        if self.state != ScanState.WAITING:
            return
        await self.service.resume_entity(self.entity_id)
        self._transition(ScanState.SCANNING)
        if self.last_error:
            # A job failed while paused
            self._transition(ScanState.ERROR)
        elif not self.outstanding:
            self._transition(ScanState.IDLE)

    async def _cancel(self) -> None:
        await self.service.cancel_entity(self.entity_id)
        await self.service.resume_entity(self.entity_id)
        self.outstanding.clear()
        self.last_error = None
        self._transition(ScanState.IDLE)

    def _on_job_event(self, event: OrchestratorEvent) -> None:
        if event.job_id is None:
            return

        if event.type == EventType.JOB_ENQUEUED:
            self.outstanding.add(event.job_id)
            if self.state == ScanState.IDLE:
                self._transition(ScanState.SCANNING)

        elif event.type in (EventType.JOB_COMPLETED, EventType.JOB_CANCELLED):
            self.outstanding.discard(event.job_id)
            if self.state == ScanState.SCANNING and not self.outstanding:
                self._transition(ScanState.IDLE)

        elif event.type == EventType.JOB_FAILED:
            self.outstanding.discard(event.job_id)
            if self.state == ScanState.IDLE:
                return
            self.last_error = event.error
            if self.state != ScanState.WAITING:
                self._transition(ScanState.ERROR)

    async def _reconcile(self) -> None:
        active = await self.service.list_active_jobs(self.entity_id)
        active_ids = {job.id for job in active}
        finished = self.outstanding - active_ids
        self.outstanding = active_ids

        if finished and self.state in (ScanState.SCANNING, ScanState.WAITING):
            latest = await self.service.latest_terminal_job(self.entity_id)
            if latest is not None and latest.id in finished and latest.state == JobState.FAILED:
                self.last_error = latest.last_error
                if self.state != ScanState.WAITING:
                    self._transition(ScanState.ERROR)
                return

        if self.state == ScanState.SCANNING and not self.outstanding:
            self._transition(ScanState.IDLE)
        elif self.state == ScanState.IDLE and self.outstanding:
            self._transition(ScanState.SCANNING)
        if finished:
            self.logger.debug(
                f"Reconciled entity {self.entity_id}: {len(finished)} jobs finished elsewhere"
            )
