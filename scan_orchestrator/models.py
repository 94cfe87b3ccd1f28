"""Data models for jobs and entities."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class JobKind(str, Enum):
    """Built-in job kinds. Any other string is accepted as a custom kind."""

    FOLDER_SCAN = "folder_scan"
    MEDIA_ANALYZE = "media_analyze"
    METADATA_ENRICH = "metadata_enrich"
    INDEX_UPSERT = "index_upsert"

    @classmethod
    def parse(cls, value: Union["JobKind", str]) -> Union["JobKind", str]:
        """Return the enum member for ``value`` or the raw string for custom kinds."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return value


def kind_name(kind: Union[JobKind, str]) -> str:
    """Normalize a job kind to the string stored in the database."""
    if isinstance(kind, JobKind):
        return kind.value
    return str(kind)


class JobState(str, Enum):
    """Job state values."""

    READY = "ready"
    DEFERRED = "deferred"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


ACTIVE_STATES = frozenset({JobState.READY, JobState.DEFERRED, JobState.LEASED})
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class JobOutcome(str, Enum):
    """Result of reporting a job failure."""

    DEFERRED = "deferred"
    FAILED = "failed"
    REJECTED = "rejected"


class ScanState(str, Enum):
    """Entity actor scan states."""

    IDLE = "idle"
    SCANNING = "scanning"
    WAITING = "waiting"
    ERROR = "error"


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        kind: Union[JobKind, str],
        owner_entity_id: str,
        payload: Dict[str, Any],
        priority: int,
        state: Union[JobState, str],
        available_at: datetime,
        attempt_count: int,
        max_attempts: int,
        dedupe_key: Optional[str] = None,
        lease_owner: Optional[str] = None,
        lease_expires_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.kind = JobKind.parse(kind)
        self.owner_entity_id = owner_entity_id
        self.payload = payload
        self.priority = priority
        self.state = JobState(state) if isinstance(state, str) else state
        self.available_at = available_at
        self.attempt_count = attempt_count
        self.max_attempts = max_attempts
        self.dedupe_key = dedupe_key
        self.lease_owner = lease_owner
        self.lease_expires_at = lease_expires_at
        self.last_error = last_error
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def kind_name(self) -> str:
        return kind_name(self.kind)

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "kind": self.kind_name,
            "owner_entity_id": self.owner_entity_id,
            "payload": self.payload,
            "priority": self.priority,
            "state": self.state.value,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "dedupe_key": self.dedupe_key,
            "lease_owner": self.lease_owner,
            "lease_expires_at": (
                self.lease_expires_at.isoformat() if self.lease_expires_at else None
            ),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind_name}, entity={self.owner_entity_id}, "
            f"state={self.state.value}, attempts={self.attempt_count}/{self.max_attempts})"
        )


class JobSpec(BaseModel):
    """
    Request to create a job.

    ``owner_entity_id`` may be left empty for follow-on jobs returned by a
    handler; the parent job's entity is used in that case.
    """

    kind: str
    owner_entity_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    dedupe_key: Optional[str] = None
    available_at: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, JobKind):
            return value.value
        return value

    @classmethod
    def folder_scan(
        cls, entity_id: str, path: str, priority: int = 0, **payload: Any
    ) -> "JobSpec":
        """Folder scan for one path of an entity."""
        return cls(
            kind=JobKind.FOLDER_SCAN,
            owner_entity_id=entity_id,
            payload={"path": path, **payload},
            priority=priority,
            dedupe_key=f"scan:{entity_id}:{path}",
        )

    @classmethod
    def media_analyze(
        cls, entity_id: str, path: str, priority: int = 0, **payload: Any
    ) -> "JobSpec":
        """Media analysis (probe, thumbnails) for one discovered file."""
        return cls(
            kind=JobKind.MEDIA_ANALYZE,
            owner_entity_id=entity_id,
            payload={"path": path, **payload},
            priority=priority,
            dedupe_key=f"analyze:{entity_id}:{path}",
        )

    @classmethod
    def metadata_enrich(
        cls, entity_id: str, candidate_id: str, priority: int = 0, **payload: Any
    ) -> "JobSpec":
        """Metadata lookup for one logical media candidate."""
        return cls(
            kind=JobKind.METADATA_ENRICH,
            owner_entity_id=entity_id,
            payload={"candidate_id": candidate_id, **payload},
            priority=priority,
            dedupe_key=f"metadata:{entity_id}:{candidate_id}",
        )

    @classmethod
    def index_upsert(
        cls, entity_id: str, path: str, priority: int = 0, **payload: Any
    ) -> "JobSpec":
        """Database and search index write for one media file."""
        return cls(
            kind=JobKind.INDEX_UPSERT,
            owner_entity_id=entity_id,
            payload={"path": path, **payload},
            priority=priority,
            dedupe_key=f"index:{entity_id}:{path}",
        )


class EntityStatus(BaseModel):
    """Status of an entity actor as seen by the command interface."""

    entity_id: str
    scan_state: ScanState
    outstanding_count: int
    last_error: Optional[str] = None
