"""Pydantic models for queued changes, entity snapshots and sync results."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from moneysync.utils.clock import ensure_utc, utcnow


class EntityType(str, Enum):
    """Kinds of financial entities kept in sync."""

    ACCOUNT = "account"
    TRANSACTION = "transaction"
    BUDGET = "budget"
    GOAL = "goal"
    INVESTMENT = "investment"
    NOTIFICATION_PREFERENCE = "notification_preference"


class ChangeOperation(str, Enum):
    """Mutation recorded by a ChangeRecord."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncSchema(BaseModel):
    """Base schema for immutable sync values."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    @field_validator("*", mode="after")
    @classmethod
    def normalize_datetimes(cls, v: Any) -> Any:
        """Store every timestamp as aware UTC."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class EntitySnapshot(SyncSchema):
    """Full state of one entity at one point in time."""

    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime
    is_active: bool = True
    version: int = Field(default=0, ge=0)
    last_synced: datetime | None = None

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.entity_id)

    def same_state(self, other: "EntitySnapshot") -> bool:
        """True when both snapshots describe the same write of the same entity."""
        return (
            self.key == other.key
            and self.updated_at == other.updated_at
            and self.is_active == other.is_active
            and self.payload == other.payload
        )


class ChangeRecord(SyncSchema):
    """One local mutation awaiting delivery to the server of record."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    operation: ChangeOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    retry_count: int = Field(default=0, ge=0)
    device_id: str = Field(..., min_length=1)
    last_error: str | None = None
    # Cached snapshot this change replaced; None if the entity was not cached.
    # Kept across coalescing so a refused change can be undone.
    base: EntitySnapshot | None = Field(default=None, exclude=True)

    @property
    def key(self) -> tuple[str, EntityType, str]:
        """Coalescing key: at most one pending change per key."""
        return (self.device_id, self.entity_type, self.entity_id)

    def to_snapshot(self, base: EntitySnapshot | None = None) -> EntitySnapshot:
        """State of the entity after applying this change on top of ``base``."""
        payload = dict(base.payload) if base is not None else {}
        if self.operation is ChangeOperation.UPDATE:
            payload.update(self.payload)
        elif self.payload or self.operation is ChangeOperation.CREATE:
            payload = dict(self.payload)
        return EntitySnapshot(
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            payload=payload,
            updated_at=self.timestamp,
            is_active=self.operation is not ChangeOperation.DELETE,
            version=base.version if base is not None else 0,
            last_synced=base.last_synced if base is not None else None,
        )


class DeadLetterReason(str, Enum):
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"


class DeadLetter(SyncSchema):
    """A change removed from the queue after it could not be delivered."""

    change: ChangeRecord
    reason: DeadLetterReason
    error: str | None = None
    failed_at: datetime


class ConflictDescriptor(SyncSchema):
    """Record of a local/remote disagreement and how it was settled."""

    entity_id: str
    entity_type: EntityType
    local_version: EntitySnapshot
    remote_version: EntitySnapshot
    resolution: Literal["local", "remote"]
    reason: str
    change_id: str | None = None
    detected_at: datetime = Field(default_factory=utcnow)


class SyncErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"
    PULL = "pull"


class SyncErrorEntry(SyncSchema):
    """One non-fatal failure reported by a sync cycle."""

    kind: SyncErrorKind
    message: str
    entity_type: EntityType | None = None
    entity_id: str | None = None
    change_id: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in (SyncErrorKind.TRANSIENT, SyncErrorKind.PULL)


class SyncStatus(str, Enum):
    SYNCED = "synced"
    CONFLICTS_RESOLVED = "conflicts_resolved"
    PARTIAL_FAILURE = "partial_failure"


class SyncResult(BaseModel):
    """Outcome of one sync cycle."""

    model_config = ConfigDict(extra="forbid")

    device_id: str
    pushed: int = 0
    pulled: int = 0
    conflicts: list[ConflictDescriptor] = Field(default_factory=list)
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def status(self) -> SyncStatus:
        if self.errors:
            return SyncStatus.PARTIAL_FAILURE
        if self.conflicts:
            return SyncStatus.CONFLICTS_RESOLVED
        return SyncStatus.SYNCED

    @property
    def success(self) -> bool:
        return not self.errors


class RemoteChangeBatch(SyncSchema):
    """One page of remote snapshots returned by a pull."""

    changes: list[EntitySnapshot] = Field(default_factory=list)
    timestamp: datetime
    has_more: bool = False
