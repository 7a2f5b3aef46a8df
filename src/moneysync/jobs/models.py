"""Job payloads, records and queue statistics."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from moneysync.connectors.notifier import Channel
from moneysync.errors import InvalidJobPayloadError
from moneysync.sync.models import EntityType


class JobType(str, Enum):
    SYNC = "sync"
    FINANCIAL_SYNC = "financial_sync"
    NOTIFICATION = "notification"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class PayloadSchema(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)


class SyncJobPayload(PayloadSchema):
    """Run a sync cycle for one device. No entity types means all of them."""

    kind: Literal["sync"] = "sync"
    user_id: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1)
    entity_types: list[EntityType] = Field(default_factory=list)


class FinancialSyncJobPayload(PayloadSchema):
    """Refresh one institution account."""

    kind: Literal["financial_sync"] = "financial_sync"
    user_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    access_token_ref: str = Field(..., min_length=1)
    sync_type: Literal["full", "incremental"] = "incremental"


class NotificationJobPayload(PayloadSchema):
    """Deliver one notification over one channel."""

    kind: Literal["notification"] = "notification"
    notification_id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str = Field(..., min_length=1)
    channel: Channel
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=4000)
    data: dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    SyncJobPayload | FinancialSyncJobPayload | NotificationJobPayload,
    Field(discriminator="kind"),
]

_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)

# Lower runs first
DEFAULT_PRIORITY = 5
NOTIFICATION_PRIORITY: dict[str, int] = {"push": 1, "sms": 1, "email": 2, "in_app": 3}


def parse_job_payload(data: Any) -> JobPayload:
    """Validate a payload dict (or payload model) against the job payload union.

    Raises:
        InvalidJobPayloadError: If the payload matches no job type
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return _PAYLOAD_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise InvalidJobPayloadError(f"Invalid job payload: {e}") from e


def dump_job_payload(payload: JobPayload) -> str:
    return _PAYLOAD_ADAPTER.dump_json(payload).decode()


def default_priority(payload: JobPayload) -> int:
    if isinstance(payload, NotificationJobPayload):
        return NOTIFICATION_PRIORITY[payload.channel]
    return DEFAULT_PRIORITY


class JobOptions(BaseModel):
    """Per-enqueue overrides."""

    model_config = ConfigDict(frozen=True)

    job_id: str | None = Field(
        None, description="Explicit id; enqueueing an existing id is a no-op"
    )
    priority: int | None = Field(None, ge=0)
    delay: float = Field(default=0.0, ge=0.0, description="Seconds before first run")
    max_attempts: int | None = Field(None, ge=1)


class JobRecord(BaseModel):
    """Stored state of one job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    job_type: JobType
    payload: JobPayload
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    run_at: datetime
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    stall_count: int = 0
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class JobFailure(BaseModel):
    """One failed attempt of a job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    attempt: int
    error: str
    transient: bool
    failed_at: datetime


class QueueStatus(BaseModel):
    """Job counts by state; ``delayed`` counts pending jobs not yet due."""

    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
