"""Exception hierarchy shared by the sync engine, job processor and connectors.

Every error raised across a component boundary derives from MoneySyncError and
falls on one side of the transient/permanent split. The sync engine and the job
processor use ``is_transient`` to decide between retrying and giving up.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

if TYPE_CHECKING:
    from moneysync.sync.models import EntitySnapshot


class MoneySyncError(Exception):
    """Base exception for MoneySync."""


class StorageError(MoneySyncError):
    """Local storage could not complete an operation."""


class SyncAbortedError(MoneySyncError):
    """A sync cycle was abandoned and all of its local writes rolled back."""


class EntityValidationError(MoneySyncError):
    """A snapshot payload does not match the schema for its entity type."""

    def __init__(self, entity_type: str, entity_id: str, message: str):
        super().__init__(f"Invalid {entity_type} '{entity_id}': {message}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class RemoteError(MoneySyncError):
    """Base class for failures reported by the server of record."""


class TransientRemoteError(RemoteError):
    """Network failure, 5xx response or overload; safe to retry."""


class RemoteTimeoutError(TransientRemoteError):
    """The server did not answer within the configured timeout."""


class PermanentRemoteError(RemoteError):
    """The server refused the request; retrying the same change cannot succeed."""


class EntityNotFoundError(PermanentRemoteError):
    """The server has no record of the entity."""


class ValidationRejectedError(PermanentRemoteError):
    """The server rejected the payload as invalid."""


class RemoteConflictError(RemoteError):
    """The server holds a version of the entity that conflicts with the push."""

    def __init__(self, remote: EntitySnapshot, message: str | None = None):
        super().__init__(
            message
            or f"Conflict on {remote.entity_type.value} '{remote.entity_id}'"
        )
        self.remote = remote


class JobError(MoneySyncError):
    """Base class for background job failures."""


class TransientJobError(JobError):
    """The job failed for a reason that may clear up on retry."""


class PermanentJobError(JobError):
    """The job can never succeed; it is failed without further attempts."""


class InvalidJobPayloadError(PermanentJobError):
    """A job payload failed validation."""


class NotifierError(MoneySyncError):
    """A notification channel failed to deliver a message.

    ``code`` follows the status codes used by push gateways; a subset of them
    denote conditions that clear up on retry.
    """

    RETRYABLE_CODES = frozenset(
        {"UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED", "TOKEN_EXPIRED"}
    )

    def __init__(self, message: str, code: str = "INTERNAL"):
        super().__init__(message)
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.code in self.RETRYABLE_CODES


def is_transient(error: BaseException) -> bool:
    """Classify an exception as transient (retry) or permanent (give up).

    Unknown exceptions count as transient: the queues retry them with backoff
    and dead-letter or fail them once attempts run out.
    """
    if isinstance(error, NotifierError):
        return error.retryable
    return not isinstance(
        error,
        PermanentRemoteError
        | PermanentJobError
        | EntityValidationError
        | ValidationError,
    )
