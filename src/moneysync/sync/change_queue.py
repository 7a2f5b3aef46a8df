"""Durable queue of local changes awaiting delivery to the server of record.

The queue keeps at most one pending change per (device, entity type, entity)
key. A new change for a key that already has a pending change is coalesced
with it:

- a Delete always wins and leaves a single Delete
- Create followed by Update stays a Create carrying the newer payload
- Update followed by Update keeps the newer payload
- any other pair is replaced by the newer change

The surviving record takes the newer change's id and timestamp and starts
again with a zero retry count. It keeps the base snapshot of the older change,
the last cached state before any of the coalesced edits.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from moneysync.database import SyncDatabase
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    DeadLetter,
    DeadLetterReason,
    EntitySnapshot,
    EntityType,
)
from moneysync.utils.clock import Clock, from_db_timestamp, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

_CHANGE_COLUMNS = """
    change_id, device_id, entity_type, entity_id, operation, payload,
    change_timestamp, retry_count, last_error
"""
_QUEUE_COLUMNS = f"{_CHANGE_COLUMNS}, base_snapshot"


class FailureOutcome(str, Enum):
    """What ``mark_failed`` did with a change."""

    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"
    NOT_PENDING = "not_pending"


def coalesce(existing: ChangeRecord, incoming: ChangeRecord) -> ChangeRecord:
    """Merge a new change into the pending change for the same key."""
    operation = incoming.operation
    if (
        existing.operation is ChangeOperation.CREATE
        and incoming.operation is ChangeOperation.UPDATE
    ):
        operation = ChangeOperation.CREATE
    return incoming.model_copy(
        update={
            "operation": operation,
            "retry_count": 0,
            "last_error": None,
            "base": existing.base,
        }
    )


def _row_to_change(row: tuple[Any, ...], base: str | None = None) -> ChangeRecord:
    return ChangeRecord(
        id=row[0],
        device_id=row[1],
        entity_type=EntityType(row[2]),
        entity_id=row[3],
        operation=ChangeOperation(row[4]),
        payload=json.loads(row[5]),
        timestamp=from_db_timestamp(row[6]),
        retry_count=row[7],
        last_error=row[8],
        base=EntitySnapshot.model_validate_json(base) if base else None,
    )


def _row_to_queued(row: tuple[Any, ...]) -> ChangeRecord:
    return _row_to_change(row[:9], row[9])


class ChangeQueueStore:
    """Change queue backed by the ``sync.change_queue`` table."""

    def __init__(
        self, database: SyncDatabase, max_retries: int = 5, clock: Clock = utcnow
    ):
        """Initialize the change queue.

        Args:
            database: Shared sync database
            max_retries: Failed pushes after which a change is dead-lettered
            clock: Source of the current time
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.db = database
        self.max_retries = max_retries
        self._clock = clock

    def enqueue(self, change: ChangeRecord) -> ChangeRecord:
        """Durably add a change, coalescing with any pending change for its key.

        Returns:
            ChangeRecord: The record now pending for the change's key
        """
        with self.db.transaction():
            existing = self.pending_for(
                change.device_id, change.entity_type, change.entity_id
            )
            record = change
            if existing is not None:
                record = coalesce(existing, change)
                self.db.execute(
                    "DELETE FROM sync.change_queue WHERE change_id = ?", [existing.id]
                )
                logger.debug(
                    f"Coalesced {existing.operation.value} {existing.id} with "
                    f"{change.operation.value} {change.id} into "
                    f"{record.operation.value}"
                )
            self._insert(record)
        return record

    def _insert(self, record: ChangeRecord) -> None:
        self.db.execute(
            """
            INSERT INTO sync.change_queue (
                change_id, seq, device_id, entity_type, entity_id, operation,
                payload, change_timestamp, retry_count, last_error, enqueued_at,
                base_snapshot
            ) VALUES (?, nextval('sync.change_queue_seq'), ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                record.id,
                record.device_id,
                record.entity_type.value,
                record.entity_id,
                record.operation.value,
                json.dumps(record.payload, default=str),
                to_db_timestamp(record.timestamp),
                record.retry_count,
                record.last_error,
                to_db_timestamp(self._clock()),
                record.base.model_dump_json() if record.base is not None else None,
            ],
        )

    def drain(self, device_id: str, limit: int | None = None) -> list[ChangeRecord]:
        """Return pending changes for a device in enqueue order.

        Draining does not remove anything; changes leave the queue only through
        ``acknowledge``, ``discard`` or dead-lettering.
        """
        sql = f"""
            SELECT {_QUEUE_COLUMNS} FROM sync.change_queue
            WHERE device_id = ?
            ORDER BY change_timestamp, seq
        """
        params: list[Any] = [device_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_queued(row) for row in self.db.fetchall(sql, params)]

    def get(self, change_id: str) -> ChangeRecord | None:
        row = self.db.fetchone(
            f"SELECT {_QUEUE_COLUMNS} FROM sync.change_queue WHERE change_id = ?",
            [change_id],
        )
        return _row_to_queued(row) if row else None

    def pending_for(
        self, device_id: str, entity_type: EntityType, entity_id: str
    ) -> ChangeRecord | None:
        row = self.db.fetchone(
            f"""
            SELECT {_QUEUE_COLUMNS} FROM sync.change_queue
            WHERE device_id = ? AND entity_type = ? AND entity_id = ?
            """,
            [device_id, entity_type.value, entity_id],
        )
        return _row_to_queued(row) if row else None

    def acknowledge(self, change_id: str) -> bool:
        """Remove a change the server accepted.

        Returns:
            bool: False when the change was no longer pending (already
            acknowledged, or superseded by a newer coalesced change)
        """
        removed = self.db.execute_count(
            "DELETE FROM sync.change_queue WHERE change_id = ?", [change_id]
        )
        return removed == 1

    def acknowledge_many(self, change_ids: list[str]) -> int:
        """Acknowledge several changes with a single statement."""
        if not change_ids:
            return 0
        return self.db.execute_count(
            "DELETE FROM sync.change_queue WHERE list_contains(?, change_id)",
            [change_ids],
        )

    def discard(self, change_id: str) -> bool:
        """Drop a change that lost conflict resolution to the remote version."""
        removed = self.acknowledge(change_id)
        if removed:
            logger.debug(f"Discarded stale change {change_id}")
        return removed

    def mark_failed(self, change_id: str, error: str | None = None) -> FailureOutcome:
        """Record a failed push attempt.

        The change stays queued until ``max_retries`` failures, then moves to
        the dead-letter table.
        """
        with self.db.transaction():
            change = self.get(change_id)
            if change is None:
                return FailureOutcome.NOT_PENDING

            retry_count = change.retry_count + 1
            if retry_count >= self.max_retries:
                self._dead_letter(
                    change.model_copy(update={"retry_count": retry_count}),
                    DeadLetterReason.EXHAUSTED,
                    error,
                )
                logger.warning(
                    f"Change {change_id} dead-lettered after {retry_count} failed attempts"
                )
                return FailureOutcome.DEAD_LETTERED

            self.db.execute(
                """
                UPDATE sync.change_queue
                SET retry_count = ?, last_error = ?
                WHERE change_id = ?
                """,
                [retry_count, error, change_id],
            )
            return FailureOutcome.RETRY

    def reject(self, change_id: str, error: str) -> bool:
        """Dead-letter a change the server permanently refused."""
        with self.db.transaction():
            change = self.get(change_id)
            if change is None:
                return False
            self._dead_letter(change, DeadLetterReason.REJECTED, error)
        logger.warning(f"Change {change_id} rejected by server: {error}")
        return True

    def _dead_letter(
        self, change: ChangeRecord, reason: DeadLetterReason, error: str | None
    ) -> None:
        self.db.execute(
            "DELETE FROM sync.change_queue WHERE change_id = ?", [change.id]
        )
        self.db.execute(
            """
            INSERT OR REPLACE INTO sync.dead_letters (
                change_id, device_id, entity_type, entity_id, operation, payload,
                change_timestamp, retry_count, reason, last_error, failed_at,
                base_snapshot
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                change.id,
                change.device_id,
                change.entity_type.value,
                change.entity_id,
                change.operation.value,
                json.dumps(change.payload, default=str),
                to_db_timestamp(change.timestamp),
                change.retry_count,
                reason.value,
                error,
                to_db_timestamp(self._clock()),
                change.base.model_dump_json() if change.base is not None else None,
            ],
        )

    def dead_letters(self, device_id: str | None = None) -> list[DeadLetter]:
        sql = f"""
            SELECT {_CHANGE_COLUMNS}, reason, failed_at
            FROM sync.dead_letters
        """
        params: list[Any] = []
        if device_id is not None:
            sql += " WHERE device_id = ?"
            params.append(device_id)
        sql += " ORDER BY failed_at, change_id"

        letters = []
        for row in self.db.fetchall(sql, params):
            letters.append(
                DeadLetter(
                    change=_row_to_change(row[:9]),
                    reason=DeadLetterReason(row[9]),
                    error=row[8],
                    failed_at=from_db_timestamp(row[10]),
                )
            )
        return letters

    def requeue_dead_letter(self, change_id: str) -> ChangeRecord | None:
        """Move a dead letter back onto the queue with a fresh retry budget.

        If a newer change for the same key is already pending, the dead letter
        is coalesced into it like any other enqueue.
        """
        with self.db.transaction():
            row = self.db.fetchone(
                f"SELECT {_QUEUE_COLUMNS} FROM sync.dead_letters WHERE change_id = ?",
                [change_id],
            )
            if row is None:
                return None
            self.db.execute(
                "DELETE FROM sync.dead_letters WHERE change_id = ?", [change_id]
            )
            change = _row_to_queued(row).model_copy(
                update={"retry_count": 0, "last_error": None}
            )
            existing = self.pending_for(
                change.device_id, change.entity_type, change.entity_id
            )
            if existing is not None:
                # The pending change is newer; keep it
                logger.info(
                    f"Dead letter {change_id} superseded by pending change {existing.id}"
                )
                return existing
            self._insert(change)
        logger.info(f"Requeued dead letter {change_id}")
        return change

    def count(self, device_id: str | None = None) -> int:
        if device_id is None:
            row = self.db.fetchone("SELECT count(*) FROM sync.change_queue")
        else:
            row = self.db.fetchone(
                "SELECT count(*) FROM sync.change_queue WHERE device_id = ?",
                [device_id],
            )
        return int(row[0]) if row else 0

    def oldest_timestamp(self, device_id: str) -> datetime | None:
        row = self.db.fetchone(
            "SELECT min(change_timestamp) FROM sync.change_queue WHERE device_id = ?",
            [device_id],
        )
        return from_db_timestamp(row[0]) if row else None
