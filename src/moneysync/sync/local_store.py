"""Device-side cache of entity snapshots.

Local mutations go through ``save_local``, which writes the new snapshot and
enqueues the matching change in one transaction. Remote snapshots go through
``apply_remote``, a compare-and-swap on the snapshot's ``updated_at`` so that a
sync cycle never overwrites an edit made while it was waiting on the network.
"""

import json
import logging
from datetime import datetime
from typing import Any

from moneysync.database import SyncDatabase
from moneysync.sync.change_queue import ChangeQueueStore
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    EntitySnapshot,
    EntityType,
)
from moneysync.utils.clock import Clock, from_db_timestamp, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

_SNAPSHOT_COLUMNS = (
    "entity_type, entity_id, payload, updated_at, is_active, version, last_synced"
)


class _Unchecked:
    def __repr__(self) -> str:
        return "UNCHECKED"


# Sentinel for apply_remote: write without comparing the stored updated_at
UNCHECKED: Any = _Unchecked()


def _row_to_snapshot(row: tuple[Any, ...]) -> EntitySnapshot:
    return EntitySnapshot(
        entity_type=EntityType(row[0]),
        entity_id=row[1],
        payload=json.loads(row[2]),
        updated_at=from_db_timestamp(row[3]),
        is_active=row[4],
        version=row[5],
        last_synced=from_db_timestamp(row[6]),
    )


class LocalEntityStore:
    """Entity cache backed by the ``sync.local_entities`` table."""

    def __init__(
        self,
        database: SyncDatabase,
        queue: ChangeQueueStore,
        clock: Clock = utcnow,
    ):
        self.db = database
        self.queue = queue
        self._clock = clock

    def get(self, entity_type: EntityType, entity_id: str) -> EntitySnapshot | None:
        row = self.db.fetchone(
            f"""
            SELECT {_SNAPSHOT_COLUMNS} FROM sync.local_entities
            WHERE entity_type = ? AND entity_id = ?
            """,
            [entity_type.value, entity_id],
        )
        return _row_to_snapshot(row) if row else None

    def list_entities(
        self, entity_type: EntityType, include_deleted: bool = False
    ) -> list[EntitySnapshot]:
        sql = f"SELECT {_SNAPSHOT_COLUMNS} FROM sync.local_entities WHERE entity_type = ?"
        if not include_deleted:
            sql += " AND is_active"
        sql += " ORDER BY entity_id"
        return [
            _row_to_snapshot(row) for row in self.db.fetchall(sql, [entity_type.value])
        ]

    def save_local(
        self,
        device_id: str,
        entity_type: EntityType,
        entity_id: str,
        operation: ChangeOperation,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ChangeRecord:
        """Apply a local mutation and queue it for push, atomically.

        Update payloads are merged into the cached payload; Create replaces it;
        Delete marks the snapshot inactive and keeps its payload.

        Returns:
            ChangeRecord: The change now pending for the entity (possibly a
            coalesced record)
        """
        with self.db.transaction():
            current = self.get(entity_type, entity_id)
            change = ChangeRecord(
                device_id=device_id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                payload=payload or {},
                timestamp=timestamp or self._clock(),
                base=current,
            )
            self._upsert(change.to_snapshot(current))
            pending = self.queue.enqueue(change)
        logger.debug(
            f"Recorded local {operation.value} of {entity_type.value} '{entity_id}'"
        )
        return pending

    def delete_local(
        self, device_id: str, entity_type: EntityType, entity_id: str
    ) -> ChangeRecord:
        """Soft-delete an entity locally and queue the Delete."""
        return self.save_local(device_id, entity_type, entity_id, ChangeOperation.DELETE)

    def apply_remote(
        self, snapshot: EntitySnapshot, expected_updated_at: Any = UNCHECKED
    ) -> bool:
        """Write a snapshot received from the server of record.

        Args:
            snapshot: Snapshot to store; ``last_synced`` is set to now
            expected_updated_at: ``updated_at`` the caller read before deciding
                to write, or None if it saw no local row. The write only
                happens if the stored row still matches.

        Returns:
            bool: True if the snapshot was written
        """
        snapshot = snapshot.model_copy(update={"last_synced": self._clock()})
        with self.db.transaction():
            if expected_updated_at is UNCHECKED:
                self._upsert(snapshot)
                return True
            if expected_updated_at is None:
                return self._insert_if_absent(snapshot)
            return self._update_if_unchanged(snapshot, expected_updated_at)

    def revert(self, change: ChangeRecord) -> bool:
        """Undo a change the server refused by restoring the snapshot it replaced.

        An entity the change introduced to the cache is removed again. Nothing
        is written if the cached row has moved on since the change was made.

        Returns:
            bool: True if the cache was rolled back
        """
        key = [change.entity_type.value, change.entity_id]
        with self.db.transaction():
            if change.base is not None:
                return self._update_if_unchanged(change.base, change.timestamp)
            removed = self.db.execute_count(
                """
                DELETE FROM sync.local_entities
                WHERE entity_type = ? AND entity_id = ? AND updated_at = ?
                """,
                [*key, to_db_timestamp(change.timestamp)],
            )
            return removed == 1

    def _params(self, snapshot: EntitySnapshot) -> list[Any]:
        return [
            json.dumps(snapshot.payload, default=str),
            to_db_timestamp(snapshot.updated_at),
            snapshot.is_active,
            snapshot.version,
            to_db_timestamp(snapshot.last_synced),
        ]

    def _upsert(self, snapshot: EntitySnapshot) -> None:
        updated = self.db.execute_count(
            """
            UPDATE sync.local_entities
            SET payload = ?, updated_at = ?, is_active = ?, version = ?, last_synced = ?
            WHERE entity_type = ? AND entity_id = ?
            """,
            [*self._params(snapshot), snapshot.entity_type.value, snapshot.entity_id],
        )
        if updated == 0:
            self._insert_if_absent(snapshot)

    def _insert_if_absent(self, snapshot: EntitySnapshot) -> bool:
        inserted = self.db.execute_count(
            """
            INSERT OR IGNORE INTO sync.local_entities (
                entity_type, entity_id, payload, updated_at, is_active, version,
                last_synced
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [snapshot.entity_type.value, snapshot.entity_id, *self._params(snapshot)],
        )
        return inserted == 1

    def _update_if_unchanged(
        self, snapshot: EntitySnapshot, expected_updated_at: datetime
    ) -> bool:
        updated = self.db.execute_count(
            """
            UPDATE sync.local_entities
            SET payload = ?, updated_at = ?, is_active = ?, version = ?, last_synced = ?
            WHERE entity_type = ? AND entity_id = ? AND updated_at = ?
            """,
            [
                *self._params(snapshot),
                snapshot.entity_type.value,
                snapshot.entity_id,
                to_db_timestamp(expected_updated_at),
            ],
        )
        if updated == 0:
            logger.debug(
                f"Skipped stale write of {snapshot.entity_type.value} "
                f"'{snapshot.entity_id}': local copy changed during sync"
            )
        return updated == 1

    def mark_synced(self, keys: list[tuple[EntityType, str]]) -> int:
        """Stamp ``last_synced`` on entities whose local state the server accepted."""
        if not keys:
            return 0
        return self.db.execute_count(
            """
            UPDATE sync.local_entities SET last_synced = ?
            WHERE list_contains(?, entity_type || ':' || entity_id)
            """,
            [
                to_db_timestamp(self._clock()),
                [f"{entity_type.value}:{entity_id}" for entity_type, entity_id in keys],
            ],
        )
