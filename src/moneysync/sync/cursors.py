"""Per-device, per-entity-type pull cursors.

A cursor is the latest remote timestamp whose changes have been fully applied
locally. Cursors only move forward.
"""

import logging
from datetime import datetime

from moneysync.database import SyncDatabase
from moneysync.sync.models import EntityType
from moneysync.utils.clock import (
    Clock,
    ensure_utc,
    from_db_timestamp,
    to_db_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)


class CursorTracker:
    """Cursor storage backed by the ``sync.cursors`` table."""

    def __init__(self, database: SyncDatabase, clock: Clock = utcnow):
        self.db = database
        self._clock = clock

    def get_cursor(self, device_id: str, entity_type: EntityType) -> datetime | None:
        """Return the cursor position, or None if the type was never pulled."""
        row = self.db.fetchone(
            """
            SELECT position FROM sync.cursors
            WHERE device_id = ? AND entity_type = ?
            """,
            [device_id, entity_type.value],
        )
        return from_db_timestamp(row[0]) if row else None

    def advance_cursor(
        self, device_id: str, entity_type: EntityType, position: datetime
    ) -> bool:
        """Move a cursor forward.

        Returns:
            bool: True if the cursor moved; False if ``position`` is not later
            than the stored value, in which case nothing changes
        """
        position = ensure_utc(position)
        with self.db.transaction():
            current = self.get_cursor(device_id, entity_type)
            if current is not None and position <= current:
                logger.debug(
                    f"Cursor {device_id}/{entity_type.value} stays at "
                    f"{current.isoformat()} (offered {position.isoformat()})"
                )
                return False

            now = to_db_timestamp(self._clock())
            if current is None:
                self.db.execute(
                    """
                    INSERT INTO sync.cursors (device_id, entity_type, position, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [device_id, entity_type.value, to_db_timestamp(position), now],
                )
            else:
                self.db.execute(
                    """
                    UPDATE sync.cursors SET position = ?, updated_at = ?
                    WHERE device_id = ? AND entity_type = ?
                    """,
                    [to_db_timestamp(position), now, device_id, entity_type.value],
                )
        return True

    def list_cursors(self, device_id: str) -> dict[EntityType, datetime]:
        rows = self.db.fetchall(
            """
            SELECT entity_type, position FROM sync.cursors
            WHERE device_id = ? ORDER BY entity_type
            """,
            [device_id],
        )
        return {EntityType(row[0]): from_db_timestamp(row[1]) for row in rows}

