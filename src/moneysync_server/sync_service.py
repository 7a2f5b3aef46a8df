"""In-memory server of record.

Implements the remote sync contract used by the sync engine:

- pushes are idempotent per change id
- a push conflicts when the server holds a version at least as new as the
  change (or, for an Update, a deleted one), unless the push is forced
- Update and Delete of an unknown entity fail with EntityNotFoundError
- every accepted write bumps the entity's version
- ``fetch_changes`` pages by ``updated_at`` and never splits a run of equal
  timestamps across pages, so a cursor at the end of a page is safe
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Literal

from moneysync.errors import (
    EntityNotFoundError,
    EntityValidationError,
    RemoteConflictError,
    ValidationRejectedError,
)
from moneysync.sync.entities import validate_snapshot
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    EntitySnapshot,
    EntityType,
    RemoteChangeBatch,
)
from moneysync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

EntityKey = tuple[EntityType, str]


class LocalSyncServer:
    """Server of record held in process memory."""

    def __init__(self, clock: Clock = utcnow, latency: float = 0.0):
        """Initialize an empty server.

        Args:
            clock: Source of the current time
            latency: Seconds each call waits before answering
        """
        self._clock = clock
        self.latency = latency
        self._entities: dict[EntityKey, EntitySnapshot] = {}
        self._applied: dict[str, EntityKey] = {}
        self.push_failures: deque[BaseException] = deque()
        self.fetch_failures: deque[BaseException] = deque()
        self.push_count = 0
        self.financial_sync_requests: list[tuple[str, str]] = []

    def fail_next_push(self, error: BaseException, times: int = 1) -> None:
        self.push_failures.extend([error] * times)

    def fail_next_fetch(self, error: BaseException, times: int = 1) -> None:
        self.fetch_failures.extend([error] * times)

    def get_entity(self, entity_type: EntityType, entity_id: str) -> EntitySnapshot | None:
        return self._entities.get((entity_type, entity_id))

    def entities(self, entity_type: EntityType) -> list[EntitySnapshot]:
        return sorted(
            (s for s in self._entities.values() if s.entity_type is entity_type),
            key=lambda s: s.entity_id,
        )

    def put_entity(self, snapshot: EntitySnapshot) -> EntitySnapshot:
        """Write a snapshot directly, as another client or an import would."""
        current = self._entities.get(snapshot.key)
        stored = snapshot.model_copy(
            update={
                "version": (current.version if current else 0) + 1,
                "last_synced": None,
            }
        )
        self._entities[stored.key] = stored
        return stored

    async def _wait(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def push_change(
        self, change: ChangeRecord, force: bool = False
    ) -> EntitySnapshot:
        await self._wait()
        self.push_count += 1
        if self.push_failures:
            raise self.push_failures.popleft()

        if change.id in self._applied:
            return self._entities[self._applied[change.id]]

        key = (change.entity_type, change.entity_id)
        existing = self._entities.get(key)
        if not force:
            self._check_conflict(change, existing)
        elif existing is None and change.operation is not ChangeOperation.CREATE:
            raise EntityNotFoundError(
                f"{change.entity_type.value} '{change.entity_id}' does not exist"
            )

        snapshot = change.to_snapshot(existing).model_copy(
            update={
                "version": (existing.version if existing else 0) + 1,
                "last_synced": None,
            }
        )
        try:
            validate_snapshot(snapshot)
        except EntityValidationError as e:
            raise ValidationRejectedError(str(e)) from e

        self._entities[key] = snapshot
        self._applied[change.id] = key
        logger.debug(
            f"Applied {change.operation.value} of {change.entity_type.value} "
            f"'{change.entity_id}' (version {snapshot.version})"
        )
        return snapshot

    def _check_conflict(
        self, change: ChangeRecord, existing: EntitySnapshot | None
    ) -> None:
        if existing is None:
            if change.operation is not ChangeOperation.CREATE:
                raise EntityNotFoundError(
                    f"{change.entity_type.value} '{change.entity_id}' does not exist"
                )
            return

        newer = existing.updated_at >= change.timestamp
        if change.operation is ChangeOperation.CREATE:
            conflict = existing.is_active and newer
        elif change.operation is ChangeOperation.UPDATE:
            conflict = newer or not existing.is_active
        else:
            conflict = newer and existing.is_active
        if conflict:
            raise RemoteConflictError(existing)

    async def fetch_changes(
        self, entity_type: EntityType, since: datetime | None, limit: int
    ) -> RemoteChangeBatch:
        await self._wait()
        if self.fetch_failures:
            raise self.fetch_failures.popleft()

        newer = sorted(
            (
                s
                for s in self._entities.values()
                if s.entity_type is entity_type
                and (since is None or s.updated_at > since)
            ),
            key=lambda s: (s.updated_at, s.entity_id),
        )
        end = min(limit, len(newer))
        while 0 < end < len(newer) and newer[end].updated_at == newer[end - 1].updated_at:
            end += 1
        return RemoteChangeBatch(
            changes=newer[:end],
            timestamp=self._clock(),
            has_more=end < len(newer),
        )

    async def request_financial_sync(
        self, account_id: str, sync_type: Literal["full", "incremental"]
    ) -> None:
        await self._wait()
        self.financial_sync_requests.append((account_id, sync_type))
        logger.info(f"Queued {sync_type} financial sync for account {account_id}")
