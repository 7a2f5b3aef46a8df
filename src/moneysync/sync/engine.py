"""Sync engine: one push/pull/commit cycle per device.

A cycle has three phases:

1. Push. Every queued change is sent to the server of record. Outcomes are
   only recorded in memory.
2. Pull. Remote snapshots newer than each entity type's cursor are fetched,
   validated and resolved against the local cache. A failure anywhere in an
   entity type's batch drops that whole batch.
3. Commit. One transaction acknowledges, discards or fails queued changes,
   writes resolved snapshots and advances cursors. Changes the server refused
   are dead-lettered and their effect on the local cache is undone. A storage
   failure rolls everything back and raises SyncAbortedError.

Network calls happen only in the first two phases and the commit never awaits,
so a cycle cancelled while waiting on the network leaves local state untouched.
"""

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from moneysync.connectors.remote import RemoteSyncService
from moneysync.database import SyncDatabase
from moneysync.errors import (
    EntityNotFoundError,
    EntityValidationError,
    RemoteConflictError,
    RemoteTimeoutError,
    StorageError,
    SyncAbortedError,
    is_transient,
)
from moneysync.sync.change_queue import ChangeQueueStore, FailureOutcome
from moneysync.sync.conflicts import ConflictResolver
from moneysync.sync.cursors import CursorTracker
from moneysync.sync.entities import validate_snapshot
from moneysync.sync.events import SyncEventBus, SyncEventKind
from moneysync.sync.local_store import LocalEntityStore
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    ConflictDescriptor,
    EntitySnapshot,
    EntityType,
    SyncErrorEntry,
    SyncErrorKind,
    SyncResult,
)
from moneysync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")
EntityKey = tuple[EntityType, str]


@dataclass
class _PlannedWrite:
    snapshot: EntitySnapshot
    # updated_at of the local row this write replaces; None if there was no row
    expected_updated_at: datetime | None


@dataclass
class _PullBatch:
    entity_type: EntityType
    writes: dict[EntityKey, _PlannedWrite] = field(default_factory=dict)
    stale: list[ChangeRecord] = field(default_factory=list)
    conflicts: list[ConflictDescriptor] = field(default_factory=list)
    cursor: datetime | None = None


@dataclass
class _CyclePlan:
    pending: dict[EntityKey, ChangeRecord]
    acknowledged: list[ChangeRecord] = field(default_factory=list)
    stale: list[ChangeRecord] = field(default_factory=list)
    failed: list[tuple[ChangeRecord, str]] = field(default_factory=list)
    rejected: list[tuple[ChangeRecord, str]] = field(default_factory=list)
    push_writes: dict[EntityKey, _PlannedWrite] = field(default_factory=dict)
    batches: list[_PullBatch] = field(default_factory=list)
    conflicts: list[ConflictDescriptor] = field(default_factory=list)
    errors: list[SyncErrorEntry] = field(default_factory=list)
    settled: set[str] = field(default_factory=set)

    def settle(self, change: ChangeRecord) -> None:
        self.settled.add(change.id)

    def pending_for(self, key: EntityKey) -> ChangeRecord | None:
        change = self.pending.get(key)
        if change is None or change.id in self.settled:
            return None
        return change


class SyncEngine:
    """Runs sync cycles against one server of record."""

    def __init__(
        self,
        database: SyncDatabase,
        queue: ChangeQueueStore,
        cursors: CursorTracker,
        local_store: LocalEntityStore,
        remote: RemoteSyncService,
        events: SyncEventBus | None = None,
        resolver: ConflictResolver | None = None,
        push_timeout: float = 30.0,
        pull_timeout: float = 30.0,
        pull_page_size: int = 500,
        clock: Clock = utcnow,
    ):
        self.db = database
        self.queue = queue
        self.cursors = cursors
        self.local = local_store
        self.remote = remote
        self.events = events or SyncEventBus()
        self.resolver = resolver or ConflictResolver()
        self.push_timeout = push_timeout
        self.pull_timeout = pull_timeout
        self.pull_page_size = pull_page_size
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}

    async def synchronize(
        self, device_id: str, entity_types: Iterable[EntityType] | None = None
    ) -> SyncResult:
        """Run a sync cycle for a device.

        A call made while a cycle for the same device is running waits for that
        cycle and returns its result instead of starting another. Cancelling
        such a call only stops the wait; the running cycle carries on.

        Raises:
            SyncAbortedError: If the commit failed; nothing was persisted
        """
        task = self._inflight.get(device_id)
        if task is not None:
            logger.debug(f"Joining in-flight sync cycle for device {device_id}")
            return await asyncio.shield(task)

        types = list(entity_types) if entity_types is not None else list(EntityType)
        task = asyncio.ensure_future(self._run_cycle(device_id, types))
        self._inflight[device_id] = task

        def _release(done: asyncio.Task[SyncResult]) -> None:
            if self._inflight.get(device_id) is done:
                del self._inflight[device_id]

        task.add_done_callback(_release)
        return await task

    def is_running(self, device_id: str) -> bool:
        return device_id in self._inflight

    async def _run_cycle(
        self, device_id: str, entity_types: list[EntityType]
    ) -> SyncResult:
        result = SyncResult(device_id=device_id, started_at=self._clock())
        try:
            changes = self.queue.drain(device_id)
            plan = _CyclePlan(
                pending={(c.entity_type, c.entity_id): c for c in changes}
            )
            logger.info(
                f"Starting sync for device {device_id}: "
                f"{len(changes)} pending change(s)"
            )

            for change in changes:
                await self._push_one(change, plan)

            for entity_type in entity_types:
                await self._pull_type(device_id, entity_type, plan)
        except StorageError as e:
            raise SyncAbortedError(f"Sync for device {device_id} aborted: {e}") from e

        applied = self._commit(plan, result)

        result.finished_at = self._clock()
        self._emit(device_id, applied, result)
        logger.info(
            f"Sync for device {device_id} finished ({result.status.value}): "
            f"pushed {result.pushed}, pulled {result.pulled}, "
            f"{len(result.conflicts)} conflict(s), {len(result.errors)} error(s)"
        )
        return result

    async def _call(self, awaitable: Awaitable[T], timeout: float, what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as e:
            raise RemoteTimeoutError(f"{what} timed out after {timeout}s") from e

    # Push

    async def _push_one(self, change: ChangeRecord, plan: _CyclePlan) -> None:
        try:
            await self._call(
                self.remote.push_change(change), self.push_timeout, f"Push of {change.id}"
            )
        except RemoteConflictError as e:
            await self._resolve_push_conflict(change, e.remote, plan)
            return
        except EntityNotFoundError as e:
            if change.operation is ChangeOperation.DELETE:
                # Deleting something the server never had is already done
                self._acknowledge(change, plan)
            else:
                self._reject(change, str(e), plan)
            return
        except Exception as e:
            self._push_failed(change, e, plan)
            return
        self._acknowledge(change, plan)

    def _acknowledge(self, change: ChangeRecord, plan: _CyclePlan) -> None:
        plan.acknowledged.append(change)
        plan.settle(change)

    def _reject(self, change: ChangeRecord, message: str, plan: _CyclePlan) -> None:
        logger.warning(f"Server rejected change {change.id}: {message}")
        plan.rejected.append((change, message))
        plan.settle(change)

    def _push_failed(
        self, change: ChangeRecord, error: Exception, plan: _CyclePlan
    ) -> None:
        if is_transient(error):
            # Left unsettled: the pull may still find it stale
            logger.warning(f"Push of change {change.id} failed, will retry: {error}")
            plan.failed.append((change, str(error)))
        else:
            self._reject(change, str(error), plan)

    async def _resolve_push_conflict(
        self, change: ChangeRecord, remote: EntitySnapshot, plan: _CyclePlan
    ) -> None:
        stored = self.local.get(change.entity_type, change.entity_id)
        local = stored if stored is not None else change.to_snapshot()
        resolution = self.resolver.resolve(
            local, remote, pending=change, detected_at=self._clock()
        )

        if resolution.echo:
            self._acknowledge(change, plan)
            return

        if resolution.winner == "local":
            try:
                await self._call(
                    self.remote.push_change(change, force=True),
                    self.push_timeout,
                    f"Forced push of {change.id}",
                )
            except Exception as e:
                self._push_failed(change, e, plan)
                return
            self._acknowledge(change, plan)
        else:
            plan.stale.append(change)
            plan.settle(change)
            plan.push_writes[remote.key] = _PlannedWrite(
                snapshot=remote,
                expected_updated_at=stored.updated_at if stored is not None else None,
            )

        if resolution.conflict is not None:
            plan.conflicts.append(resolution.conflict)
        logger.info(
            f"Conflict on {change.entity_type.value} '{change.entity_id}' "
            f"resolved for {resolution.winner} ({resolution.reason})"
        )

    # Pull

    def _local_view(
        self, key: EntityKey, batch: _PullBatch, plan: _CyclePlan
    ) -> tuple[EntitySnapshot | None, datetime | None]:
        """Local snapshot as it will be once earlier planned writes commit."""
        planned = batch.writes.get(key) or plan.push_writes.get(key)
        if planned is not None:
            return planned.snapshot, planned.snapshot.updated_at
        stored = self.local.get(*key)
        return stored, stored.updated_at if stored is not None else None

    async def _pull_type(
        self, device_id: str, entity_type: EntityType, plan: _CyclePlan
    ) -> None:
        batch = _PullBatch(entity_type=entity_type)
        since = self.cursors.get_cursor(device_id, entity_type)
        settled_in_batch: list[ChangeRecord] = []

        try:
            while True:
                page = await self._call(
                    self.remote.fetch_changes(entity_type, since, self.pull_page_size),
                    self.pull_timeout,
                    f"Pull of {entity_type.value}",
                )
                for snapshot in page.changes:
                    self._plan_pulled(snapshot, entity_type, batch, plan, settled_in_batch)
                    if batch.cursor is None or snapshot.updated_at > batch.cursor:
                        batch.cursor = snapshot.updated_at
                if not page.has_more or not page.changes:
                    break
                since = page.changes[-1].updated_at
        except StorageError:
            raise
        except Exception as e:
            # Nothing from a failed batch is kept, so its pending changes stay live
            for change in settled_in_batch:
                plan.settled.discard(change.id)
            message = f"Pull of {entity_type.value} failed: {e}"
            logger.warning(message)
            plan.errors.append(
                SyncErrorEntry(
                    kind=SyncErrorKind.PULL,
                    message=message,
                    entity_type=entity_type,
                    entity_id=getattr(e, "entity_id", None),
                )
            )
            return

        plan.batches.append(batch)
        plan.conflicts.extend(batch.conflicts)

    def _plan_pulled(
        self,
        snapshot: EntitySnapshot,
        entity_type: EntityType,
        batch: _PullBatch,
        plan: _CyclePlan,
        settled_in_batch: list[ChangeRecord],
    ) -> None:
        if snapshot.entity_type is not entity_type:
            raise EntityValidationError(
                entity_type.value,
                snapshot.entity_id,
                f"received in {entity_type.value} batch but typed "
                f"{snapshot.entity_type.value}",
            )
        validate_snapshot(snapshot)

        local, expected = self._local_view(snapshot.key, batch, plan)
        pending = plan.pending_for(snapshot.key)
        if (
            pending is not None
            and pending.base is not None
            and snapshot.updated_at <= pending.base.updated_at
        ):
            # The server has nothing newer than what the pending change was made on
            return
        if local is None and pending is not None:
            local = pending.to_snapshot()

        if local is None:
            batch.writes[snapshot.key] = _PlannedWrite(snapshot, None)
            return

        if pending is None and local.same_state(snapshot) and local.version == snapshot.version:
            return

        resolution = self.resolver.resolve(
            local, snapshot, pending=pending, detected_at=self._clock()
        )
        if resolution.winner == "remote":
            batch.writes[snapshot.key] = _PlannedWrite(snapshot, expected)
        if resolution.stale_pending and pending is not None:
            batch.stale.append(pending)
            plan.settle(pending)
            settled_in_batch.append(pending)
        if resolution.conflict is not None:
            batch.conflicts.append(resolution.conflict)

    # Commit

    def _commit(self, plan: _CyclePlan, result: SyncResult) -> list[EntitySnapshot]:
        applied: list[EntitySnapshot] = []
        errors = list(plan.errors)
        try:
            with self.db.transaction():
                acknowledged = self.queue.acknowledge_many(
                    [change.id for change in plan.acknowledged]
                )
                self.local.mark_synced(
                    [(c.entity_type, c.entity_id) for c in plan.acknowledged]
                )
                for change in plan.stale:
                    self.queue.discard(change.id)
                for write in plan.push_writes.values():
                    if self.local.apply_remote(write.snapshot, write.expected_updated_at):
                        applied.append(write.snapshot)

                rejected: list[ChangeRecord] = []
                for change, message in plan.rejected:
                    if self.queue.reject(change.id, message):
                        rejected.append(change)
                        errors.append(self._error_entry(change, SyncErrorKind.PERMANENT, message))
                for change, message in plan.failed:
                    if change.id in plan.settled:
                        # Discarded as stale by the pull
                        continue
                    outcome = self.queue.mark_failed(change.id, message)
                    if outcome is FailureOutcome.DEAD_LETTERED:
                        errors.append(self._error_entry(change, SyncErrorKind.EXHAUSTED, message))
                    elif outcome is FailureOutcome.RETRY:
                        errors.append(self._error_entry(change, SyncErrorKind.TRANSIENT, message))

                pulled = 0
                for batch in plan.batches:
                    for write in batch.writes.values():
                        if self.local.apply_remote(write.snapshot, write.expected_updated_at):
                            applied.append(write.snapshot)
                            pulled += 1
                    for change in batch.stale:
                        self.queue.discard(change.id)
                    if batch.cursor is not None:
                        self.cursors.advance_cursor(
                            result.device_id, batch.entity_type, batch.cursor
                        )

                # After pulled writes, so a newer remote version is not replaced
                for change in rejected:
                    if self.local.revert(change) and change.base is not None:
                        applied.append(change.base)
        except StorageError as e:
            logger.error(f"Sync for device {result.device_id} aborted: {e}")
            raise SyncAbortedError(f"Sync commit failed and was rolled back: {e}") from e

        result.pushed = acknowledged
        result.pulled = pulled
        result.conflicts = list(plan.conflicts)
        result.errors = errors
        return applied

    @staticmethod
    def _error_entry(
        change: ChangeRecord, kind: SyncErrorKind, message: str
    ) -> SyncErrorEntry:
        return SyncErrorEntry(
            kind=kind,
            message=message,
            entity_type=change.entity_type,
            entity_id=change.entity_id,
            change_id=change.id,
        )

    def _emit(
        self, device_id: str, applied: list[EntitySnapshot], result: SyncResult
    ) -> None:
        for snapshot in applied:
            self.events.emit(SyncEventKind.CHANGE_APPLIED, device_id, snapshot)
        for conflict in result.conflicts:
            self.events.emit(SyncEventKind.CONFLICT, device_id, conflict)
        for error in result.errors:
            self.events.emit(SyncEventKind.ERROR, device_id, error)
        self.events.emit(SyncEventKind.CYCLE_COMPLETED, device_id, result)
