"""Tests for the change queue store: ordering, coalescing, CAS and dead letters."""

from pathlib import Path

import pytest
from conftest import DEVICE, at

from moneysync.database import SyncDatabase
from moneysync.sync.change_queue import ChangeQueueStore, FailureOutcome, coalesce
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    DeadLetterReason,
    EntityType,
)

pytestmark = pytest.mark.unit


def change(
    entity_id: str,
    operation: ChangeOperation,
    seconds: float,
    payload: dict | None = None,
    entity_type: EntityType = EntityType.ACCOUNT,
    device_id: str = DEVICE,
) -> ChangeRecord:
    return ChangeRecord(
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload or {},
        timestamp=at(seconds),
        device_id=device_id,
    )


class TestDrain:
    def test_drain_orders_by_timestamp_and_does_not_consume(
        self, queue: ChangeQueueStore
    ) -> None:
        queue.enqueue(change("b", ChangeOperation.CREATE, 2, {"name": "B"}))
        queue.enqueue(change("a", ChangeOperation.CREATE, 1, {"name": "A"}))
        queue.enqueue(change("c", ChangeOperation.CREATE, 3, {"name": "C"}))

        first = queue.drain(DEVICE)
        second = queue.drain(DEVICE)

        assert [c.entity_id for c in first] == ["a", "b", "c"]
        assert [c.id for c in second] == [c.id for c in first]
        assert queue.count(DEVICE) == 3

    def test_drain_is_scoped_to_device(self, queue: ChangeQueueStore) -> None:
        queue.enqueue(change("a", ChangeOperation.CREATE, 1, device_id="other"))
        queue.enqueue(change("b", ChangeOperation.CREATE, 2))

        assert [c.entity_id for c in queue.drain(DEVICE)] == ["b"]
        assert queue.count() == 2

    def test_drain_limit(self, queue: ChangeQueueStore) -> None:
        for i in range(5):
            queue.enqueue(change(f"e{i}", ChangeOperation.CREATE, i))

        assert len(queue.drain(DEVICE, limit=2)) == 2

    def test_queue_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "reopen.duckdb"
        database = SyncDatabase(path)
        ChangeQueueStore(database).enqueue(
            change("a", ChangeOperation.CREATE, 1, {"name": "A"})
        )
        database.close()

        reopened = SyncDatabase(path)
        try:
            pending = ChangeQueueStore(reopened).drain(DEVICE)
            assert [(c.entity_id, c.payload) for c in pending] == [("a", {"name": "A"})]
            assert pending[0].timestamp == at(1)
        finally:
            reopened.close()


class TestCoalescing:
    def test_create_then_update_stays_create_with_new_payload(
        self, queue: ChangeQueueStore
    ) -> None:
        queue.enqueue(change("a", ChangeOperation.CREATE, 1, {"name": "Old"}))
        update = change("a", ChangeOperation.UPDATE, 2, {"name": "New"})

        survivor = queue.enqueue(update)

        pending = queue.drain(DEVICE)
        assert len(pending) == 1
        assert pending[0].operation is ChangeOperation.CREATE
        assert pending[0].payload == {"name": "New"}
        assert pending[0].id == update.id == survivor.id
        assert pending[0].timestamp == at(2)

    def test_update_then_update_keeps_newer_payload(
        self, queue: ChangeQueueStore
    ) -> None:
        queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "One"}))
        queue.enqueue(change("a", ChangeOperation.UPDATE, 2, {"name": "Two"}))

        pending = queue.drain(DEVICE)
        assert len(pending) == 1
        assert pending[0].operation is ChangeOperation.UPDATE
        assert pending[0].payload == {"name": "Two"}

    @pytest.mark.parametrize(
        "first", [ChangeOperation.CREATE, ChangeOperation.UPDATE]
    )
    def test_delete_supersedes(
        self, queue: ChangeQueueStore, first: ChangeOperation
    ) -> None:
        queue.enqueue(change("a", first, 1, {"name": "A"}))
        queue.enqueue(change("a", ChangeOperation.DELETE, 2))

        pending = queue.drain(DEVICE)
        assert [c.operation for c in pending] == [ChangeOperation.DELETE]

    def test_create_after_delete_replaces(self, queue: ChangeQueueStore) -> None:
        queue.enqueue(change("a", ChangeOperation.DELETE, 1))
        queue.enqueue(change("a", ChangeOperation.CREATE, 2, {"name": "Again"}))

        pending = queue.drain(DEVICE)
        assert [c.operation for c in pending] == [ChangeOperation.CREATE]

    def test_coalescing_resets_retry_count(self, queue: ChangeQueueStore) -> None:
        first = queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "A"}))
        queue.mark_failed(first.id, "boom")
        queue.mark_failed(first.id, "boom")

        queue.enqueue(change("a", ChangeOperation.UPDATE, 2, {"name": "B"}))

        pending = queue.drain(DEVICE)[0]
        assert pending.retry_count == 0
        assert pending.last_error is None

    def test_same_id_under_different_types_is_not_coalesced(
        self, queue: ChangeQueueStore
    ) -> None:
        queue.enqueue(change("x", ChangeOperation.CREATE, 1, {"name": "A"}))
        queue.enqueue(
            change("x", ChangeOperation.CREATE, 2, entity_type=EntityType.BUDGET)
        )

        assert queue.count(DEVICE) == 2

    def test_coalesce_is_pure(self) -> None:
        existing = change("a", ChangeOperation.CREATE, 1, {"name": "A"})
        incoming = change("a", ChangeOperation.UPDATE, 2, {"name": "B"})

        merged = coalesce(existing, incoming)

        assert merged.operation is ChangeOperation.CREATE
        assert incoming.operation is ChangeOperation.UPDATE


class TestAcknowledge:
    def test_acknowledge_is_compare_and_swap(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.CREATE, 1))

        assert queue.acknowledge(record.id) is True
        assert queue.acknowledge(record.id) is False
        assert queue.count(DEVICE) == 0

    def test_superseded_change_cannot_be_acknowledged(
        self, queue: ChangeQueueStore
    ) -> None:
        old = queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "A"}))
        queue.enqueue(change("a", ChangeOperation.UPDATE, 2, {"name": "B"}))

        assert queue.acknowledge(old.id) is False
        assert queue.count(DEVICE) == 1

    def test_acknowledge_many(self, queue: ChangeQueueStore) -> None:
        ids = [
            queue.enqueue(change(f"e{i}", ChangeOperation.CREATE, i)).id
            for i in range(3)
        ]

        assert queue.acknowledge_many(ids[:2] + ["missing"]) == 2
        assert [c.id for c in queue.drain(DEVICE)] == ids[2:]
        assert queue.acknowledge_many([]) == 0


class TestFailures:
    def test_fifth_failure_dead_letters(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "A"}))

        outcomes = [queue.mark_failed(record.id, f"attempt {i}") for i in range(1, 6)]

        assert outcomes[:4] == [FailureOutcome.RETRY] * 4
        assert outcomes[4] is FailureOutcome.DEAD_LETTERED
        assert queue.count(DEVICE) == 0

        letters = queue.dead_letters(DEVICE)
        assert len(letters) == 1
        assert letters[0].change.id == record.id
        assert letters[0].change.retry_count == 5
        assert letters[0].reason is DeadLetterReason.EXHAUSTED
        assert letters[0].error == "attempt 5"

    def test_failure_increments_retry_count(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.UPDATE, 1))

        queue.mark_failed(record.id, "timeout")

        pending = queue.get(record.id)
        assert pending is not None
        assert pending.retry_count == 1
        assert pending.last_error == "timeout"

    def test_mark_failed_unknown_change(self, queue: ChangeQueueStore) -> None:
        assert queue.mark_failed("nope", "x") is FailureOutcome.NOT_PENDING

    def test_reject_dead_letters_immediately(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.UPDATE, 1))

        assert queue.reject(record.id, "invalid payload") is True
        assert queue.reject(record.id, "again") is False

        letters = queue.dead_letters()
        assert [(letter.reason, letter.error) for letter in letters] == [
            (DeadLetterReason.REJECTED, "invalid payload")
        ]

    def test_max_retries_must_be_positive(self, db: SyncDatabase) -> None:
        with pytest.raises(ValueError):
            ChangeQueueStore(db, max_retries=0)


class TestRequeue:
    def test_requeue_restores_with_fresh_budget(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "A"}))
        queue.reject(record.id, "bad")

        requeued = queue.requeue_dead_letter(record.id)

        assert requeued is not None
        assert requeued.id == record.id
        assert requeued.retry_count == 0
        assert queue.dead_letters() == []
        assert [c.id for c in queue.drain(DEVICE)] == [record.id]

    def test_requeue_keeps_newer_pending_change(self, queue: ChangeQueueStore) -> None:
        record = queue.enqueue(change("a", ChangeOperation.UPDATE, 1, {"name": "A"}))
        queue.reject(record.id, "bad")
        newer = queue.enqueue(change("a", ChangeOperation.UPDATE, 2, {"name": "B"}))

        result = queue.requeue_dead_letter(record.id)

        assert result is not None
        assert result.id == newer.id
        assert [c.payload for c in queue.drain(DEVICE)] == [{"name": "B"}]

    def test_requeue_unknown(self, queue: ChangeQueueStore) -> None:
        assert queue.requeue_dead_letter("missing") is None
