"""Tests for the local entity cache."""

import pytest
from conftest import DEVICE, at
from pytest_mock import MockerFixture

from moneysync.errors import StorageError
from moneysync.sync.change_queue import ChangeQueueStore
from moneysync.sync.local_store import LocalEntityStore
from moneysync.sync.models import ChangeOperation, EntitySnapshot, EntityType

pytestmark = pytest.mark.unit

ACCOUNT = EntityType.ACCOUNT


def test_save_local_writes_snapshot_and_queues_change(
    local_store: LocalEntityStore, queue: ChangeQueueStore
) -> None:
    record = local_store.save_local(
        DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "Checking"}, at(1)
    )

    snapshot = local_store.get(ACCOUNT, "a1")
    assert snapshot is not None
    assert snapshot.payload == {"name": "Checking"}
    assert snapshot.updated_at == at(1)
    assert snapshot.last_synced is None
    assert [c.id for c in queue.drain(DEVICE)] == [record.id]


def test_update_merges_payload(local_store: LocalEntityStore) -> None:
    local_store.save_local(
        DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "Checking", "mask": "1234"}, at(1)
    )
    local_store.save_local(
        DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "Joint checking"}, at(2)
    )

    snapshot = local_store.get(ACCOUNT, "a1")
    assert snapshot is not None
    assert snapshot.payload == {"name": "Joint checking", "mask": "1234"}


def test_delete_is_soft_and_reversible(
    local_store: LocalEntityStore, queue: ChangeQueueStore
) -> None:
    local_store.save_local(
        DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "Checking"}, at(1)
    )
    local_store.delete_local(DEVICE, ACCOUNT, "a1")

    assert local_store.list_entities(ACCOUNT) == []
    deleted = local_store.list_entities(ACCOUNT, include_deleted=True)
    assert [(s.entity_id, s.is_active, s.payload) for s in deleted] == [
        ("a1", False, {"name": "Checking"})
    ]
    assert [c.operation for c in queue.drain(DEVICE)] == [ChangeOperation.DELETE]


def test_save_local_is_atomic(
    local_store: LocalEntityStore, queue: ChangeQueueStore, mocker: MockerFixture
) -> None:
    mocker.patch.object(queue, "enqueue", side_effect=StorageError("disk full"))

    with pytest.raises(StorageError):
        local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "Checking"}, at(1)
        )

    assert local_store.get(ACCOUNT, "a1") is None


class TestApplyRemote:
    def remote(self, seconds: float, name: str) -> EntitySnapshot:
        return EntitySnapshot(
            entity_type=ACCOUNT,
            entity_id="a1",
            payload={"name": name},
            updated_at=at(seconds),
            version=4,
        )

    def test_insert_only_when_absent(self, local_store: LocalEntityStore) -> None:
        assert local_store.apply_remote(self.remote(5, "First"), None) is True
        assert local_store.apply_remote(self.remote(6, "Second"), None) is False

        snapshot = local_store.get(ACCOUNT, "a1")
        assert snapshot is not None and snapshot.payload == {"name": "First"}
        assert snapshot.version == 4
        assert snapshot.last_synced is not None

    def test_compare_and_swap_on_updated_at(self, local_store: LocalEntityStore) -> None:
        local_store.apply_remote(self.remote(5, "First"))

        assert local_store.apply_remote(self.remote(9, "Stale read"), at(1)) is False
        assert local_store.apply_remote(self.remote(9, "Fresh read"), at(5)) is True

        snapshot = local_store.get(ACCOUNT, "a1")
        assert snapshot is not None and snapshot.payload == {"name": "Fresh read"}

    def test_unchecked_write_overwrites(self, local_store: LocalEntityStore) -> None:
        local_store.apply_remote(self.remote(5, "First"))
        local_store.apply_remote(self.remote(3, "Older but forced"))

        snapshot = local_store.get(ACCOUNT, "a1")
        assert snapshot is not None and snapshot.updated_at == at(3)

    def test_mark_synced(self, local_store: LocalEntityStore) -> None:
        local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "Checking"}, at(1)
        )

        assert local_store.mark_synced([(ACCOUNT, "a1"), (ACCOUNT, "missing")]) == 1
        snapshot = local_store.get(ACCOUNT, "a1")
        assert snapshot is not None and snapshot.last_synced is not None


class TestRevert:
    def synced(self, local_store: LocalEntityStore) -> EntitySnapshot:
        snapshot = EntitySnapshot(
            entity_type=ACCOUNT,
            entity_id="a1",
            payload={"name": "Synced"},
            updated_at=at(5),
            version=1,
        )
        local_store.apply_remote(snapshot)
        stored = local_store.get(ACCOUNT, "a1")
        assert stored is not None
        return stored

    def test_base_survives_coalescing_and_restart(
        self, local_store: LocalEntityStore, queue: ChangeQueueStore
    ) -> None:
        synced = self.synced(local_store)
        local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "First"}, at(10)
        )
        local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "Second"}, at(11)
        )

        (pending,) = queue.drain(DEVICE)

        assert pending.base == synced

    def test_revert_restores_base(
        self, local_store: LocalEntityStore, queue: ChangeQueueStore
    ) -> None:
        synced = self.synced(local_store)
        record = local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "Bad"}, at(10)
        )

        assert local_store.revert(record) is True
        assert local_store.get(ACCOUNT, "a1") == synced

    def test_revert_of_create_removes_entity(self, local_store: LocalEntityStore) -> None:
        record = local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.CREATE, {"name": "New"}, at(10)
        )

        assert local_store.revert(record) is True
        assert local_store.get(ACCOUNT, "a1") is None

    def test_revert_skips_row_changed_since(self, local_store: LocalEntityStore) -> None:
        self.synced(local_store)
        record = local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "Bad"}, at(10)
        )
        local_store.save_local(
            DEVICE, ACCOUNT, "a1", ChangeOperation.UPDATE, {"name": "Later"}, at(12)
        )

        assert local_store.revert(record) is False
        current = local_store.get(ACCOUNT, "a1")
        assert current is not None and current.payload == {"name": "Later"}
