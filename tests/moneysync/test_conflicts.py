"""Tests for deterministic conflict resolution."""

import pytest
from conftest import DEVICE, at

from moneysync.sync.conflicts import ConflictResolver, pick_winner
from moneysync.sync.models import (
    ChangeOperation,
    ChangeRecord,
    EntitySnapshot,
    EntityType,
)

pytestmark = pytest.mark.unit


def snapshot(
    seconds: float, name: str = "Checking", is_active: bool = True, entity_id: str = "a1"
) -> EntitySnapshot:
    return EntitySnapshot(
        entity_type=EntityType.ACCOUNT,
        entity_id=entity_id,
        payload={"name": name},
        updated_at=at(seconds),
        is_active=is_active,
    )


def pending(seconds: float, operation: ChangeOperation = ChangeOperation.UPDATE) -> ChangeRecord:
    return ChangeRecord(
        entity_type=EntityType.ACCOUNT,
        entity_id="a1",
        operation=operation,
        payload={"name": "Local"},
        timestamp=at(seconds),
        device_id=DEVICE,
    )


@pytest.fixture
def resolver() -> ConflictResolver:
    return ConflictResolver()


class TestRules:
    def test_remote_newer_wins(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(snapshot(10, "Local"), snapshot(20, "Remote"), pending(10))

        assert result.winner == "remote"
        assert result.snapshot.payload == {"name": "Remote"}
        assert result.stale_pending is True
        assert result.conflict is not None
        assert result.conflict.reason == "remote_newer"
        assert result.conflict.change_id is not None

    def test_local_newer_wins(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(snapshot(30, "Local"), snapshot(20, "Remote"), pending(30))

        assert result.winner == "local"
        assert result.snapshot.payload == {"name": "Local"}
        assert result.stale_pending is False
        assert result.conflict is not None
        assert result.conflict.resolution == "local"

    def test_tie_goes_to_remote(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(snapshot(20, "Local"), snapshot(20, "Remote"), pending(20))

        assert result.winner == "remote"
        assert result.reason == "tie_prefers_remote"

    def test_remote_delete_beats_newer_local_edit(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(
            snapshot(50, "Local"), snapshot(10, is_active=False), pending(50)
        )

        assert result.winner == "remote"
        assert result.reason == "remote_deleted"
        assert result.snapshot.is_active is False

    def test_newer_local_delete_beats_remote_update(self, resolver: ConflictResolver) -> None:
        local = snapshot(30, is_active=False)

        result = resolver.resolve(
            local, snapshot(20, "Remote"), pending(30, ChangeOperation.DELETE)
        )

        assert result.winner == "local"
        assert result.snapshot.is_active is False

    def test_no_pending_change_means_no_conflict(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(snapshot(10), snapshot(20, "Remote"))

        assert result.winner == "remote"
        assert result.conflict is None
        assert result.stale_pending is False

    def test_echo_of_pending_write_is_not_a_conflict(self, resolver: ConflictResolver) -> None:
        local = snapshot(10, "Local")
        remote = local.model_copy(update={"version": 3})

        result = resolver.resolve(local, remote, pending(10))

        assert result.echo is True
        assert result.stale_pending is True
        assert result.conflict is None

    def test_mismatched_entities_rejected(self, resolver: ConflictResolver) -> None:
        with pytest.raises(ValueError):
            resolver.resolve(snapshot(1), snapshot(2, entity_id="other"))


class TestDeterminism:
    def test_same_inputs_same_outcome(self, resolver: ConflictResolver) -> None:
        local, remote, change = snapshot(10, "L"), snapshot(10, "R"), pending(10)

        outcomes = {
            (r.winner, r.reason, r.snapshot.payload["name"])
            for r in (
                resolver.resolve(local, remote, change, detected_at=at(99))
                for _ in range(10)
            )
        }

        assert outcomes == {("remote", "tie_prefers_remote", "R")}

    def test_detected_at_is_recorded(self, resolver: ConflictResolver) -> None:
        result = resolver.resolve(snapshot(10), snapshot(20), pending(10), detected_at=at(99))

        assert result.conflict is not None
        assert result.conflict.detected_at == at(99)

    @pytest.mark.parametrize(
        ("local_s", "remote_s", "remote_active", "expected"),
        [
            (10, 20, True, ("remote", "remote_newer")),
            (20, 10, True, ("local", "local_newer")),
            (10, 10, True, ("remote", "tie_prefers_remote")),
            (20, 10, False, ("remote", "remote_deleted")),
        ],
    )
    def test_pick_winner(
        self,
        local_s: float,
        remote_s: float,
        remote_active: bool,
        expected: tuple[str, str],
    ) -> None:
        assert pick_winner(
            snapshot(local_s), snapshot(remote_s, is_active=remote_active)
        ) == expected
