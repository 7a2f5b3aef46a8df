"""Deterministic local-versus-remote conflict resolution.

Rules, applied in order:

1. A remote tombstone beats an active local record whatever the timestamps.
2. A strictly newer local record wins.
3. Otherwise the remote record wins; ties go to the server of record.

Resolution is a pure function of its inputs.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from moneysync.sync.models import ChangeRecord, ConflictDescriptor, EntitySnapshot
from moneysync.utils.clock import utcnow

Winner = Literal["local", "remote"]


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one entity."""

    snapshot: EntitySnapshot
    winner: Winner
    reason: str
    conflict: ConflictDescriptor | None = None
    # The pending change lost and must not be pushed again
    stale_pending: bool = False
    # The remote snapshot is the server's copy of the pending change itself
    echo: bool = False


def pick_winner(local: EntitySnapshot, remote: EntitySnapshot) -> tuple[Winner, str]:
    """Apply the resolution rules and name the one that decided."""
    if not remote.is_active and local.is_active:
        return "remote", "remote_deleted"
    if local.updated_at > remote.updated_at:
        return "local", "local_newer"
    if remote.updated_at > local.updated_at:
        return "remote", "remote_newer"
    return "remote", "tie_prefers_remote"


class ConflictResolver:
    """Resolves a remote snapshot against the local one."""

    def resolve(
        self,
        local: EntitySnapshot,
        remote: EntitySnapshot,
        pending: ChangeRecord | None = None,
        detected_at: datetime | None = None,
    ) -> Resolution:
        """Decide which version of an entity survives.

        Args:
            local: Local snapshot (including the effect of any pending change)
            remote: Snapshot held by the server of record
            pending: Queued local change for the entity, if any
            detected_at: Timestamp recorded on the conflict descriptor

        Returns:
            Resolution: Winning snapshot, plus a ConflictDescriptor when a
            pending local change was involved
        """
        if local.key != remote.key:
            raise ValueError(
                f"Cannot resolve {local.entity_type.value} '{local.entity_id}' "
                f"against {remote.entity_type.value} '{remote.entity_id}'"
            )

        if pending is not None and local.same_state(remote):
            # The server already holds exactly what the pending change wrote
            return Resolution(
                snapshot=remote,
                winner="remote",
                reason="remote_has_local_write",
                stale_pending=True,
                echo=True,
            )

        winner, reason = pick_winner(local, remote)
        snapshot = local if winner == "local" else remote

        conflict = None
        if pending is not None:
            conflict = ConflictDescriptor(
                entity_id=local.entity_id,
                entity_type=local.entity_type,
                local_version=local,
                remote_version=remote,
                resolution=winner,
                reason=reason,
                change_id=pending.id,
                detected_at=detected_at or utcnow(),
            )

        return Resolution(
            snapshot=snapshot,
            winner=winner,
            reason=reason,
            conflict=conflict,
            stale_pending=pending is not None and winner == "remote",
        )
