"""Handlers for the three job types.

Handlers raise on failure and let the processor classify the error: transient
errors are retried with backoff, permanent ones fail the job.
"""

import logging

from moneysync.connectors.notifier import Notifier
from moneysync.connectors.plaid_provider import (
    AccessTokenResolver,
    InstitutionProvider,
    resolve_env_access_token,
)
from moneysync.connectors.plaid_schemas import InstitutionData
from moneysync.connectors.remote import RemoteSyncService
from moneysync.errors import (
    EntityValidationError,
    PermanentJobError,
    SyncAbortedError,
    TransientJobError,
)
from moneysync.sync.conflicts import ConflictResolver
from moneysync.sync.engine import SyncEngine
from moneysync.sync.entities import validate_snapshot
from moneysync.sync.events import SyncEventBus, SyncEventKind
from moneysync.sync.local_store import LocalEntityStore
from moneysync.sync.models import ConflictDescriptor, EntitySnapshot, EntityType

from .models import FinancialSyncJobPayload, NotificationJobPayload, SyncJobPayload
from .processor import JobContext

logger = logging.getLogger(__name__)


class SyncJobHandler:
    """Runs a sync cycle for the job's device."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    async def __call__(self, payload: SyncJobPayload, context: JobContext) -> None:
        try:
            result = await self.engine.synchronize(
                payload.device_id, payload.entity_types or None
            )
        except SyncAbortedError as e:
            raise TransientJobError(f"Sync aborted: {e}") from e

        context.heartbeat()
        if result.errors:
            # Per-change failures stay in the change queue for the next cycle
            logger.warning(
                f"Sync for {payload.device_id} finished with {len(result.errors)} error(s)"
            )
        logger.info(
            f"Sync for user {payload.user_id} on {payload.device_id}: "
            f"pushed {result.pushed}, pulled {result.pulled}, "
            f"conflicts {len(result.conflicts)}"
        )


def institution_snapshots(data: InstitutionData, account_id: str) -> list[EntitySnapshot]:
    """Convert fetched institution data for one account into entity snapshots.

    Raises:
        PermanentJobError: If the institution does not return the account
    """
    accounts = [a for a in data.accounts if a.account_id == account_id]
    if not accounts:
        raise PermanentJobError(f"Account {account_id} not found at institution")

    snapshots = [
        EntitySnapshot(
            entity_type=EntityType.ACCOUNT,
            entity_id=account.account_id,
            payload=account.to_payload(data.institution_id),
            updated_at=data.fetched_at,
        )
        for account in accounts
    ]
    snapshots.extend(
        EntitySnapshot(
            entity_type=EntityType.TRANSACTION,
            entity_id=tx.transaction_id,
            payload=tx.to_payload(),
            updated_at=data.fetched_at,
        )
        for tx in data.transactions
        if tx.account_id == account_id
    )
    return snapshots


class FinancialSyncJobHandler:
    """Refreshes an account from its institution.

    With an institution provider the fetched accounts and transactions are
    resolved against the local cache like any other remote snapshot. Without
    one, the refresh is delegated to the server of record, and the results
    arrive through the next sync cycle.
    """

    def __init__(
        self,
        local_store: LocalEntityStore,
        events: SyncEventBus,
        device_id: str,
        provider: InstitutionProvider | None = None,
        remote: RemoteSyncService | None = None,
        token_resolver: AccessTokenResolver = resolve_env_access_token,
        resolver: ConflictResolver | None = None,
    ):
        self.local_store = local_store
        self.events = events
        self.device_id = device_id
        self.provider = provider
        self.remote = remote
        self.token_resolver = token_resolver
        self.resolver = resolver or ConflictResolver()

    async def __call__(self, payload: FinancialSyncJobPayload, context: JobContext) -> None:
        if self.provider is None:
            if self.remote is None:
                raise PermanentJobError("No institution provider or remote configured")
            await self.remote.request_financial_sync(payload.account_id, payload.sync_type)
            return

        access_token = self.token_resolver(payload.access_token_ref)
        data = await self.provider.get_account_data(access_token, payload.sync_type)
        context.heartbeat()

        applied, conflicts = self.apply(institution_snapshots(data, payload.account_id))
        for snapshot in applied:
            self.events.emit(SyncEventKind.CHANGE_APPLIED, self.device_id, snapshot)
        for conflict in conflicts:
            self.events.emit(SyncEventKind.CONFLICT, self.device_id, conflict)
        logger.info(
            f"Financial sync of account {payload.account_id} for user "
            f"{payload.user_id} applied {len(applied)} update(s)"
        )

    def apply(
        self, snapshots: list[EntitySnapshot]
    ) -> tuple[list[EntitySnapshot], list[ConflictDescriptor]]:
        """Apply institution snapshots to the local cache in one transaction.

        Returns:
            tuple: Snapshots written, and conflicts with pending local changes
        """
        store = self.local_store
        applied: list[EntitySnapshot] = []
        conflicts: list[ConflictDescriptor] = []
        with store.db.transaction():
            for remote in snapshots:
                try:
                    validate_snapshot(remote)
                except EntityValidationError as e:
                    logger.warning(f"Skipping institution record: {e}")
                    continue

                local = store.get(remote.entity_type, remote.entity_id)
                if local is None:
                    if store.apply_remote(remote, None):
                        applied.append(remote)
                    continue
                if local.payload == remote.payload and local.is_active == remote.is_active:
                    continue

                remote = remote.model_copy(update={"version": local.version})
                pending = store.queue.pending_for(
                    self.device_id, remote.entity_type, remote.entity_id
                )
                resolution = self.resolver.resolve(local, remote, pending)
                if resolution.conflict is not None:
                    conflicts.append(resolution.conflict)
                if resolution.winner == "local":
                    continue
                if resolution.stale_pending and pending is not None:
                    store.queue.discard(pending.id)
                if store.apply_remote(resolution.snapshot, local.updated_at):
                    applied.append(resolution.snapshot)
        return applied, conflicts


class NotificationJobHandler:
    """Delivers a notification through the notifier for its channel."""

    def __init__(self, notifiers: dict[str, Notifier]):
        self.notifiers = notifiers

    async def __call__(self, payload: NotificationJobPayload, context: JobContext) -> None:
        notifier = self.notifiers.get(payload.channel)
        if notifier is None:
            raise PermanentJobError(f"No notifier configured for channel {payload.channel}")

        receipt = await notifier.send(
            payload.user_id,
            payload.title,
            payload.message,
            {**payload.data, "notification_id": payload.notification_id},
        )
        logger.info(
            f"Delivered notification {payload.notification_id} via "
            f"{payload.channel} ({receipt.message_id})"
        )
