"""MoneySync facade.

Wires the sync database, change queue, cursors, local cache, sync engine and
job processor for one device, and exposes the operations applications call.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Literal

from moneysync.config import MoneySyncSettings, get_settings
from moneysync.connectors.notifier import Channel, LoggingNotifier, Notifier
from moneysync.connectors.plaid_provider import InstitutionProvider, PlaidInstitutionProvider
from moneysync.connectors.remote import HttpSyncService, RemoteSyncService
from moneysync.database import SyncDatabase
from moneysync.jobs.handlers import (
    FinancialSyncJobHandler,
    NotificationJobHandler,
    SyncJobHandler,
)
from moneysync.jobs.models import (
    FinancialSyncJobPayload,
    JobOptions,
    JobStatus,
    JobType,
    NotificationJobPayload,
    SyncJobPayload,
)
from moneysync.jobs.processor import JobProcessor, JobWorker
from moneysync.jobs.store import JobStore
from moneysync.sync.change_queue import ChangeQueueStore
from moneysync.sync.cursors import CursorTracker
from moneysync.sync.engine import SyncEngine
from moneysync.sync.events import Subscriber, SyncEventBus, SyncEventKind
from moneysync.sync.local_store import LocalEntityStore
from moneysync.sync.models import ChangeOperation, ChangeRecord, EntityType, SyncResult
from moneysync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class MoneySync:
    """Offline-first sync client for one device."""

    def __init__(
        self,
        settings: MoneySyncSettings,
        remote: RemoteSyncService | None = None,
        provider: InstitutionProvider | None = None,
        notifiers: dict[str, Notifier] | None = None,
        database: SyncDatabase | None = None,
        clock: Clock = utcnow,
    ):
        """Build the sync stack from settings.

        Args:
            settings: Application settings
            remote: Server of record; built from ``settings.remote`` if omitted
            provider: Institution data provider; a Plaid provider is built when
                Plaid credentials are configured
            notifiers: Notifier per channel; defaults to logging notifiers
            database: Open sync database; opened from ``settings.database`` if omitted
            clock: Source of the current time
        """
        self.settings = settings
        self.device_id = settings.sync.device_id
        self.remote = remote or self._build_remote(settings, clock)
        self.db = database or SyncDatabase(
            settings.database.path, create_dirs=settings.database.create_dirs
        )
        self.events = SyncEventBus()
        self.queue = ChangeQueueStore(self.db, settings.sync.max_retries, clock=clock)
        self.cursors = CursorTracker(self.db, clock=clock)
        self.local_store = LocalEntityStore(self.db, self.queue, clock=clock)
        if provider is None and settings.plaid.is_configured:
            provider = PlaidInstitutionProvider(settings.plaid, clock=clock)
        self.provider = provider

        self.engine = SyncEngine(
            self.db,
            self.queue,
            self.cursors,
            self.local_store,
            self.remote,
            events=self.events,
            push_timeout=settings.sync.push_timeout,
            pull_timeout=settings.sync.pull_timeout,
            pull_page_size=settings.sync.pull_page_size,
            clock=clock,
        )

        self.jobs = JobProcessor(JobStore(self.db), settings.jobs, clock=clock)
        self.jobs.register_handler(JobType.SYNC, SyncJobHandler(self.engine))
        self.jobs.register_handler(
            JobType.FINANCIAL_SYNC,
            FinancialSyncJobHandler(
                self.local_store,
                self.events,
                self.device_id,
                provider=self.provider,
                remote=self.remote,
            ),
        )
        channels: tuple[Channel, ...] = ("push", "email", "sms", "in_app")
        self.notifiers = notifiers or {
            channel: LoggingNotifier(channel, clock=clock) for channel in channels
        }
        self.jobs.register_handler(
            JobType.NOTIFICATION, NotificationJobHandler(self.notifiers)
        )

    @classmethod
    def from_settings(cls, profile: str | None = None, **kwargs: Any) -> "MoneySync":
        """Build a client from the settings of a profile (current profile by default)."""
        return cls(get_settings(profile), **kwargs)

    @staticmethod
    def _build_remote(settings: MoneySyncSettings, clock: Clock) -> RemoteSyncService:
        if settings.remote.use_local_server:
            from moneysync_server import LocalSyncServer

            logger.warning(
                "Using the in-process server of record; changes it accepts are "
                "not kept after this process exits"
            )
            return LocalSyncServer(clock=clock)
        if not settings.remote.server_url:
            raise ValueError(
                "MONEYSYNC_REMOTE__SERVER_URL is required unless "
                "MONEYSYNC_REMOTE__USE_LOCAL_SERVER is enabled"
            )
        return HttpSyncService(
            settings.remote.server_url,
            settings.sync.device_id,
            api_key=settings.remote.api_key or None,
            timeout=settings.remote.timeout,
        )

    def record_change(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: ChangeOperation,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ChangeRecord:
        """Apply a local mutation to the cache and queue it for push."""
        return self.local_store.save_local(
            self.device_id, entity_type, entity_id, operation, payload, timestamp
        )

    async def synchronize(
        self, entity_types: Iterable[EntityType] | None = None
    ) -> SyncResult:
        return await self.engine.synchronize(self.device_id, entity_types)

    def enqueue_sync_job(
        self,
        user_id: str,
        entity_types: Iterable[EntityType] | None = None,
        options: JobOptions | None = None,
    ) -> str:
        payload = SyncJobPayload(
            user_id=user_id,
            device_id=self.device_id,
            entity_types=list(entity_types or []),
        )
        return self.jobs.enqueue_job(payload, options)

    def enqueue_financial_sync_job(
        self,
        user_id: str,
        account_id: str,
        access_token_ref: str,
        sync_type: Literal["full", "incremental"] = "incremental",
        options: JobOptions | None = None,
    ) -> str:
        payload = FinancialSyncJobPayload(
            user_id=user_id,
            account_id=account_id,
            access_token_ref=access_token_ref,
            sync_type=sync_type,
        )
        return self.jobs.enqueue_job(payload, options)

    def enqueue_notification_job(
        self,
        user_id: str,
        channel: Channel,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        notification_id: str | None = None,
        options: JobOptions | None = None,
    ) -> str:
        fields: dict[str, Any] = {
            "user_id": user_id,
            "channel": channel,
            "title": title,
            "message": message,
            "data": data or {},
        }
        if notification_id is not None:
            fields["notification_id"] = notification_id
        return self.jobs.enqueue_job(NotificationJobPayload(**fields), options)

    def get_job_status(self, job_id: str) -> JobStatus | None:
        return self.jobs.get_job_status(job_id)

    def subscribe(self, kind: SyncEventKind | str, callback: Subscriber):
        """Subscribe to sync events; returns a function that unsubscribes."""
        return self.events.subscribe(kind, callback)

    def worker(self, worker_id: str | None = None) -> JobWorker:
        return JobWorker(self.jobs, worker_id=worker_id)

    async def close(self) -> None:
        if isinstance(self.remote, HttpSyncService):
            await self.remote.close()
        self.db.close()
