"""Durable background jobs: sync, financial sync and notifications."""

from .models import (
    FinancialSyncJobPayload,
    JobOptions,
    JobRecord,
    JobStatus,
    JobType,
    NotificationJobPayload,
    QueueStatus,
    SyncJobPayload,
)
from .processor import JobContext, JobProcessor, JobWorker
from .store import JobStore

__all__ = [
    "FinancialSyncJobPayload",
    "JobContext",
    "JobOptions",
    "JobProcessor",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "JobType",
    "JobWorker",
    "NotificationJobPayload",
    "QueueStatus",
    "SyncJobPayload",
]
