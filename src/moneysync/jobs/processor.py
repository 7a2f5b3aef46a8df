"""Background job processor.

Jobs are claimed under a lease. A worker that dies mid-job leaves the lease to
expire, after which another worker reclaims the job; a job that stalls more
than ``max_stalled_count`` times is failed instead. Handler failures are
classified with ``is_transient``: transient failures are rescheduled with
exponential backoff until the job's attempts run out, permanent failures fail
the job at once. Failed jobs stay in the queue until removed or retried.
"""

import asyncio
import logging
import socket
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from moneysync.config import JobLimiter, JobsConfig, RetryPolicy
from moneysync.errors import TransientJobError, is_transient
from moneysync.utils.clock import Clock, utcnow

from .models import (
    JobFailure,
    JobOptions,
    JobPayload,
    JobRecord,
    JobStatus,
    JobType,
    QueueStatus,
    default_priority,
    parse_job_payload,
)
from .store import JobStore

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class JobContext:
    """Handle passed to job handlers for the job being run."""

    def __init__(self, processor: "JobProcessor", job: JobRecord, worker_id: str):
        self.processor = processor
        self.job = job
        self.worker_id = worker_id

    @property
    def attempt(self) -> int:
        return self.job.attempts

    def heartbeat(self) -> bool:
        """Extend the lease; False means the job was taken over by another worker."""
        return self.processor.renew_lease(self.job.job_id, self.worker_id)


JobHandler = Callable[[Any, JobContext], Awaitable[None]]


class JobProcessor:
    """Enqueues, claims and runs background jobs."""

    def __init__(
        self,
        store: JobStore,
        config: JobsConfig | None = None,
        clock: Clock = utcnow,
        worker_id: str | None = None,
    ):
        """Initialize the processor.

        Args:
            store: Durable job store
            config: Retry policies, rate limits and lease settings
            clock: Source of the current time
            worker_id: Lease owner name used when callers do not pass one
        """
        self.store = store
        self.config = config or JobsConfig()
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock
        self._handlers: dict[JobType, JobHandler] = {}
        self._policies: dict[JobType, RetryPolicy] = {
            JobType.SYNC: self.config.sync_retry,
            JobType.FINANCIAL_SYNC: self.config.financial_sync_retry,
            JobType.NOTIFICATION: self.config.notification_retry,
        }
        self._limiters: dict[JobType, JobLimiter] = {
            JobType.SYNC: self.config.sync_limiter,
            JobType.FINANCIAL_SYNC: self.config.financial_sync_limiter,
            JobType.NOTIFICATION: self.config.notification_limiter,
        }
        self._starts: dict[JobType, deque[datetime]] = {t: deque() for t in JobType}

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.debug(f"Registered handler for {job_type.value} jobs")

    def policy_for(self, job_type: JobType) -> RetryPolicy:
        return self._policies[job_type]

    def enqueue_job(
        self, payload: JobPayload | dict[str, Any], options: JobOptions | None = None
    ) -> str:
        """Validate and durably enqueue a job.

        Enqueueing with the id of an existing job leaves that job untouched.

        Returns:
            str: The job id

        Raises:
            InvalidJobPayloadError: If the payload fails validation
        """
        job = parse_job_payload(payload)
        options = options or JobOptions()
        job_type = JobType(job.kind)

        job_id = options.job_id
        if job_id is None and job_type is JobType.NOTIFICATION:
            job_id = f"notification-{job.notification_id}"
        job_id = job_id or str(uuid4())

        now = self._clock()
        inserted = self.store.insert(
            job_id=job_id,
            payload=job,
            priority=(
                options.priority if options.priority is not None else default_priority(job)
            ),
            max_attempts=options.max_attempts or self.policy_for(job_type).max_attempts,
            run_at=now + timedelta(seconds=options.delay),
            now=now,
        )
        if inserted:
            logger.info(f"Enqueued {job_type.value} job {job_id}")
        else:
            logger.debug(f"Job {job_id} already queued")
        return job_id

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.store.get(job_id)

    def get_job_status(self, job_id: str) -> JobStatus | None:
        job = self.store.get(job_id)
        return job.status if job else None

    def get_job_failures(self, job_id: str) -> list[JobFailure]:
        return self.store.failures(job_id)

    def renew_lease(self, job_id: str, worker_id: str) -> bool:
        now = self._clock()
        return self.store.renew_lease(
            job_id, worker_id, now + timedelta(seconds=self.config.lease_duration), now
        )

    def _has_capacity(self, job_type: JobType, now: datetime) -> bool:
        limiter = self._limiters[job_type]
        starts = self._starts[job_type]
        window_start = now - timedelta(seconds=limiter.window_seconds)
        while starts and starts[0] <= window_start:
            starts.popleft()
        if len(starts) >= limiter.max_per_window:
            return False
        return self.store.active_count(job_type, now) < limiter.max_concurrent

    def claim_next(self, worker_id: str | None = None) -> JobRecord | None:
        """Lease the next runnable job, honoring priorities and rate limits.

        Stalled jobs found on the way are either reclaimed or, past the stall
        limit or their attempt budget, failed.
        """
        worker_id = worker_id or self.worker_id
        now = self._clock()
        allowed = [t for t in JobType if self._has_capacity(t, now)]
        lease_until = now + timedelta(seconds=self.config.lease_duration)

        for job in self.store.candidates(allowed, now):
            if job.status is JobStatus.PENDING:
                if not self.store.claim_pending(job.job_id, worker_id, now, lease_until):
                    continue
            else:
                if not self._reclaim(job, worker_id, now, lease_until):
                    continue
            self._starts[job.job_type].append(now)
            return self.store.get(job.job_id)
        return None

    def _reclaim(
        self, job: JobRecord, worker_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        if job.stall_count + 1 > self.config.max_stalled_count:
            error = STALLED_ERROR
        elif job.attempts >= job.max_attempts:
            error = f"lease expired on final attempt {job.attempts}"
        else:
            if self.store.reclaim_stalled(job, worker_id, now, lease_until):
                logger.warning(
                    f"Reclaimed stalled {job.job_type.value} job {job.job_id} "
                    f"from {job.lease_owner}"
                )
                return True
            return False

        with self.store.db.transaction():
            if self.store.fail_stalled(job, error, now):
                self.store.record_failure(job.job_id, job.attempts, error, False, now)
                logger.error(f"Failed {job.job_type.value} job {job.job_id}: {error}")
        return False

    async def process_next(self, worker_id: str | None = None) -> JobRecord | None:
        """Claim and run one job.

        Returns:
            JobRecord | None: The job's state after running, or None if no job
            was runnable
        """
        worker_id = worker_id or self.worker_id
        job = self.claim_next(worker_id)
        if job is None:
            return None

        policy = self.policy_for(job.job_type)
        handler = self._handlers.get(job.job_type)
        logger.info(
            f"Running {job.job_type.value} job {job.job_id} "
            f"(attempt {job.attempts}/{job.max_attempts})"
        )

        error: BaseException | None = None
        if handler is None:
            error = TransientJobError(f"No handler registered for {job.job_type.value}")
        else:
            renewer = (
                asyncio.ensure_future(self._keep_lease(job, worker_id))
                if self.config.auto_renew_lease
                else None
            )
            try:
                await asyncio.wait_for(
                    handler(job.payload, JobContext(self, job, worker_id)),
                    timeout=policy.timeout,
                )
            except TimeoutError:
                error = TransientJobError(f"Job timed out after {policy.timeout}s")
            except Exception as e:
                error = e
            finally:
                if renewer is not None:
                    renewer.cancel()

        if error is None:
            if self.store.complete(job.job_id, worker_id, self._clock()):
                logger.info(f"Completed {job.job_type.value} job {job.job_id}")
            else:
                logger.warning(f"Lost lease on job {job.job_id} before completing it")
        else:
            self._handle_failure(job, worker_id, error, policy)
        return self.store.get(job.job_id)

    async def _keep_lease(self, job: JobRecord, worker_id: str) -> None:
        interval = self.config.lease_duration / 2
        while True:
            await asyncio.sleep(interval)
            if not self.renew_lease(job.job_id, worker_id):
                logger.warning(f"Could not renew lease on job {job.job_id}")
                return

    def _handle_failure(
        self,
        job: JobRecord,
        worker_id: str,
        error: BaseException,
        policy: RetryPolicy,
    ) -> None:
        transient = is_transient(error)
        message = str(error) or type(error).__name__
        now = self._clock()

        with self.store.db.transaction():
            if transient and job.attempts < job.max_attempts:
                run_at = now + timedelta(seconds=policy.delay_for(job.attempts))
                if not self.store.reschedule(job.job_id, worker_id, run_at, message, now):
                    logger.warning(f"Lost lease on job {job.job_id} before rescheduling it")
                    return
                self.store.record_failure(job.job_id, job.attempts, message, True, now)
                logger.warning(
                    f"{job.job_type.value} job {job.job_id} attempt {job.attempts} "
                    f"failed, retrying at {run_at.isoformat()}: {message}"
                )
                return

            if not self.store.fail(job.job_id, worker_id, message, now):
                logger.warning(f"Lost lease on job {job.job_id} before failing it")
                return
            self.store.record_failure(job.job_id, job.attempts, message, transient, now)
        logger.error(
            f"{job.job_type.value} job {job.job_id} failed after "
            f"{job.attempts} attempt(s): {message}"
        )

    def get_queue_status(self, job_type: JobType | None = None) -> QueueStatus:
        return self.store.counts(self._clock(), job_type)

    def list_failed_jobs(
        self, job_type: JobType | None = None, limit: int = 100
    ) -> list[JobRecord]:
        return self.store.list_by_status(JobStatus.FAILED, job_type, limit)

    def retry_failed_job(self, job_id: str) -> bool:
        retried = self.store.retry_failed(job_id, self._clock())
        if retried:
            logger.info(f"Retrying failed job {job_id}")
        return retried

    def remove_job(self, job_id: str) -> bool:
        return self.store.remove(job_id)

    def purge_completed(self, older_than: timedelta) -> int:
        purged = self.store.purge_completed(self._clock() - older_than)
        if purged:
            logger.info(f"Purged {purged} completed job(s)")
        return purged


class JobWorker:
    """Polls a processor and runs jobs until stopped."""

    def __init__(
        self,
        processor: JobProcessor,
        worker_id: str | None = None,
        poll_interval: float | None = None,
    ):
        self.processor = processor
        self.worker_id = worker_id or processor.worker_id
        self.poll_interval = poll_interval or processor.config.poll_interval

    async def run(
        self, stop_event: asyncio.Event | None = None, max_jobs: int | None = None
    ) -> int:
        """Run jobs until ``stop_event`` is set or ``max_jobs`` have run.

        Returns:
            int: Number of jobs run
        """
        stop_event = stop_event or asyncio.Event()
        processed = 0
        logger.info(f"Worker {self.worker_id} started")
        while not stop_event.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break
            job = await self.processor.process_next(self.worker_id)
            if job is not None:
                processed += 1
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
        logger.info(f"Worker {self.worker_id} stopped after {processed} job(s)")
        return processed

    async def run_until_idle(self) -> int:
        """Run jobs until none is runnable right now."""
        processed = 0
        while await self.processor.process_next(self.worker_id) is not None:
            processed += 1
        return processed
