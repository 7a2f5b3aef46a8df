"""Background job commands for MoneySync CLI.

This module provides commands for enqueueing sync jobs, inspecting and
retrying jobs, and running a worker against the job queue.
"""

import asyncio
import logging
from typing import Annotated

import polars as pl
import typer

from moneysync.jobs.models import JobOptions, JobType
from moneysync.service import MoneySync
from moneysync.sync.models import EntityType

app = typer.Typer(help="Operate the background job queue")
logger = logging.getLogger(__name__)


def _build_service() -> MoneySync:
    return MoneySync.from_settings()


def _open() -> MoneySync:
    try:
        return _build_service()
    except Exception as e:
        logger.error(f"❌ Failed to open job queue: {e}")
        raise typer.Exit(1) from e


def _close(service: MoneySync) -> None:
    asyncio.run(service.close())


@app.command("enqueue-sync")
def jobs_enqueue_sync(
    user_id: Annotated[str, typer.Option("--user", "-u", help="User the sync runs for")],
    entity_types: Annotated[
        list[EntityType] | None,
        typer.Option("--type", "-t", help="Entity type to pull (repeatable)"),
    ] = None,
    delay: Annotated[
        float, typer.Option("--delay", help="Seconds before the job may run")
    ] = 0.0,
) -> None:
    """Queue a sync job for this device."""
    service = _open()
    try:
        job_id = service.enqueue_sync_job(
            user_id, entity_types, options=JobOptions(delay=delay)
        )
    except Exception as e:
        logger.error(f"❌ Failed to enqueue sync job: {e}")
        raise typer.Exit(1) from e
    finally:
        _close(service)
    print(job_id)


@app.command("status")
def jobs_status(
    job_id: Annotated[
        str | None, typer.Argument(help="Job to show; omit for queue totals")
    ] = None,
    job_type: Annotated[
        JobType | None, typer.Option("--type", "-t", help="Limit totals to a job type")
    ] = None,
) -> None:
    """Show one job's state, or job counts by state."""
    service = _open()
    try:
        if job_id is None:
            status = service.jobs.get_queue_status(job_type)
            print(pl.DataFrame([status.model_dump()]))
            return

        job = service.jobs.get_job(job_id)
        if job is None:
            logger.error(f"❌ No job with id {job_id}")
            raise typer.Exit(1)
        print(f"\n🧾 Job {job.job_id} ({job.job_type.value})")
        print(f"   Status: {job.status.value}")
        print(f"   Attempts: {job.attempts}/{job.max_attempts}")
        print(f"   Run at: {job.run_at.isoformat()}")
        if job.last_error:
            print(f"   Last error: {job.last_error}")
    finally:
        _close(service)


@app.command("failed")
def jobs_failed(
    job_type: Annotated[
        JobType | None, typer.Option("--type", "-t", help="Limit to a job type")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 50,
) -> None:
    """List failed jobs, most recent first."""
    service = _open()
    try:
        jobs = service.jobs.list_failed_jobs(job_type, limit)
        if not jobs:
            print("No failed jobs")
            return
        frame = pl.DataFrame(
            [
                {
                    "job_id": job.job_id,
                    "job_type": job.job_type.value,
                    "attempts": job.attempts,
                    "finished_at": job.finished_at,
                    "last_error": job.last_error,
                }
                for job in jobs
            ]
        )
        print(frame)
    finally:
        _close(service)


@app.command("retry")
def jobs_retry(
    job_id: Annotated[str, typer.Argument(help="Failed job to retry")],
) -> None:
    """Move a failed job back to pending with a fresh attempt budget."""
    service = _open()
    try:
        retried = service.jobs.retry_failed_job(job_id)
    finally:
        _close(service)

    if not retried:
        logger.error(f"❌ Job {job_id} is not a failed job")
        raise typer.Exit(1)
    logger.info(f"✅ Job {job_id} queued for retry")


async def _work(
    service: MoneySync, until_idle: bool, max_jobs: int | None, worker_id: str | None
) -> int:
    worker = service.worker(worker_id)
    try:
        if until_idle:
            return await worker.run_until_idle()
        return await worker.run(max_jobs=max_jobs)
    finally:
        await service.close()


@app.command("work")
def jobs_work(
    until_idle: Annotated[
        bool, typer.Option("--until-idle", help="Stop when no job is runnable")
    ] = False,
    max_jobs: Annotated[
        int | None, typer.Option("--max-jobs", help="Stop after this many jobs")
    ] = None,
    worker_id: Annotated[
        str | None, typer.Option("--worker-id", help="Lease owner name")
    ] = None,
) -> None:
    """Run a worker that processes queued jobs."""
    service = _open()
    try:
        processed = asyncio.run(_work(service, until_idle, max_jobs, worker_id))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        return
    except Exception as e:
        logger.error(f"❌ Worker failed: {e}")
        raise typer.Exit(1) from e
    logger.info(f"✅ Processed {processed} job(s)")
