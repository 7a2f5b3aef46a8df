"""Synchronization commands for MoneySync CLI.

This module provides commands for running a sync cycle against the server of
record and inspecting the local change queue, cursors and dead letters.
"""

import asyncio
import logging
from typing import Annotated

import polars as pl
import typer

from moneysync.config import get_current_profile
from moneysync.service import MoneySync
from moneysync.sync.models import EntityType, SyncResult

app = typer.Typer(help="Run and inspect sync cycles")
logger = logging.getLogger(__name__)


def _build_service() -> MoneySync:
    return MoneySync.from_settings()


async def _run_cycle(
    service: MoneySync, entity_types: list[EntityType] | None
) -> SyncResult:
    try:
        return await service.synchronize(entity_types)
    finally:
        await service.close()


def _close(service: MoneySync) -> None:
    asyncio.run(service.close())


@app.command("run")
def sync_run(
    entity_types: Annotated[
        list[EntityType] | None,
        typer.Option("--type", "-t", help="Entity type to pull (repeatable)"),
    ] = None,
) -> None:
    """Run one sync cycle: push queued changes, then pull remote changes."""
    profile = get_current_profile()
    logger.info(f"Starting sync (Profile: {profile})")

    try:
        service = _build_service()
        result = asyncio.run(_run_cycle(service, entity_types or None))
    except Exception as e:
        logger.error(f"❌ Sync failed: {e}")
        raise typer.Exit(1) from e

    logger.info(
        f"✅ Sync {result.status.value}: pushed {result.pushed}, "
        f"pulled {result.pulled}, {len(result.conflicts)} conflict(s)"
    )
    for conflict in result.conflicts:
        logger.info(
            f"   ⚖️  {conflict.entity_type.value} {conflict.entity_id}: "
            f"{conflict.resolution} wins ({conflict.reason})"
        )
    for error in result.errors:
        logger.warning(
            f"   ⚠️  {error.kind.value} {error.entity_type.value if error.entity_type else ''} "
            f"{error.entity_id or ''}: {error.message}"
        )
    if not result.success:
        raise typer.Exit(1)


@app.command("status")
def sync_status() -> None:
    """Show queue depth, pull cursors and dead-letter count for this device."""
    try:
        service = _build_service()
    except Exception as e:
        logger.error(f"❌ Failed to open sync state: {e}")
        raise typer.Exit(1) from e

    try:
        device_id = service.device_id
        cursors = service.cursors.list_cursors(device_id)
        frame = pl.DataFrame(
            {
                "entity_type": [t.value for t in EntityType],
                "cursor": [cursors.get(t) for t in EntityType],
            },
            schema={"entity_type": pl.String, "cursor": pl.Datetime(time_zone="UTC")},
        )
        oldest = service.queue.oldest_timestamp(device_id)

        print(f"\n📱 Device: {device_id}")
        print(f"   Pending changes: {service.queue.count(device_id)}")
        if oldest is not None:
            print(f"   Oldest pending: {oldest.isoformat()}")
        print(f"   Dead letters: {len(service.queue.dead_letters(device_id))}")
        print(frame)
    finally:
        _close(service)


@app.command("dead-letters")
def sync_dead_letters() -> None:
    """List changes that were dead-lettered for this device."""
    try:
        service = _build_service()
    except Exception as e:
        logger.error(f"❌ Failed to open sync state: {e}")
        raise typer.Exit(1) from e

    try:
        letters = service.queue.dead_letters(service.device_id)
        if not letters:
            print("No dead letters")
            return
        frame = pl.DataFrame(
            [
                {
                    "change_id": letter.change.id,
                    "entity_type": letter.change.entity_type.value,
                    "entity_id": letter.change.entity_id,
                    "operation": letter.change.operation.value,
                    "reason": letter.reason.value,
                    "retries": letter.change.retry_count,
                    "error": letter.error,
                }
                for letter in letters
            ]
        )
        print(frame)
    finally:
        _close(service)


@app.command("requeue")
def sync_requeue(
    change_id: Annotated[str, typer.Argument(help="Id of the dead-lettered change")],
) -> None:
    """Move a dead-lettered change back onto the queue."""
    try:
        service = _build_service()
    except Exception as e:
        logger.error(f"❌ Failed to open sync state: {e}")
        raise typer.Exit(1) from e

    try:
        pending = service.queue.requeue_dead_letter(change_id)
    finally:
        _close(service)

    if pending is None:
        logger.error(f"❌ No dead letter with id {change_id}")
        raise typer.Exit(1)
    logger.info(f"✅ Requeued; pending change for entity is {pending.id}")
