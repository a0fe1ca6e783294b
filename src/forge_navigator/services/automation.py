"""Periodic housekeeping against the Forge backend."""

from datetime import UTC, datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from forge_navigator.services.executor import ExecutionContext
from forge_navigator.services.forge import ForgeClient

logger = structlog.get_logger()

UNLOAD_CHECK_INTERVAL_MINUTES = 5


async def unload_idle_checkpoint(
    client: ForgeClient,
    context: ExecutionContext,
    inactivity_minutes: int,
) -> bool:
    """Ask the backend to free its checkpoint after a period without work.

    Args:
        client: Forge API client
        context: Shared execution state
        inactivity_minutes: Minutes since the last finished job before unloading

    Returns:
        True if an unload request was sent successfully
    """
    if context.current_task is not None:
        logger.info("checkpoint_unload_skipped", reason="task processing")
        return False

    if context.last_job_finished_at is None:
        # Never having run a job still counts as inactivity
        logger.info("checkpoint_unload_due", reason="no jobs executed yet")
    else:
        idle = datetime.now(UTC) - context.last_job_finished_at
        idle_minutes = round(idle.total_seconds() / 60)
        if idle_minutes <= inactivity_minutes:
            logger.debug(
                "checkpoint_unload_skipped",
                idle_minutes=idle_minutes,
                inactivity_minutes=inactivity_minutes,
            )
            return False
        logger.info("checkpoint_unload_due", idle_minutes=idle_minutes)

    try:
        await client.unload_checkpoint()
    except Exception as e:
        logger.error("checkpoint_unload_failed", error=str(e))
        return False

    context.clear_last_used_model()
    logger.info("checkpoint_unloaded")
    return True


def schedule_checkpoint_unload(
    scheduler: AsyncIOScheduler,
    client: ForgeClient,
    context: ExecutionContext,
    inactivity_minutes: int,
) -> None:
    """Register the unload check to run every few minutes."""
    scheduler.add_job(
        unload_idle_checkpoint,
        "interval",
        minutes=UNLOAD_CHECK_INTERVAL_MINUTES,
        args=[client, context, inactivity_minutes],
        id="unload_idle_checkpoint",
        replace_existing=True,
    )
    logger.info(
        "Checkpoint unload scheduled",
        check_interval_minutes=UNLOAD_CHECK_INTERVAL_MINUTES,
        inactivity_minutes=inactivity_minutes,
    )
