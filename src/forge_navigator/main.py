"""Main FastAPI application entry point."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from forge_navigator import __version__
from forge_navigator.api.routes import events_router, router
from forge_navigator.core.config import settings
from forge_navigator.core.database import close_database, create_schema
from forge_navigator.services.automation import schedule_checkpoint_unload
from forge_navigator.services.runtime import Navigator, create_navigator
from forge_navigator.services.worker import run_worker

logger = structlog.get_logger()

scheduler = AsyncIOScheduler()


async def load_current_model(navigator: Navigator) -> None:
    """Seed the last used model from whatever the backend has loaded."""
    try:
        options = await navigator.client.get_options()
    except Exception as e:
        logger.warning("Could not read current checkpoint from Forge", error=str(e))
        return

    navigator.context.last_used_model = options.get("sd_model_checkpoint") or ""
    logger.info("Current checkpoint loaded", model_name=navigator.context.last_used_model)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Forge Navigator", version=__version__)
    await create_schema()

    navigator = create_navigator()
    app.state.navigator = navigator
    await load_current_model(navigator)

    worker: asyncio.Task[None] | None = None
    if settings.worker_enabled:
        worker = asyncio.create_task(
            run_worker(
                navigator.queue,
                navigator.gate,
                navigator.executor,
                navigator.notifier,
                navigator.context,
            ),
            name="generation-worker",
        )

    if settings.checkpoint_unload_interval_minutes > 0:
        schedule_checkpoint_unload(
            scheduler,
            navigator.client,
            navigator.context,
            settings.checkpoint_unload_interval_minutes,
        )
        scheduler.start()
        logger.info("Scheduler started")

    yield

    # Shutdown
    if worker is not None:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
    if scheduler.running:
        scheduler.shutdown()
    await close_database()
    logger.info("Forge Navigator shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Queues image generations for a Stable Diffusion Forge backend",
    lifespan=lifespan,
)

app.include_router(router)
app.include_router(events_router)
