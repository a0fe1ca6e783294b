"""Drives a single task through the Forge backend."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from forge_navigator.core.config import settings
from forge_navigator.models.task import Img2ImgRequest, Task, TaskStatus, Txt2ImgParameters
from forge_navigator.services.forge import ForgeClient, GenerationResult
from forge_navigator.services.notifications import (
    MODEL_CHANGED,
    TASK_FAILED,
    TASK_FINISHED,
    TASK_INTERRUPTED,
    TASK_PROGRESS,
    NotificationSink,
    cleanse_task,
)
from forge_navigator.services.parameters import ParameterResolver, build_txt2img_payload
from forge_navigator.services.storage import ImageStore

logger = structlog.get_logger()

NO_IMAGES_ERROR = "No images were generated."

# States in which the backend may still be working on a task
RUNNING_STATUSES = (TaskStatus.STARTED, TaskStatus.PROCESSING)


@dataclass
class ExecutionContext:
    """Process-wide execution state shared by the worker and its collaborators.

    Lives for the lifetime of the process; nothing resets it except a restart
    (or checkpoint unloading, which forgets the last used model).
    """

    last_used_model: str = ""
    current_task: Task | None = None
    last_job_finished_at: datetime | None = None

    def clear_last_used_model(self) -> None:
        self.last_used_model = ""


def image_path(job_id: str) -> str:
    return f"/api/images/{job_id}"


def preview_path(job_id: str) -> str:
    return f"/api/previews/{job_id}"


class TaskExecutor:
    """Runs one task at a time: submit, poll progress, persist, notify.

    Callers must hold an ``AdmissionGate`` permit for the duration of
    ``execute``.
    """

    def __init__(
        self,
        client: ForgeClient,
        store: ImageStore,
        notifier: NotificationSink,
        context: ExecutionContext,
        resolver: ParameterResolver,
        progress_interval: float | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.notifier = notifier
        self.context = context
        self.resolver = resolver
        self.progress_interval = (
            progress_interval
            if progress_interval is not None
            else settings.job_progress_check_interval_ms / 1000
        )
        self._preview_write: asyncio.Task[None] | None = None

    async def execute(self, task: Task) -> None:
        """Process a task until it is finished, failed or interrupted."""
        logger.info("Processing task", job_id=task.job_id, kind=task.kind.value)
        task.status = TaskStatus.PROCESSING

        dispatched = asyncio.Event()
        try:
            payload = await self.build_payload(task)
            await self._track_model(task)
            async with self._progress_polling(task, dispatched):
                result = await self._dispatch(task, payload, dispatched)
        except Exception as e:
            if task.status is TaskStatus.INTERRUPTED:
                logger.info("Interrupted task ended with error", job_id=task.job_id, error=str(e))
                return
            logger.error("Generation failed", job_id=task.job_id, error=str(e))
            await self._fail(task, str(e) or type(e).__name__, kind="generation")
            return
        finally:
            self.context.last_job_finished_at = datetime.now(UTC)

        await self._handle_result(task, result)

    async def build_payload(self, task: Task) -> dict[str, Any]:
        """Build the backend request body for a task."""
        params = task.params
        if isinstance(params, Img2ImgRequest):
            return params.to_api_payload()

        assert isinstance(params, Txt2ImgParameters)
        if params.upscaler_name is None:
            params.upscaler_name = await self.resolver.validate_upscaler_name(None)
        return build_txt2img_payload(params, task.correlation_id)

    async def _track_model(self, task: Task) -> None:
        model_name = task.model_name
        if self.context.last_used_model != model_name:
            logger.info(
                "Model change requested",
                job_id=task.job_id,
                previous=self.context.last_used_model,
                model_name=model_name,
            )
            await self.notifier.notify(
                task.origin, MODEL_CHANGED, {"model_name": model_name, "job_id": task.job_id}
            )
        # Updated before dispatch, whether or not the generation succeeds
        self.context.last_used_model = model_name

    async def _dispatch(
        self, task: Task, payload: dict[str, Any], dispatched: asyncio.Event
    ) -> GenerationResult:
        logger.info("Sending task to Forge", job_id=task.job_id)
        if isinstance(task.params, Img2ImgRequest):
            call = self.client.img2img(payload)
        else:
            call = self.client.txt2img(payload)
        dispatched.set()
        return await call

    @contextlib.asynccontextmanager
    async def _progress_polling(
        self, task: Task, dispatched: asyncio.Event
    ) -> AsyncIterator[None]:
        """Poll progress in the background for as long as the block runs.

        The poller is cancelled as soon as the block exits, so no progress is
        reported once the generation call has settled. A preview write that
        was already under way is allowed to land before the final image.
        """
        poller = asyncio.create_task(
            self._poll_progress(task, dispatched), name=f"progress-{task.job_id}"
        )
        try:
            yield
        finally:
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller
            await self._settle_preview_write(task)

    async def _settle_preview_write(self, task: Task) -> None:
        write, self._preview_write = self._preview_write, None
        if write is None:
            return
        try:
            await write
        except Exception as e:
            logger.warning("Preview write failed", job_id=task.job_id, error=str(e))

    async def _poll_progress(self, task: Task, dispatched: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.progress_interval)
            if not dispatched.is_set():
                continue
            try:
                await self.report_progress(task)
            except Exception as e:
                logger.warning("Progress check failed", job_id=task.job_id, error=str(e))

    async def report_progress(self, task: Task) -> bool:
        """Store and announce one progress reading. Returns whether one was sent."""
        if not await self.client.is_task_active(task.correlation_id):
            logger.debug(
                "Task not active on backend, skipping progress check", job_id=task.job_id
            )
            return False

        snapshot = await self.client.get_progress()
        if snapshot.current_image is None:
            # Expected while the backend is warming up
            logger.debug("Preview not available yet", job_id=task.job_id)
            return False

        # Shielded so cancelling the poller never abandons a half-done write
        write = asyncio.ensure_future(self.store.write_preview(task.job_id, snapshot.current_image))
        self._preview_write = write
        try:
            await asyncio.shield(write)
        finally:
            if write.done():
                self._preview_write = None
        await self.notifier.notify(
            task.origin,
            TASK_PROGRESS,
            {
                **cleanse_task(task),
                "progress": snapshot.progress,
                "eta_relative": snapshot.eta_relative,
                "current_step": snapshot.current_step,
                "total_steps": snapshot.total_steps,
                "progress_path": preview_path(task.job_id),
            },
        )
        return True

    async def _handle_result(self, task: Task, result: GenerationResult) -> None:
        interrupted = task.status is TaskStatus.INTERRUPTED
        if not result.images:
            if interrupted:
                return
            logger.warning("No images were generated", job_id=task.job_id)
            await self._fail(task, NO_IMAGES_ERROR, kind="generation")
            return

        seed = result.actual_seed
        if seed is not None:
            task.params.seed = seed

        image = result.images[0]
        try:
            await self.store.write_final_image(task.job_id, image)
        except Exception as e:
            logger.error("Error writing image", job_id=task.job_id, error=str(e))
            if not interrupted:
                await self._fail(task, str(e), kind="persistence")
            return

        if interrupted:
            logger.info("Stored partial image of interrupted task", job_id=task.job_id)
        else:
            task.status = TaskStatus.FINISHED
            logger.info("Task finished", job_id=task.job_id, seed=task.params.seed)
            await self.notifier.notify(
                task.origin,
                TASK_FINISHED,
                {**cleanse_task(task), "img_path": image_path(task.job_id)},
            )

        await self._cache_metadata(task, image)

    async def _cache_metadata(self, task: Task, image: str) -> None:
        try:
            info = await self.client.png_info(image)
            if not info:
                return
            info.setdefault("parameters", {})["owner_id"] = task.owner_id
            await self.store.cache_image_metadata(task.job_id, info)
        except Exception as e:
            logger.warning("Failed to cache image metadata", job_id=task.job_id, error=str(e))

    async def _fail(self, task: Task, error: str, kind: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = error
        await self.notifier.notify(
            task.origin,
            TASK_FAILED,
            {**cleanse_task(task), "error": error, "error_kind": kind},
        )

    async def interrupt(self, task: Task) -> None:
        """Abort the task the backend is running.

        Errors from the backend propagate and leave the task untouched. A
        task that settled while the request was in flight keeps its outcome.
        """
        await self.client.interrupt()
        if task.status not in RUNNING_STATUSES:
            logger.info(
                "Task settled before interrupt took effect",
                job_id=task.job_id,
                status=task.status.value,
            )
            return
        task.status = TaskStatus.INTERRUPTED
        logger.info("Task interrupted", job_id=task.job_id)
        await self.notifier.notify(task.origin, TASK_INTERRUPTED, cleanse_task(task))
