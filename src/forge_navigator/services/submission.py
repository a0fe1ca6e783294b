"""Admission of new generation tasks and cancellation of existing ones."""

import re
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from forge_navigator.core.config import settings
from forge_navigator.core.exceptions import (
    ImageNotFoundError,
    TaskNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from forge_navigator.models.task import (
    Img2ImgRequest,
    Task,
    TaskKind,
    Txt2ImgParameters,
)
from forge_navigator.services.executor import ExecutionContext, TaskExecutor
from forge_navigator.services.forge import ForgeClient
from forge_navigator.services.parameters import ParameterResolver
from forge_navigator.services.storage import ImageStore
from forge_navigator.services.task_queue import TaskQueue

logger = structlog.get_logger()

# Given (owner_id, category_id), report whether the owner may file into it
CategoryCheck = Callable[[str, int], Awaitable[bool]]

MODEL_PATTERN = re.compile(r"Model: ([^,\n]+)")
MODULE_PATTERN = re.compile(r"Module \d+:\s*([^,]+)")


def new_job_id() -> str:
    return str(uuid.uuid4())[:8]


def parse_model_name_from_info(info: str) -> str | None:
    """Extract the checkpoint name from a backend infotext string."""
    match = MODEL_PATTERN.search(info)
    if match is None:
        return None
    return match.group(1).strip()


def parse_modules_from_info(info: str) -> list[str]:
    """Extract ``Module N: name`` entries as ``name.safetensors`` filenames."""
    return [f"{name}.safetensors" for name in MODULE_PATTERN.findall(info)]


def image_params_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Recover generation parameters from cached png-info metadata.

    Args:
        metadata: The ``/png-info`` response, ``{"info": str, "parameters": {...}}``

    Returns:
        Keyword arguments suitable for ``Txt2ImgParameters``
    """
    parameters: dict[str, Any] = metadata.get("parameters") or {}
    info: str = metadata.get("info") or ""

    params: dict[str, Any] = {
        "width": int(parameters["Size-1"]),
        "height": int(parameters["Size-2"]),
        "seed": int(parameters.get("Seed", -1)),
        "cfg_scale": float(parameters.get("CFG scale", 7)),
        "distilled_cfg": float(parameters.get("distilled_cfg") or 3.5),
        "steps": int(parameters.get("Steps", 50)),
        "model_name": parse_model_name_from_info(info),
        "modules": parse_modules_from_info(info),
        "prompt": parameters.get("Prompt", ""),
        "negative_prompt": parameters.get("Negative prompt"),
        "sampler_name": parameters.get("Sampler", "DPM++ 2M"),
        "scheduler_name": parameters.get("Schedule type", "automatic"),
        "denoising_strength": float(parameters.get("Denoising strength") or 0.0),
        "image_enhancements": (
            parameters.get("freeu_enabled") == "True" or parameters.get("sag_enabled") == "True"
        ),
    }
    if parameters.get("Variation seed") is not None:
        params["subseed"] = int(parameters["Variation seed"])
    if parameters.get("Variation strength") is not None:
        params["subseed_strength"] = float(parameters["Variation strength"])
    return params


class QueueService:
    """Validates incoming requests and manages tasks waiting for the worker."""

    def __init__(
        self,
        queue: TaskQueue,
        store: ImageStore,
        resolver: ParameterResolver,
        client: ForgeClient,
        executor: TaskExecutor,
        context: ExecutionContext,
        category_check: CategoryCheck | None = None,
        pixel_limit: int | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.resolver = resolver
        self.client = client
        self.executor = executor
        self.context = context
        self.category_check = category_check
        self.pixel_limit = pixel_limit if pixel_limit is not None else settings.image_pixel_limit

    async def _check_common(
        self,
        owner_id: str,
        model_name: str | None,
        prompt: str | None,
        width: int,
        height: int,
        category_id: int | None,
    ) -> None:
        if not owner_id or not model_name or not prompt:
            raise ValidationError("Missing required parameters")

        if category_id is not None and self.category_check is not None:
            if not await self.category_check(owner_id, category_id):
                raise UnauthorizedError("Category does not exist or you do not own it")

        if width * height > self.pixel_limit:
            raise ValidationError(
                f"The total value of (Width * Height) must not exceed {self.pixel_limit}"
            )

    async def resolve_scheduler(self, scheduler_name: str | None) -> str:
        """Resolve a scheduler, retrying in lowercase when the name does not match."""
        resolved = await self.resolver.validate_scheduler_name(scheduler_name)
        if scheduler_name is not None and resolved != scheduler_name:
            logger.info(
                "Scheduler did not match, retrying with lowercase name",
                scheduler_name=scheduler_name,
            )
            resolved = await self.resolver.validate_scheduler_name(scheduler_name.lower())
        return resolved

    async def _admit(self, task: Task) -> Task:
        task.queue_size = self.queue.size() + 1
        await self.store.create_job_record(task)
        self.queue.push(task)
        logger.info(
            "Task queued",
            job_id=task.job_id,
            kind=task.kind.value,
            owner_id=task.owner_id,
            queue_size=task.queue_size,
        )
        return task

    async def queue_txt2img(
        self,
        params: Txt2ImgParameters,
        owner_id: str,
        origin: str | None = None,
        category_id: int | None = None,
        job_id: str | None = None,
    ) -> Task:
        """Validate a text-to-image request and append it to the queue.

        Raises:
            ValidationError: Missing parameters or oversized image
            UnauthorizedError: The category is not the owner's
        """
        await self._check_common(
            owner_id, params.model_name, params.prompt, params.width, params.height, category_id
        )

        params.scheduler_name = await self.resolve_scheduler(params.scheduler_name)
        params.sampler_name = await self.resolver.validate_sampler_name(params.sampler_name)
        if params.upscaler_name is not None:
            params.upscaler_name = await self.resolver.validate_upscaler_name(params.upscaler_name)

        task = Task(
            job_id=job_id or new_job_id(),
            owner_id=owner_id,
            kind=TaskKind.TXT2IMG,
            params=params,
            origin=origin,
            category_id=category_id,
        )
        return await self._admit(task)

    async def queue_img2img(
        self,
        request: Img2ImgRequest,
        owner_id: str,
        origin: str | None = None,
        category_id: int | None = None,
    ) -> Task:
        """Validate an image-to-image request and append it to the queue.

        Raises:
            ValidationError: Missing parameters, oversized image or a
                denoising strength outside [0, 1]
            UnauthorizedError: The category is not the owner's
            ImageNotFoundError: The referenced initial image does not exist
        """
        await self._check_common(
            owner_id, request.model_name, request.prompt, request.width, request.height, category_id
        )
        if not 0.0 <= request.denoising_strength <= 1.0:
            raise ValidationError("Denoising strength must be between 0.0 and 1.0")

        request.model_name = await self.resolver.validate_model_name(request.model_name)
        request.sampler_name = await self.resolver.validate_sampler_name(request.sampler_name)
        request.scheduler_name = await self.resolver.validate_scheduler_name(
            request.scheduler_name or "automatic"
        )
        await request.prepare_initial_image(self.store)

        task = Task(
            job_id=request.job_id,
            owner_id=owner_id,
            kind=TaskKind.IMG2IMG,
            params=request,
            origin=origin,
            category_id=category_id,
        )
        return await self._admit(task)

    async def upscale_hrf(
        self,
        job_id: str,
        owner_id: str,
        origin: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> Task:
        """Queue a high-resolution pass over a finished image.

        The stored image becomes the first pass and the output is twice the
        original size. ``overrides`` may set ``upscaler_name``,
        ``denoising_strength`` and ``hrf_steps``.

        Raises:
            ImageNotFoundError: No finished image exists for ``job_id``
            ValidationError: The doubled image would exceed the pixel limit
        """
        image = await self.store.get_image_by_id(job_id)
        if image is None or not image.image_data:
            raise ImageNotFoundError(job_id)

        metadata = await self.get_image_info(job_id)
        try:
            values = image_params_from_metadata(metadata)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Image {job_id} has no usable generation parameters") from e

        if values["width"] * 2 * values["height"] * 2 > self.pixel_limit:
            raise ValidationError("Image is too large to upscale")

        for key in ("upscaler_name", "denoising_strength", "hrf_steps"):
            value = (overrides or {}).get(key)
            if value is not None:
                values[key] = value

        # Keep the category only when the requester still owns it
        category_id = image.category_id
        if category_id is not None and self.category_check is not None:
            if not await self.category_check(owner_id, category_id):
                category_id = None

        params = Txt2ImgParameters(
            **values,
            force_hr_fix=True,
            first_pass_image=image.image_data,
        )
        logger.info("Queueing high-resolution pass", source_job_id=job_id, owner_id=owner_id)
        return await self.queue_txt2img(
            params, owner_id=owner_id, origin=origin, category_id=category_id
        )

    async def get_image_info(self, job_id: str) -> dict[str, Any]:
        """Return png-info metadata for a finished image, caching it on first read.

        Raises:
            ImageNotFoundError: No finished image exists for ``job_id``
        """
        image = await self.store.get_image_by_id(job_id)
        if image is None or not image.image_data:
            raise ImageNotFoundError(job_id)

        cached = await self.store.get_image_metadata(job_id)
        if cached is not None:
            return cached

        info = await self.client.png_info(image.image_data)
        info.setdefault("parameters", {})["owner_id"] = image.owner_id
        try:
            await self.store.cache_image_metadata(job_id, info)
        except Exception as e:
            logger.warning("Failed to update image info cache", job_id=job_id, error=str(e))
        return info

    async def cancel_task(self, job_id: str, owner_id: str) -> str:
        """Interrupt the running task or drop a queued one.

        Returns:
            ``"interrupted"`` or ``"removed"``

        Raises:
            UnauthorizedError: The running task belongs to someone else
            TaskNotFoundError: The task is neither running nor queued
        """
        current = self.context.current_task
        if current is not None and current.job_id == job_id:
            if current.owner_id != owner_id:
                raise UnauthorizedError("Unauthorized")
            await self.executor.interrupt(current)
            return "interrupted"

        if self.queue.remove_by_id(job_id):
            await self.store.delete_image_record(job_id)
            logger.info("Removed queued task", job_id=job_id, owner_id=owner_id)
            return "removed"

        raise TaskNotFoundError(job_id)

    def queue_status(self) -> dict[str, Any]:
        current = self.context.current_task
        return {
            "queue_size": self.queue.size(),
            "queued_job_ids": self.queue.peek_ids(),
            "current_job_id": current.job_id if current is not None else None,
        }
