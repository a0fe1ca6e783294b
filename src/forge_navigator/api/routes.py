"""API routes for queueing generations and retrieving their results."""

import base64
import binascii
import logging
from typing import Annotated, Any

import httpx
from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import BaseModel, ConfigDict, Field

from forge_navigator.core.config import settings
from forge_navigator.core.database import check_database_connection
from forge_navigator.core.exceptions import (
    ImageNotFoundError,
    TaskNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from forge_navigator.models.task import Img2ImgRequest, Task, Txt2ImgParameters
from forge_navigator.services.notifications import MODELS_REFRESHED
from forge_navigator.services.runtime import Navigator
from forge_navigator.services.submission import new_job_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["queue"])
events_router = APIRouter(tags=["events"])

# Discord auto-complete shows at most this many entries
SAMPLER_LIST_LIMIT = 24

# Bulky inputs are never echoed back to the requester
RESPONSE_EXCLUDED_FIELDS = ("first_pass_image", "initial_image", "mask")


def get_navigator(request: Request) -> Navigator:
    navigator: Navigator = request.app.state.navigator
    return navigator


NavigatorDep = Annotated[Navigator, Depends(get_navigator)]


class Txt2ImgRequestBody(BaseModel):
    """Request model for queueing a text-to-image generation."""

    model_config = ConfigDict(populate_by_name=True)

    owner_id: str | None = None
    model_name: str | None = None
    prompt: str | None = None
    negative_prompt: str | None = None
    job_id: str | None = None
    width: int = 512
    height: int = 512
    steps: int = 50
    hrf_steps: int | None = None
    seed: int = -1
    cfg_scale: float = 7
    distilled_cfg: float = 3.5
    sampler_name: str = "DPM++ 2M"
    scheduler_name: str | None = None
    denoising_strength: float = 0.0
    force_hr_fix: bool = False
    subseed: int | None = None
    subseed_strength: float | None = None
    category_id: int | None = Field(default=None, alias="categoryId")
    upscaler_name: str | None = None
    image_enhancements: bool = False
    modules: list[str] | None = None


class Img2ImgRequestBody(BaseModel):
    """Request model for queueing an image-to-image generation."""

    model_config = ConfigDict(populate_by_name=True)

    owner_id: str | None = None
    model_name: str | None = None
    prompt: str | None = None
    negative_prompt: str = ""
    width: int = 500
    height: int = 500
    steps: int = 50
    seed: int = -1
    cfg_scale: float = 5
    sampler_name: str | None = None
    scheduler_name: str | None = None
    denoising_strength: float | None = None
    category_id: int | None = Field(default=None, alias="categoryId")
    init_image: str | None = None
    mask: str | None = None
    image_enhancements: bool = False


class UpscaleRequestBody(BaseModel):
    """Request model for a high-resolution pass over a finished image."""

    owner_id: str
    upscaler_name: str | None = None
    denoising_strength: float | None = None
    hrf_steps: int | None = None


class InterruptRequestBody(BaseModel):
    owner_id: str


class InterruptResponse(BaseModel):
    message: str
    status: str


class QueueStatusResponse(BaseModel):
    queue_size: int
    queued_job_ids: list[str]
    current_job_id: str | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str


class ForgeHealthResponse(BaseModel):
    """Forge health check response."""

    available: bool
    current_model: str | None = None
    last_used_model: str | None = None


def task_response(task: Task) -> dict[str, Any]:
    data = task.as_dict()
    for key in RESPONSE_EXCLUDED_FIELDS:
        data.pop(key, None)
    return data


def request_origin(request: Request) -> str | None:
    return request.client.host if request.client is not None else None


def ensure_legacy_endpoints_enabled() -> None:
    if not settings.allow_legacy_bot_endpoints:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint is not enabled.",
        )


def decode_png(data: str | None, missing: str) -> Response:
    if not data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=missing)
    try:
        content = base64.b64decode(data)
    except (binascii.Error, ValueError) as e:
        logger.exception("Stored image is not valid base64")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Corrupt image data"
        ) from e
    return Response(content=content, media_type="image/png")


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    from forge_navigator import __version__

    db_status = "connected" if await check_database_connection() else "disconnected"
    if db_status == "disconnected":
        logger.warning("Database health check failed")
    return HealthResponse(status="healthy", version=__version__, database=db_status)


@router.get("/health/forge", response_model=ForgeHealthResponse)
async def forge_health_check(navigator: NavigatorDep) -> ForgeHealthResponse:
    """Check Forge availability."""
    health_status = await navigator.client.check_health()
    return ForgeHealthResponse(
        available=health_status.available,
        current_model=health_status.current_model,
        last_used_model=navigator.context.last_used_model or None,
    )


@router.post("/queue/txt2img", dependencies=[Depends(ensure_legacy_endpoints_enabled)])
async def queue_txt2img(
    body: Txt2ImgRequestBody, request: Request, navigator: NavigatorDep
) -> dict[str, Any]:
    """Queue a text-to-image generation."""
    params = Txt2ImgParameters(
        model_name=body.model_name or "",
        prompt=body.prompt or "",
        negative_prompt=body.negative_prompt,
        seed=body.seed,
        sampler_name=body.sampler_name,
        scheduler_name=body.scheduler_name,
        steps=body.steps,
        hrf_steps=body.hrf_steps,
        cfg_scale=body.cfg_scale,
        distilled_cfg=body.distilled_cfg,
        width=body.width,
        height=body.height,
        denoising_strength=body.denoising_strength,
        subseed=body.subseed,
        subseed_strength=body.subseed_strength,
        force_hr_fix=body.force_hr_fix,
        upscaler_name=body.upscaler_name,
        image_enhancements=body.image_enhancements,
        modules=body.modules or None,
    )
    try:
        task = await navigator.service.queue_txt2img(
            params,
            owner_id=body.owner_id or "",
            origin=request_origin(request),
            category_id=body.category_id,
            job_id=body.job_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except UnauthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    return task_response(task)


@router.post("/queue/img2img", dependencies=[Depends(ensure_legacy_endpoints_enabled)])
async def queue_img2img(
    body: Img2ImgRequestBody, request: Request, navigator: NavigatorDep
) -> dict[str, Any]:
    """Queue an image-to-image generation."""
    img2img = Img2ImgRequest(
        job_id=new_job_id(),
        model_name=body.model_name or "",
        prompt=body.prompt or "",
        negative_prompt=body.negative_prompt,
        seed=body.seed,
        sampler_name=body.sampler_name or "DPM++ 2M",
        scheduler_name=body.scheduler_name or "automatic",
        steps=body.steps,
        cfg_scale=body.cfg_scale,
        width=body.width,
        height=body.height,
        initial_image=body.init_image,
        mask=body.mask,
        image_enhancements=body.image_enhancements,
    )
    if body.denoising_strength:
        img2img.denoising_strength = body.denoising_strength

    try:
        task = await navigator.service.queue_img2img(
            img2img,
            owner_id=body.owner_id or "",
            origin=request_origin(request),
            category_id=body.category_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except UnauthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except ImageNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return task_response(task)


@router.post("/queue/txt2img/upscale-hrf/{job_id}")
async def queue_upscale_hrf(
    job_id: str, body: UpscaleRequestBody, request: Request, navigator: NavigatorDep
) -> dict[str, Any]:
    """Queue a high-resolution pass over a finished image."""
    overrides = body.model_dump(exclude={"owner_id"}, exclude_none=True)
    try:
        task = await navigator.service.upscale_hrf(
            job_id, body.owner_id, origin=request_origin(request), overrides=overrides
        )
    except ImageNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except UnauthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except httpx.HTTPError as e:
        logger.exception("Failed to read image parameters for %s", job_id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return task_response(task)


@router.post("/queue/interrupt/{job_id}", response_model=InterruptResponse)
async def interrupt_task(
    job_id: str, body: InterruptRequestBody, navigator: NavigatorDep
) -> InterruptResponse:
    """Interrupt the running task or remove a queued one."""
    try:
        outcome = await navigator.service.cancel_task(job_id, body.owner_id)
    except UnauthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found") from e
    except httpx.HTTPError as e:
        logger.exception("Error interrupting task %s", job_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e

    if outcome == "interrupted":
        return InterruptResponse(message="Task interrupted!", status="interrupted")
    return InterruptResponse(message="Task removed!", status="removed")


@router.get("/queue", response_model=QueueStatusResponse)
async def queue_status(navigator: NavigatorDep) -> QueueStatusResponse:
    return QueueStatusResponse(**navigator.service.queue_status())


@router.get("/images/{job_id}")
async def get_image(job_id: str, navigator: NavigatorDep) -> Response:
    """Serve a finished image as PNG."""
    image = await navigator.store.get_image_by_id(job_id.removesuffix(".png"))
    return decode_png(image.image_data if image else None, "Image not found")


@router.get("/images/{job_id}/info")
async def get_image_info(job_id: str, navigator: NavigatorDep) -> dict[str, Any]:
    """Return the generation metadata embedded in a finished image."""
    try:
        return await navigator.service.get_image_info(job_id)
    except ImageNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found") from e
    except httpx.HTTPError as e:
        logger.exception("Failed to read image info for %s", job_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e


@router.get("/previews/{job_id}")
async def get_preview(job_id: str, navigator: NavigatorDep) -> Response:
    """Serve the latest progress preview as PNG."""
    image = await navigator.store.get_image_by_id(job_id.removesuffix(".png"))
    return decode_png(image.preview_data if image else None, "Preview not found")


@router.get("/models")
async def list_models(
    navigator: NavigatorDep, refresh: Annotated[bool, Query()] = False
) -> dict[str, Any]:
    """List backend checkpoints merged with the locally known models."""
    try:
        if refresh:
            await navigator.client.refresh_checkpoints()
            navigator.resolver.refresh_catalogs()
            await navigator.notifier.broadcast(
                MODELS_REFRESHED, {"message": "Models have been refreshed!"}
            )
        api_models = await navigator.client.get_sd_models()
    except httpx.HTTPError as e:
        logger.exception("Failed to list models")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    known = {model.model_name: model for model in await navigator.store.list_known_models()}
    models = []
    for model in api_models:
        match = known.get(model["model_name"])
        if match is None:
            models.append({**model, "known": False})
            continue
        models.append(
            {
                **model,
                "known": True,
                "id": match.id,
                "friendly_name": match.friendly_name,
                "is_restricted": match.is_restricted,
            }
        )
    return {"models": models}


@router.get("/samplers")
async def list_samplers(
    navigator: NavigatorDep, include_all: Annotated[bool, Query(alias="all")] = False
) -> list[dict[str, Any]]:
    samplers = await navigator.client.get_samplers()
    return samplers if include_all else samplers[:SAMPLER_LIST_LIMIT]


@router.get("/schedulers")
async def list_schedulers(navigator: NavigatorDep) -> list[dict[str, Any]]:
    return await navigator.client.get_schedulers()


@router.get("/upscalers")
async def list_upscalers(navigator: NavigatorDep) -> list[dict[str, Any]]:
    """List upscalers, without the backend's placeholder ``None`` entry."""
    upscalers = await navigator.client.get_upscalers()
    return [upscaler for upscaler in upscalers if upscaler.get("name") != "None"]


@events_router.websocket("/ws")
async def events_socket(websocket: WebSocket) -> None:
    """Stream task events for requests made from the same address."""
    navigator: Navigator = websocket.app.state.navigator
    await navigator.notifier.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        navigator.notifier.disconnect(websocket)
