"""Forge (Stable Diffusion WebUI) API client."""

import json
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from forge_navigator.core.config import settings

logger = structlog.get_logger()

API_PATH_SUFFIX = "/sdapi/v1"


@dataclass
class ForgeStatus:
    """Reachability of the backend and the checkpoint it has loaded."""

    available: bool
    current_model: str | None = None


@dataclass
class GenerationResult:
    """Response body of a txt2img/img2img call."""

    images: list[str]
    info: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def actual_seed(self) -> int | None:
        """Seed the backend actually used, parsed from the info JSON."""
        if not self.info:
            return None
        try:
            info = json.loads(self.info)
        except (TypeError, ValueError):
            logger.warning("Generation info is not valid JSON")
            return None
        if not isinstance(info, dict):
            return None
        seed = info.get("seed")
        return int(seed) if seed is not None else None


@dataclass
class ProgressSnapshot:
    """A single reading of the backend's progress endpoint."""

    progress: float
    eta_relative: float
    current_step: int | None
    total_steps: int | None
    current_image: str | None


class ForgeClient:
    """Async client for the Forge API used by the queue pipeline."""

    def __init__(self, url: str | None = None, timeout: float | None = None) -> None:
        """Initialize with the backend's ``/sdapi/v1`` URL."""
        self.url = (url or settings.forge_api_url).rstrip("/")
        self.timeout = timeout or float(settings.forge_request_timeout_seconds)

    @property
    def internal_url(self) -> str:
        """Base URL for endpoints that live outside the public API prefix."""
        return self.url.removesuffix(API_PATH_SUFFIX)

    async def _get(self, path: str) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(f"{self.url}{path}")
            resp.raise_for_status()
            return resp.json()

    async def _post(
        self,
        path: str,
        payload: dict[str, Any] | None = None,
        timeout: float | httpx.Timeout | None = None,
    ) -> Any:
        async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
            resp = await client.post(f"{self.url}{path}", json=payload)
            resp.raise_for_status()
            if not resp.content:
                return None
            return resp.json()

    async def get_samplers(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = await self._get("/samplers")
        return result

    async def get_schedulers(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = await self._get("/schedulers")
        return result

    async def get_upscalers(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = await self._get("/upscalers")
        return result

    async def get_sd_models(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = await self._get("/sd-models")
        return result

    async def get_options(self) -> dict[str, Any]:
        result: dict[str, Any] = await self._get("/options")
        return result

    async def _generate(self, path: str, payload: dict[str, Any]) -> GenerationResult:
        # Generation has no deadline; progress polling is the feedback channel
        data = await self._post(path, payload, timeout=httpx.Timeout(None))
        return GenerationResult(
            images=list(data.get("images") or []),
            info=data.get("info"),
            parameters=data.get("parameters") or {},
        )

    async def txt2img(self, payload: dict[str, Any]) -> GenerationResult:
        """Submit a text-to-image job and wait for it to finish."""
        return await self._generate("/txt2img", payload)

    async def img2img(self, payload: dict[str, Any]) -> GenerationResult:
        """Submit an image-to-image job and wait for it to finish."""
        return await self._generate("/img2img", payload)

    async def get_progress(self) -> ProgressSnapshot:
        """Read progress of whatever job the backend is running."""
        data = await self._get("/progress")
        state = data.get("state") or {}
        return ProgressSnapshot(
            progress=data.get("progress", 0.0),
            eta_relative=data.get("eta_relative", 0.0),
            current_step=state.get("sampling_step"),
            total_steps=state.get("sampling_steps"),
            current_image=data.get("current_image"),
        )

    async def is_task_active(self, correlation_id: str) -> bool:
        """Ask the backend whether it is working on the given task id right now."""
        payload = {"id_task": correlation_id, "live_preview": False, "id_live_preview": -1}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.internal_url}/internal/progress", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except Exception as e:
            logger.warning("Failed to verify active task", task_id=correlation_id, error=str(e))
            return False

        if not isinstance(data, dict):
            return False
        return data.get("active") is True

    async def interrupt(self) -> None:
        """Abort whatever the backend is currently generating."""
        await self._post("/interrupt")

    async def png_info(self, image: str) -> dict[str, Any]:
        """Extract the generation metadata embedded in a base64 PNG."""
        result: dict[str, Any] = await self._post("/png-info", {"image": image})
        return result

    async def refresh_checkpoints(self) -> None:
        await self._post("/refresh-checkpoints")

    async def unload_checkpoint(self) -> None:
        await self._post("/unload-checkpoint")

    async def check_health(self) -> ForgeStatus:
        """Check if the backend is reachable and which checkpoint it has loaded."""
        try:
            options = await self.get_options()
            return ForgeStatus(available=True, current_model=options.get("sd_model_checkpoint"))
        except httpx.TimeoutException:
            logger.warning("Forge health check timed out", url=self.url)
            return ForgeStatus(available=False)
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Forge health check failed",
                url=self.url,
                status_code=e.response.status_code,
            )
            return ForgeStatus(available=False)
        except Exception as e:
            logger.warning("Forge health check error", url=self.url, error=str(e))
            return ForgeStatus(available=False)
