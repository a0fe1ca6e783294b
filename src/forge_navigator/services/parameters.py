"""Generation parameter resolution and backend payload policy.

Two halves live here. ``ParameterResolver`` maps user-supplied sampler,
scheduler, upscaler and model names onto names the backend actually has,
caching the slow-changing catalogs. The module-level ``apply_*`` functions
are the pure policy steps that turn a task's parameters into the exact
txt2img body, including the high-resolution fix rules.
"""

import math
from typing import TYPE_CHECKING, Any

import structlog

from forge_navigator.services.forge import ForgeClient

if TYPE_CHECKING:
    from forge_navigator.models.task import Txt2ImgParameters
    from forge_navigator.services.storage import ImageStore

logger = structlog.get_logger()

DEFAULT_SCHEDULER = "automatic"
PREFERRED_UPSCALER = "4x_NMKD-Siax_200k"
FALLBACK_UPSCALER = "RealESRGAN_x4"

# Above this many pixels the backend runs out of VRAM without HR fix
HR_FIX_PIXEL_THRESHOLD = 1024 * 1024
DEFAULT_HR_DENOISING_STRENGTH = 0.35
AUTO_HR_MAX_SECOND_PASS_STEPS = 30
IMG2IMG_MAX_STEPS = 75

FREEU_SCRIPT = "FreeU Integrated (SD 1.x, SD 2.x, SDXL)"
SAG_SCRIPT = "SelfAttentionGuidance Integrated (SD 1.x, SD 2.x, SDXL)"


def clamp(value: float, minimum: float, maximum: float) -> float:
    """Limit ``value`` to the range [minimum, maximum]."""
    return min(max(value, minimum), maximum)


def always_on_scripts(free_u: bool, sag: bool) -> dict[str, Any]:
    """Build the ``alwayson_scripts`` block enabling FreeU and/or SAG."""
    scripts: dict[str, Any] = {}
    if free_u:
        # enabled, b1, b2, s1, s2, start step, end step (SDXL recommendations)
        scripts[FREEU_SCRIPT] = {"args": [True, 1.1, 1.2, 0.6, 0.4, 0, 1]}
    if sag:
        # enabled, scale, blur sigma, blur mask threshold
        scripts[SAG_SCRIPT] = {"args": [True, 0.5, 2, 1]}
    return scripts


def _needs_default_denoising(payload: dict[str, Any]) -> bool:
    return not payload.get("denoising_strength")


def base_txt2img_payload(params: "Txt2ImgParameters", correlation_id: str) -> dict[str, Any]:
    """Map task parameters onto the backend's txt2img fields, HR fix off."""
    override_settings: dict[str, Any] = {"sd_model_checkpoint": params.model_name}
    if params.modules:
        override_settings["forge_additional_modules"] = list(params.modules)

    payload: dict[str, Any] = {
        "prompt": params.prompt,
        "negative_prompt": params.negative_prompt,
        "seed": params.seed,
        "steps": params.steps,
        "width": params.width,
        "height": params.height,
        "cfg_scale": params.cfg_scale,
        "distilled_cfg_scale": params.distilled_cfg,
        "sampler_name": params.sampler_name,
        "scheduler": params.scheduler_name,
        "enable_hr": False,
        "hr_upscaler": params.upscaler_name,
        "hr_additional_modules": [],
        "save_images": False,
        "override_settings": override_settings,
        "override_settings_restore_afterwards": False,
        "force_task_id": correlation_id,
    }
    if params.denoising_strength:
        payload["denoising_strength"] = params.denoising_strength
    return payload


def apply_first_pass_image(payload: dict[str, Any], params: "Txt2ImgParameters") -> dict[str, Any]:
    """Reuse a previously generated low-res image instead of a new base pass."""
    if params.first_pass_image is None:
        return payload
    return {**payload, "firstpass_image": params.first_pass_image}


def apply_subseed(payload: dict[str, Any], params: "Txt2ImgParameters") -> dict[str, Any]:
    if not (params.subseed and params.subseed_strength):
        return payload
    return {**payload, "subseed": params.subseed, "subseed_strength": params.subseed_strength}


def apply_hr_fix(payload: dict[str, Any], params: "Txt2ImgParameters") -> dict[str, Any]:
    """Apply the high-resolution fix policy.

    A forced HR fix doubles the output size. Otherwise, requests larger than
    ``HR_FIX_PIXEL_THRESHOLD`` are generated at half size and upscaled back to
    the requested size. Smaller requests keep HR fix disabled; a denoising
    strength alone does not turn it on.
    """
    result = dict(payload)

    if params.force_hr_fix:
        hrf_steps = params.hrf_steps if params.hrf_steps is not None else params.steps
        result["enable_hr"] = True
        result["hr_resize_x"] = params.width * 2
        result["hr_resize_y"] = params.height * 2
        result["hr_second_pass_steps"] = clamp(hrf_steps, hrf_steps, params.steps)
    elif params.width * params.height > HR_FIX_PIXEL_THRESHOLD:
        result["enable_hr"] = True
        result["hr_resize_x"] = params.width
        result["hr_resize_y"] = params.height
        result["hr_second_pass_steps"] = clamp(
            params.steps, params.steps, AUTO_HR_MAX_SECOND_PASS_STEPS
        )
        # Backend only accepts integer sizes
        result["width"] = math.ceil(params.width / 2)
        result["height"] = math.ceil(params.height / 2)

    if result["enable_hr"] and _needs_default_denoising(result):
        result["denoising_strength"] = DEFAULT_HR_DENOISING_STRENGTH
    return result


def apply_enhancements(payload: dict[str, Any], enabled: bool) -> dict[str, Any]:
    if not enabled:
        return payload
    return {**payload, "alwayson_scripts": always_on_scripts(True, True)}


def apply_mask_data(payload: dict[str, Any], mask: str | None) -> dict[str, Any]:
    """Add inpainting fields when a non-empty mask is supplied."""
    result = {key: value for key, value in payload.items() if key != "mask"}
    if not mask:
        return result
    result.update(
        {
            "mask": mask,
            "initial_noise_multiplier": 1,
            "inpaint_full_res": 1,
            "mask_blur": 4,
            "mask_blur_x": 4,
            "mask_blur_y": 4,
            "mask_round": True,
            "inpainting_fill": 1,
            "inpaint_full_res_padding": 32,
            "inpainting_mask_invert": 0,
            "image_cfg_scale": 1.5,
        }
    )
    return result


def build_txt2img_payload(params: "Txt2ImgParameters", correlation_id: str) -> dict[str, Any]:
    """Build the complete txt2img request body for a task."""
    payload = base_txt2img_payload(params, correlation_id)
    payload = apply_first_pass_image(payload, params)
    payload = apply_subseed(payload, params)
    payload = apply_hr_fix(payload, params)
    return apply_enhancements(payload, params.image_enhancements)


class ParameterResolver:
    """Resolves user-facing names against the backend's catalogs.

    Samplers, schedulers and upscalers rarely change, so each list is fetched
    once and kept until ``refresh_catalogs`` is called. Models are always
    checked live.
    """

    def __init__(self, client: ForgeClient, store: "ImageStore | None" = None) -> None:
        self.client = client
        self.store = store
        self._samplers: list[dict[str, Any]] | None = None
        self._schedulers: list[dict[str, Any]] | None = None
        self._upscalers: list[dict[str, Any]] | None = None

    def refresh_catalogs(self) -> None:
        """Drop cached catalogs so the next lookup re-reads the backend."""
        self._samplers = None
        self._schedulers = None
        self._upscalers = None
        logger.info("Catalog caches cleared")

    async def _sampler_catalog(self) -> list[dict[str, Any]]:
        if self._samplers is None:
            self._samplers = await self.client.get_samplers()
            logger.info("Sampler cache updated", count=len(self._samplers))
        return self._samplers

    async def _scheduler_catalog(self) -> list[dict[str, Any]]:
        if self._schedulers is None:
            self._schedulers = await self.client.get_schedulers()
            logger.info("Scheduler cache updated", count=len(self._schedulers))
        return self._schedulers

    async def _upscaler_catalog(self) -> list[dict[str, Any]]:
        if self._upscalers is None:
            self._upscalers = await self.client.get_upscalers()
            logger.info("Upscaler cache updated", count=len(self._upscalers))
        return self._upscalers

    async def validate_sampler_name(self, sampler_name: str) -> str:
        """Resolve a sampler name or alias, falling back to the first sampler."""
        samplers = await self._sampler_catalog()
        for sampler in samplers:
            if sampler["name"] == sampler_name:
                return sampler_name
            if sampler_name in (sampler.get("aliases") or []):
                return str(sampler["name"])

        if not samplers:
            logger.warning("Backend reported no samplers", sampler_name=sampler_name)
            return sampler_name
        fallback = str(samplers[0]["name"])
        logger.info("Unknown sampler, using fallback", sampler_name=sampler_name, fallback=fallback)
        return fallback

    async def validate_scheduler_name(self, scheduler_name: str | None) -> str:
        """Resolve a scheduler name, falling back to ``automatic``."""
        if scheduler_name is None:
            return DEFAULT_SCHEDULER

        for scheduler in await self._scheduler_catalog():
            if scheduler["name"] == scheduler_name:
                return scheduler_name
        return DEFAULT_SCHEDULER

    async def validate_upscaler_name(self, upscaler_name: str | None) -> str:
        """Resolve an upscaler name with the preferred and built-in fallbacks."""
        upscalers = await self._upscaler_catalog()
        names = [upscaler["name"] for upscaler in upscalers]
        if upscaler_name is not None and upscaler_name in names:
            return upscaler_name

        if upscaler_name != PREFERRED_UPSCALER and PREFERRED_UPSCALER in names:
            return PREFERRED_UPSCALER
        return FALLBACK_UPSCALER

    async def validate_model_name(self, model_name: str) -> str:
        """Resolve a checkpoint against the live list, then known models."""
        api_models = await self.client.get_sd_models()
        if any(model["model_name"] == model_name for model in api_models):
            return model_name

        if self.store is not None:
            known_models = await self.store.list_known_models()
            if any(model.friendly_name == model_name for model in known_models):
                return model_name

        if not api_models:
            logger.warning("Backend reported no models", model_name=model_name)
            return model_name
        fallback = str(api_models[0]["model_name"])
        logger.info("Unknown model, using fallback", model_name=model_name, fallback=fallback)
        return fallback
