"""In-memory task model for the generation queue."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from forge_navigator.core.exceptions import ImageNotFoundError
from forge_navigator.services.parameters import (
    IMG2IMG_MAX_STEPS,
    apply_enhancements,
    apply_mask_data,
)

if TYPE_CHECKING:
    from forge_navigator.services.storage import ImageStore

CORRELATION_PREFIX = "navigator-"
STORED_IMAGE_PREFIX = "NAVIGATOR_"


def correlation_id_for(job_id: str) -> str:
    """Build the task id the backend is asked to tag a job with."""
    return f"{CORRELATION_PREFIX}{job_id}"


class TaskStatus(str, Enum):
    """Lifecycle state of a queued task."""

    QUEUED = "queued"
    STARTED = "started"
    PROCESSING = "processing"
    FINISHED = "finished"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class TaskKind(str, Enum):
    """Kind of generation a task performs."""

    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"


@dataclass
class Txt2ImgParameters:
    """Parameters for a text-to-image generation."""

    model_name: str
    prompt: str
    negative_prompt: str | None = None
    seed: int = -1
    sampler_name: str = "DPM++ 2M"
    scheduler_name: str | None = "automatic"
    steps: int = 50
    hrf_steps: int | None = None
    cfg_scale: float = 7
    distilled_cfg: float = 3.5
    width: int = 512
    height: int = 512
    denoising_strength: float = 0.0
    subseed: int | None = None
    subseed_strength: float | None = None
    force_hr_fix: bool = False
    upscaler_name: str | None = None
    first_pass_image: str | None = None
    image_enhancements: bool = False
    modules: list[str] | None = None

    def __post_init__(self) -> None:
        if self.hrf_steps is None:
            self.hrf_steps = self.steps
        # Variation seeds only make sense as a pair
        if not (self.subseed and self.subseed_strength):
            self.subseed = None
            self.subseed_strength = None


@dataclass
class Img2ImgRequest:
    """An image-to-image request and the payload shape the backend expects."""

    job_id: str
    model_name: str
    prompt: str
    negative_prompt: str = ""
    seed: int = -1
    sampler_name: str = "DPM++ 2M"
    scheduler_name: str = "automatic"
    steps: int = 50
    cfg_scale: float = 5
    width: int = 500
    height: int = 500
    initial_image: str | None = None
    mask: str | None = None
    image_enhancements: bool = False
    denoising_strength: float = 0.75
    subseed: int = -1
    subseed_strength: float = 0

    async def prepare_initial_image(self, store: "ImageStore") -> None:
        """Swap a ``NAVIGATOR_<job_id>`` reference for the stored image data."""
        if not self.initial_image or not self.initial_image.startswith(STORED_IMAGE_PREFIX):
            return

        job_id = self.initial_image.replace(STORED_IMAGE_PREFIX, "")
        image = await store.get_image_by_id(job_id)
        if image is None or not image.image_data:
            raise ImageNotFoundError(job_id)
        self.initial_image = image.image_data

    def to_api_payload(self) -> dict[str, Any]:
        """Build the JSON body for the backend's img2img endpoint."""
        payload: dict[str, Any] = {
            "force_task_id": correlation_id_for(self.job_id),
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "subseed": self.subseed,
            "subseed_strength": self.subseed_strength,
            "sampler_name": self.sampler_name,
            "scheduler": self.scheduler_name,
            "steps": min(self.steps, IMG2IMG_MAX_STEPS),
            "cfg_scale": self.cfg_scale,
            "width": self.width,
            "height": self.height,
            "denoising_strength": self.denoising_strength,
            "init_images": [self.initial_image] if self.initial_image else [],
            "override_settings": {"sd_model_checkpoint": self.model_name},
            "save_images": False,
        }
        payload = apply_mask_data(payload, self.mask)
        return apply_enhancements(payload, self.image_enhancements)


@dataclass
class Task:
    """A unit of work waiting for, or holding, the backend."""

    job_id: str
    owner_id: str
    kind: TaskKind
    params: Txt2ImgParameters | Img2ImgRequest
    status: TaskStatus = TaskStatus.QUEUED
    origin: str | None = None
    queue_size: int | None = None
    category_id: int | None = None
    error: str | None = None

    @property
    def correlation_id(self) -> str:
        return correlation_id_for(self.job_id)

    @property
    def model_name(self) -> str:
        return self.params.model_name

    def as_dict(self) -> dict[str, Any]:
        """Flatten the task and its parameters into a JSON-friendly dict."""
        data: dict[str, Any] = asdict(self.params)
        data.pop("job_id", None)
        data.update(
            {
                "type": self.kind.value,
                "task_type": self.kind.value,
                "job_id": self.job_id,
                "owner_id": self.owner_id,
                "status": self.status.value,
                "origin": self.origin,
                "categoryId": self.category_id,
            }
        )
        if self.queue_size is not None:
            data["queue_size"] = self.queue_size
        if self.error is not None:
            data["error"] = self.error
        return data
