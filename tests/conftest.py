"""Test fixtures and configuration."""

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from forge_navigator.api.routes import events_router, router
from forge_navigator.models import Base
from forge_navigator.models.task import Task, TaskKind, Txt2ImgParameters
from forge_navigator.services.forge import ForgeClient, GenerationResult, ProgressSnapshot
from forge_navigator.services.runtime import Navigator, create_navigator
from forge_navigator.services.storage import ImageStore

# Use SQLite for testing (in-memory, one shared connection per test)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class RecordingNotifier:
    """Notification sink that remembers every event it was given."""

    def __init__(self) -> None:
        self.events: list[tuple[str | None, str, dict[str, Any]]] = []
        self.broadcasts: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, origin: str | None, event: str, payload: dict[str, Any]) -> None:
        self.events.append((origin, event, payload))

    async def broadcast(self, event: str, payload: dict[str, Any]) -> None:
        self.broadcasts.append((event, payload))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [payload for _, name, payload in self.events if name == event]


def make_task(
    job_id: str = "job00001",
    owner_id: str = "owner-1",
    origin: str | None = "10.0.0.1",
    **params: Any,
) -> Task:
    """Build a queued txt2img task with sensible defaults."""
    values: dict[str, Any] = {"model_name": "sdxl.safetensors", "prompt": "a lighthouse"}
    values.update(params)
    return Task(
        job_id=job_id,
        owner_id=owner_id,
        kind=TaskKind.TXT2IMG,
        params=Txt2ImgParameters(**values),
        origin=origin,
    )


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Create a fresh in-memory database and provide a session factory."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> ImageStore:
    return ImageStore(session_factory)


@pytest.fixture
def forge_client() -> AsyncMock:
    """A Forge client whose every call is an AsyncMock with benign defaults."""
    client = AsyncMock(spec=ForgeClient)
    client.get_samplers.return_value = [
        {"name": "DPM++ 2M", "aliases": ["k_dpmpp_2m"]},
        {"name": "Euler a", "aliases": ["k_euler_a"]},
    ]
    client.get_schedulers.return_value = [
        {"name": "automatic", "label": "Automatic"},
        {"name": "karras", "label": "Karras"},
    ]
    client.get_upscalers.return_value = [
        {"name": "None"},
        {"name": "4x_NMKD-Siax_200k"},
        {"name": "RealESRGAN_x4"},
    ]
    client.get_sd_models.return_value = [
        {"model_name": "sdxl.safetensors", "title": "sdxl.safetensors [abc123]"},
        {"model_name": "flux.safetensors", "title": "flux.safetensors [def456]"},
    ]
    client.get_options.return_value = {"sd_model_checkpoint": "sdxl.safetensors"}
    client.txt2img.return_value = GenerationResult(
        images=["aW1hZ2U="], info='{"seed": 1234}', parameters={}
    )
    client.img2img.return_value = GenerationResult(
        images=["aW1hZ2U="], info='{"seed": 1234}', parameters={}
    )
    client.is_task_active.return_value = False
    client.get_progress.return_value = ProgressSnapshot(
        progress=0.5, eta_relative=3.0, current_step=10, total_steps=20, current_image="cHJldmlldw=="
    )
    client.png_info.return_value = {
        "info": "a lighthouse\nSteps: 20, Model: sdxl, Seed: 1234",
        "parameters": {"Prompt": "a lighthouse"},
    }
    return client


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def navigator(forge_client: AsyncMock, store: ImageStore) -> Navigator:
    """Component graph wired to the mocked client and the test database."""
    return create_navigator(client=forge_client, store=store, progress_interval=0.01)


@pytest.fixture
async def async_client(navigator: Navigator) -> AsyncIterator[AsyncClient]:
    """Create async test client for API testing with test database."""
    test_app = FastAPI(title="Forge Navigator Test")
    test_app.include_router(router)
    test_app.include_router(events_router)
    test_app.state.navigator = navigator

    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac
