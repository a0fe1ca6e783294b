"""Tests for API routes."""

import base64
from unittest.mock import AsyncMock, patch

import httpx
from conftest import make_task
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forge_navigator import __version__
from forge_navigator.core.config import settings
from forge_navigator.models import KnownModel
from forge_navigator.services.forge import ForgeStatus
from forge_navigator.services.runtime import Navigator

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def txt2img_body(**overrides: object) -> dict:
    body: dict = {
        "owner_id": "owner-1",
        "model_name": "sdxl.safetensors",
        "prompt": "a lighthouse",
    }
    body.update(overrides)
    return body


class TestHealthEndpoints:
    """Tests for the health check endpoints."""

    async def test_health_reports_database(self, async_client: AsyncClient) -> None:
        with patch(
            "forge_navigator.api.routes.check_database_connection",
            AsyncMock(return_value=True),
        ):
            response = await async_client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "version": __version__,
            "database": "connected",
        }

    async def test_health_database_down(self, async_client: AsyncClient) -> None:
        with patch(
            "forge_navigator.api.routes.check_database_connection",
            AsyncMock(return_value=False),
        ):
            response = await async_client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["database"] == "disconnected"

    async def test_forge_health(self, async_client: AsyncClient, navigator: Navigator) -> None:
        navigator.client.check_health.return_value = ForgeStatus(  # type: ignore[attr-defined]
            available=True, current_model="sdxl.safetensors [abc123]"
        )
        navigator.context.last_used_model = "flux.safetensors"

        response = await async_client.get("/api/health/forge")

        assert response.status_code == 200
        assert response.json() == {
            "available": True,
            "current_model": "sdxl.safetensors [abc123]",
            "last_used_model": "flux.safetensors",
        }


class TestQueueEndpoints:
    """Tests for queueing and cancelling generations."""

    async def test_queue_txt2img(self, async_client: AsyncClient, navigator: Navigator) -> None:
        response = await async_client.post(
            "/api/queue/txt2img", json=txt2img_body(categoryId=3, sampler_name="k_euler_a")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["queue_size"] == 1
        assert data["categoryId"] == 3
        assert data["sampler_name"] == "Euler a"
        assert data["origin"] == "127.0.0.1"
        assert "first_pass_image" not in data
        assert navigator.queue.peek_ids() == [data["job_id"]]

    async def test_queue_txt2img_missing_prompt(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/api/queue/txt2img", json=txt2img_body(prompt=None))

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required parameters"

    async def test_queue_txt2img_too_large(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            "/api/queue/txt2img", json=txt2img_body(width=4096, height=4096)
        )

        assert response.status_code == 400
        assert "must not exceed" in response.json()["detail"]

    async def test_queue_txt2img_duplicate_job_id(self, async_client: AsyncClient) -> None:
        first = await async_client.post("/api/queue/txt2img", json=txt2img_body(job_id="dup"))
        second = await async_client.post("/api/queue/txt2img", json=txt2img_body(job_id="dup"))

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["detail"] == "Job dup already exists"

    async def test_queue_img2img(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            "/api/queue/img2img",
            json={
                "owner_id": "owner-1",
                "model_name": "sdxl.safetensors",
                "prompt": "a harbour",
                "init_image": "aW5pdA==",
                "denoising_strength": 0.4,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["type"] == "img2img"
        assert data["denoising_strength"] == 0.4
        assert "initial_image" not in data

    async def test_queue_img2img_missing_stored_image(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            "/api/queue/img2img",
            json={
                "owner_id": "owner-1",
                "model_name": "sdxl.safetensors",
                "prompt": "a harbour",
                "init_image": "NAVIGATOR_gone0001",
            },
        )

        assert response.status_code == 404

    async def test_legacy_endpoints_disabled(self, async_client: AsyncClient) -> None:
        with patch.object(settings, "allow_legacy_bot_endpoints", False):
            response = await async_client.post("/api/queue/txt2img", json=txt2img_body())

        assert response.status_code == 403
        assert response.json()["detail"] == "This endpoint is not enabled."

    async def test_interrupt_removes_queued_task(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        queued = await async_client.post("/api/queue/txt2img", json=txt2img_body())
        job_id = queued.json()["job_id"]

        response = await async_client.post(
            f"/api/queue/interrupt/{job_id}", json={"owner_id": "owner-1"}
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Task removed!", "status": "removed"}
        assert navigator.queue.size() == 0

    async def test_interrupt_running_task(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        navigator.context.current_task = make_task(job_id="run00001")

        response = await async_client.post(
            "/api/queue/interrupt/run00001", json={"owner_id": "owner-1"}
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Task interrupted!", "status": "interrupted"}

    async def test_interrupt_someone_elses_task(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        navigator.context.current_task = make_task(job_id="run00001")

        response = await async_client.post(
            "/api/queue/interrupt/run00001", json={"owner_id": "owner-2"}
        )

        assert response.status_code == 403

    async def test_interrupt_unknown_task(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            "/api/queue/interrupt/nothere1", json={"owner_id": "owner-1"}
        )

        assert response.status_code == 404
        assert response.json()["detail"] == "Task not found"

    async def test_interrupt_backend_error(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        navigator.context.current_task = make_task(job_id="run00001")
        navigator.client.interrupt.side_effect = httpx.ConnectError("refused")  # type: ignore[attr-defined]

        response = await async_client.post(
            "/api/queue/interrupt/run00001", json={"owner_id": "owner-1"}
        )

        assert response.status_code == 500

    async def test_queue_status(self, async_client: AsyncClient, navigator: Navigator) -> None:
        queued = await async_client.post("/api/queue/txt2img", json=txt2img_body())

        response = await async_client.get("/api/queue")

        assert response.status_code == 200
        assert response.json() == {
            "queue_size": 1,
            "queued_job_ids": [queued.json()["job_id"]],
            "current_job_id": None,
        }

    async def test_upscale_missing_image(self, async_client: AsyncClient) -> None:
        response = await async_client.post(
            "/api/queue/txt2img/upscale-hrf/nothere1", json={"owner_id": "owner-1"}
        )

        assert response.status_code == 404

    async def test_upscale_queues_hr_pass(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        await navigator.store.create_job_record(make_task(job_id="src00001"))
        await navigator.store.write_final_image("src00001", "aW1hZ2U=")
        navigator.client.png_info.return_value = {  # type: ignore[attr-defined]
            "info": "a lighthouse\nSteps: 20, Model: sdxl.safetensors",
            "parameters": {"Prompt": "a lighthouse", "Size-1": "512", "Size-2": "512"},
        }

        response = await async_client.post(
            "/api/queue/txt2img/upscale-hrf/src00001",
            json={"owner_id": "owner-1", "hrf_steps": 10},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["force_hr_fix"] is True
        assert data["hrf_steps"] == 10
        assert "first_pass_image" not in data


class TestImageEndpoints:
    """Tests for image, preview and info retrieval."""

    async def test_get_image(self, async_client: AsyncClient, navigator: Navigator) -> None:
        await navigator.store.create_job_record(make_task(job_id="job00001"))
        await navigator.store.write_final_image(
            "job00001", base64.b64encode(PNG_BYTES).decode()
        )

        response = await async_client.get("/api/images/job00001.png")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content == PNG_BYTES

    async def test_get_image_not_finished(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        await navigator.store.create_job_record(make_task(job_id="job00001"))

        response = await async_client.get("/api/images/job00001")

        assert response.status_code == 404
        assert response.json()["detail"] == "Image not found"

    async def test_get_preview(self, async_client: AsyncClient, navigator: Navigator) -> None:
        await navigator.store.create_job_record(make_task(job_id="job00001"))
        await navigator.store.write_preview("job00001", base64.b64encode(PNG_BYTES).decode())

        response = await async_client.get("/api/previews/job00001")

        assert response.status_code == 200
        assert response.content == PNG_BYTES

    async def test_get_preview_missing(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/previews/nothere1")

        assert response.status_code == 404
        assert response.json()["detail"] == "Preview not found"

    async def test_get_image_info(self, async_client: AsyncClient, navigator: Navigator) -> None:
        await navigator.store.create_job_record(make_task(job_id="job00001", owner_id="owner-9"))
        await navigator.store.write_final_image("job00001", "aW1hZ2U=")

        response = await async_client.get("/api/images/job00001/info")

        assert response.status_code == 200
        assert response.json()["parameters"]["owner_id"] == "owner-9"

    async def test_get_image_info_missing(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/images/nothere1/info")
        assert response.status_code == 404


class TestCatalogEndpoints:
    """Tests for model, sampler, scheduler and upscaler listings."""

    async def test_models_merged_with_known_models(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        async with session_factory() as session:
            session.add(
                KnownModel(model_name="flux.safetensors", friendly_name="Flux", is_restricted=True)
            )
            await session.commit()

        response = await async_client.get("/api/models")

        assert response.status_code == 200
        models = {model["model_name"]: model for model in response.json()["models"]}
        assert models["sdxl.safetensors"]["known"] is False
        assert models["flux.safetensors"]["known"] is True
        assert models["flux.safetensors"]["friendly_name"] == "Flux"
        assert models["flux.safetensors"]["is_restricted"] is True

    async def test_models_refresh(self, async_client: AsyncClient, navigator: Navigator) -> None:
        await navigator.resolver.validate_sampler_name("DPM++ 2M")

        response = await async_client.get("/api/models", params={"refresh": "true"})

        assert response.status_code == 200
        navigator.client.refresh_checkpoints.assert_awaited_once()  # type: ignore[attr-defined]
        await navigator.resolver.validate_sampler_name("DPM++ 2M")
        assert navigator.client.get_samplers.await_count == 2  # type: ignore[attr-defined]

    async def test_models_backend_down(
        self, async_client: AsyncClient, navigator: Navigator
    ) -> None:
        navigator.client.get_sd_models.side_effect = httpx.ConnectError("refused")  # type: ignore[attr-defined]

        response = await async_client.get("/api/models")

        assert response.status_code == 502

    async def test_samplers_limited(self, async_client: AsyncClient, navigator: Navigator) -> None:
        navigator.client.get_samplers.return_value = [  # type: ignore[attr-defined]
            {"name": f"sampler-{i}", "aliases": []} for i in range(30)
        ]

        limited = await async_client.get("/api/samplers")
        everything = await async_client.get("/api/samplers", params={"all": "true"})

        assert len(limited.json()) == 24
        assert len(everything.json()) == 30

    async def test_schedulers(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/schedulers")

        assert [s["name"] for s in response.json()] == ["automatic", "karras"]

    async def test_upscalers_hide_none(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/upscalers")

        assert [u["name"] for u in response.json()] == ["4x_NMKD-Siax_200k", "RealESRGAN_x4"]
