"""Relational storage for generated images, previews and metadata."""

import base64
import json
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forge_navigator.core.database import async_session_factory
from forge_navigator.core.exceptions import DuplicateJobError, PersistenceError
from forge_navigator.models.image import Image
from forge_navigator.models.known_model import KnownModel
from forge_navigator.models.task import Task

logger = structlog.get_logger()


def encode_metadata(info: dict[str, Any]) -> str:
    """Serialize png-info metadata for the ``info_data64`` column."""
    return base64.b64encode(json.dumps(info).encode("utf-8")).decode("ascii")


def decode_metadata(data64: str) -> dict[str, Any]:
    result: dict[str, Any] = json.loads(base64.b64decode(data64).decode("utf-8"))
    return result


class ImageStore:
    """Persists job rows and the images produced for them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.session_factory = session_factory or async_session_factory

    async def create_job_record(self, task: Task) -> Image:
        """Reserve the row a task's final image will be written into.

        Args:
            task: The task being admitted

        Returns:
            The created image row

        Raises:
            DuplicateJobError: A record for this job id already exists
        """
        image = Image(id=task.job_id, owner_id=task.owner_id, category_id=task.category_id)
        async with self.session_factory() as session:
            session.add(image)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning("Duplicate job id", job_id=task.job_id, error=str(e.orig))
                raise DuplicateJobError(task.job_id) from e
            await session.refresh(image)

        logger.info("Created image record", job_id=task.job_id, owner_id=task.owner_id)
        return image

    async def write_final_image(self, job_id: str, image: str | None) -> None:
        """Store the finished image for a job.

        Raises:
            PersistenceError: If there is nothing to write, the row is gone,
                or the database rejects the update.
        """
        if not image:
            raise PersistenceError("Image is null or empty")
        if not job_id:
            raise PersistenceError("Job id is null or empty")

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Image).where(Image.id == job_id).values(image_data=image)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to write image", job_id=job_id, error=str(e))
            raise PersistenceError(str(e)) from e

        if result.rowcount == 0:
            raise PersistenceError(f"No image record exists for job {job_id}")
        logger.info("Stored final image", job_id=job_id)

    async def write_preview(self, job_id: str, preview: str) -> None:
        """Overwrite the live preview for a job."""
        async with self.session_factory() as session:
            await session.execute(
                update(Image).where(Image.id == job_id).values(preview_data=preview)
            )
            await session.commit()

    async def get_image_by_id(self, job_id: str) -> Image | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Image).where(Image.id == job_id))
            return result.scalar_one_or_none()

    async def get_image_metadata(self, job_id: str) -> dict[str, Any] | None:
        """Return cached png-info metadata, or None if nothing is cached."""
        image = await self.get_image_by_id(job_id)
        if image is None or not image.info_data64:
            return None
        return decode_metadata(image.info_data64)

    async def cache_image_metadata(self, job_id: str, info: dict[str, Any]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Image).where(Image.id == job_id).values(info_data64=encode_metadata(info))
            )
            await session.commit()
        logger.debug("Cached image metadata", job_id=job_id)

    async def delete_image_record(self, job_id: str) -> bool:
        """Delete a job's row. Returns whether a row was removed."""
        async with self.session_factory() as session:
            result = await session.execute(delete(Image).where(Image.id == job_id))
            await session.commit()
        deleted = bool(result.rowcount)
        logger.info("Deleted image record", job_id=job_id, deleted=deleted)
        return deleted

    async def list_known_models(self) -> list[KnownModel]:
        async with self.session_factory() as session:
            result = await session.execute(select(KnownModel).order_by(KnownModel.model_name))
            return list(result.scalars().all())
