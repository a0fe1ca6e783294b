"""Image row: the persisted artifact of a generation job."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""


class Image(Base):
    """A generated image, keyed by the job id that produced it.

    The row is allocated when a task is admitted, before any generation
    happens, so ``image_data`` stays empty until the job finishes.
    """

    __tablename__ = "images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Base64 encoded PNG payloads, as returned by the backend
    image_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Base64 encoded JSON from the backend's png-info endpoint
    info_data64: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
