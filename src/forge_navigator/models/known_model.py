"""Locally registered checkpoints with friendly names."""

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from forge_navigator.models.image import Base


class KnownModel(Base):
    """A checkpoint the operators know about, possibly under a friendlier name."""

    __tablename__ = "models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    friendly_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_restricted: Mapped[bool] = mapped_column(Boolean, default=False)
