"""Database models."""

from forge_navigator.models.image import Base, Image
from forge_navigator.models.known_model import KnownModel

__all__ = ["Base", "Image", "KnownModel"]
