"""Forge Navigator - a queueing gateway for a Stable Diffusion Forge backend."""

__version__ = "0.1.0"
