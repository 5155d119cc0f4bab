"""Shared pydantic model base classes."""

from .base import BaseModelConfig

__all__ = ["BaseModelConfig"]
