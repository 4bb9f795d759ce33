"""Configuration module for GPU DevBox."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
