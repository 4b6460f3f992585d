"""Configuration module for CrateFlow."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
