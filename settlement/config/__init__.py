"""Configuration package for the settlement engine."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
