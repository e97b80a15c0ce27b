"""Configuration module for CareSync."""

from caresync.config.base import Settings
from caresync.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
