"""Configuration loading for uniplug."""

from .loader import ConfigError, load_config, load_settings
from .models import UniplugConfig

__all__ = ["ConfigError", "UniplugConfig", "load_config", "load_settings"]
