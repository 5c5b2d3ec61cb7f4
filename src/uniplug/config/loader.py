"""YAML configuration file loading with Pydantic validation."""

import os
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .models import DEFAULT_HOME, UniplugConfig

T = TypeVar("T", bound=BaseModel)

ENV_HOME = "UNIPLUG_HOME"
ENV_REGISTRY = "UNIPLUG_REGISTRY_URL"


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


def load_yaml(path: Path) -> dict:
    """Load a YAML file and return its contents as a dict.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            return data
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_config(path: Path, model_class: type[T]) -> T:
    """Load and validate a YAML config file against a Pydantic model.

    Raises:
        ConfigError: If validation fails.
    """
    data = load_yaml(path)
    try:
        return model_class(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed for {path}: {e}") from e


def default_config_path() -> Path:
    home = os.environ.get(ENV_HOME)
    base = Path(home) if home else DEFAULT_HOME
    return base / "config.yaml"


def load_settings(path: Path | None = None, **overrides) -> UniplugConfig:
    """Build the effective client settings.

    Precedence, lowest first: model defaults, the YAML file (explicit
    ``path`` or ``~/.uniplug/config.yaml`` when present), environment
    variables, then non-None keyword overrides from the CLI.

    Raises:
        ConfigError: If an explicit file is missing or any value is invalid.
    """
    data: dict = {}
    if path is not None:
        data.update(load_yaml(path))
    else:
        candidate = default_config_path()
        if candidate.exists():
            data.update(load_yaml(candidate))

    if os.environ.get(ENV_HOME):
        data.setdefault("data_dir", os.environ[ENV_HOME])
    if os.environ.get(ENV_REGISTRY):
        data["registry_url"] = os.environ[ENV_REGISTRY]

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return UniplugConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e
