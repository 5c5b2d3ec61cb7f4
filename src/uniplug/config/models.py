"""Pydantic models for uniplug configuration."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

DEFAULT_REGISTRY_URL = "https://raw.githubusercontent.com/uniconv/registry/main/"
DEFAULT_HOME = Path.home() / ".uniplug"


class UniplugConfig(BaseModel):
    """Client settings.

    Attributes:
        registry_url: Registry base URL, local directory, or file:// URL.
        data_dir: Root of installed plugins, install records, staging and locks.
        cache_dir: Manifest cache directory. Defaults to ``<data_dir>/cache``.
        cache_max_age: Seconds a cached manifest is served without revalidation.
        timeout: Timeout in seconds for manifest requests.
        download_timeout: Timeout in seconds for artifact downloads.
        retries: Extra attempts for transient manifest fetch failures.
        backoff_base: First retry delay in seconds, doubled per attempt.
        max_workers: Concurrent plugin installs when installing a collection.
        platform: Platform key override (e.g. "linux-x86_64").
        client_version: uniconv version used to filter releases by
            ``uniconv_compat``. Empty disables the filter.
        check_timeout: Timeout in seconds for each dependency probe.
    """

    registry_url: str = DEFAULT_REGISTRY_URL
    data_dir: Path = DEFAULT_HOME
    cache_dir: Path | None = None
    cache_max_age: float = Field(default=3600.0, ge=0.0)
    timeout: float = Field(default=30.0, gt=0.0)
    download_timeout: float = Field(default=600.0, gt=0.0)
    retries: int = Field(default=2, ge=0)
    backoff_base: float = Field(default=0.5, ge=0.0)
    max_workers: int = Field(default=4, ge=1, le=32)
    platform: str | None = None
    client_version: str = ""
    check_timeout: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _default_cache_dir(self) -> "UniplugConfig":
        if self.cache_dir is None:
            self.cache_dir = self.data_dir / "cache"
        return self

    @property
    def plugins_dir(self) -> Path:
        return self.data_dir / "plugins"

    @property
    def records_dir(self) -> Path:
        return self.data_dir / "records"

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / "staging"

    @property
    def locks_dir(self) -> Path:
        return self.data_dir / "locks"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"
