"""Platform detection and artifact selection."""

import logging
import platform

from uniplug.errors import NoArtifactForPlatform
from uniplug.registry.models import ANY_PLATFORM, Artifact, Release

logger = logging.getLogger(__name__)

_OS_NAMES = {
    "linux": "linux",
    "darwin": "darwin",
    "windows": "windows",
}

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86-64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "i386": "x86",
    "i686": "x86",
}


def normalize_arch(machine: str) -> str:
    machine = machine.strip().lower()
    return _ARCH_ALIASES.get(machine, machine)


def current_platform_key() -> str:
    """Return the platform key for this machine, e.g. ``linux-x86_64``."""
    system = platform.system().lower()
    os_name = _OS_NAMES.get(system, system or "unknown")
    return f"{os_name}-{normalize_arch(platform.machine())}"


def select_artifact(release: Release, platform_key: str, plugin_name: str | None = None) -> Artifact:
    """Pick the artifact for ``platform_key``.

    Exact key first, then ``any``. A different concrete platform's artifact
    is never chosen.

    Raises:
        NoArtifactForPlatform: Neither key is present.
    """
    key = platform_key.strip().lower()
    artifact = release.artifact.get(key)
    if artifact is not None:
        return artifact
    artifact = release.artifact.get(ANY_PLATFORM)
    if artifact is not None:
        logger.debug(f"No {key} artifact for {plugin_name or 'release'} {release.version}; using '{ANY_PLATFORM}'")
        return artifact
    raise NoArtifactForPlatform(
        key,
        list(release.artifact),
        plugin_name=plugin_name,
        operation="select",
    )
