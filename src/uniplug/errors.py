"""Error taxonomy for registry resolution and plugin installation.

Every error carries the plugin name and the attempted operation (when known)
so the CLI can render a precise single-line message. Underlying causes are
chained with ``raise ... from``.
"""

from typing import Optional


class UniplugError(Exception):
    """Base class for all uniplug failures."""

    def __init__(
        self,
        message: str,
        plugin_name: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        self.message = message
        self.plugin_name = plugin_name
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(self.operation)
        if self.plugin_name:
            parts.append(self.plugin_name)
        prefix = " ".join(parts)
        if prefix:
            return f"{prefix}: {self.message}"
        return self.message


class NotFound(UniplugError):
    """Name unknown to the index and to the local cache."""


class MalformedData(UniplugError):
    """Fetched JSON violates the registry schema."""


class UnknownCollection(UniplugError):
    """Collection name absent from the collections file."""


class CyclicCollection(UniplugError):
    """Nested collection references form a cycle."""

    def __init__(self, cycle: list, operation: Optional[str] = "resolve") -> None:
        self.cycle = list(cycle)
        super().__init__(
            "collection cycle detected: " + " -> ".join(self.cycle),
            operation=operation,
        )


class NoArtifactForPlatform(UniplugError):
    """Release has neither the exact platform key nor ``any``."""

    def __init__(
        self,
        platform_key: str,
        available: list,
        plugin_name: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        self.platform_key = platform_key
        self.available = sorted(available)
        listed = ", ".join(self.available) or "none"
        super().__init__(
            f"no artifact for platform '{platform_key}' (available: {listed})",
            plugin_name=plugin_name,
            operation=operation,
        )


class IntegrityMismatch(UniplugError):
    """Downloaded artifact digest differs from the manifest."""

    def __init__(
        self,
        expected: str,
        actual: str,
        plugin_name: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"sha256 mismatch (expected {expected}, got {actual})",
            plugin_name=plugin_name,
            operation=operation,
        )


class DependencyCheckFailed(UniplugError):
    """A dependency probe could not be run. Advisory only."""


class InstallInProgress(UniplugError):
    """Another install/update/uninstall holds the plugin lock."""


class NotInstalled(UniplugError):
    """No LocalInstallRecord exists for the plugin."""


class NetworkError(UniplugError):
    """Transport failure talking to the registry or artifact host."""


class Cancelled(UniplugError):
    """Operation aborted by the user (interrupt or timeout)."""
