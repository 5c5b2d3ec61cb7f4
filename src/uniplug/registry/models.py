"""Registry data model: index, per-plugin manifests and collections.

All payloads are validated in full before use; a schema violation anywhere
rejects the whole document (see ``parse_index`` and friends).
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from uniplug.errors import MalformedData, NotFound

ANY_PLATFORM = "any"

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_SAFE_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


class InterfaceKind(str, Enum):
    """How a plugin is run: as a subprocess or as a loaded shared library."""

    CLI = "cli"
    NATIVE = "native"

    @classmethod
    def parse(cls, value: Any) -> "InterfaceKind":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"interface must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"unknown interface kind: {value!r}") from None


def check_plugin_name(name: str) -> str:
    """Reject names that cannot exist in the registry or could escape a directory.

    Raises:
        NotFound: The name is not a valid plugin name.
    """
    if not isinstance(name, str) or not _SAFE_NAME_RE.fullmatch(name):
        raise NotFound(f"invalid plugin name {name!r}", plugin_name=str(name), operation="resolve")
    return name


def parse_version(value: str) -> Version:
    """Parse a release version, raising ValueError on garbage."""
    try:
        return Version(value)
    except InvalidVersion:
        raise ValueError(f"invalid version: {value!r}") from None


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


class _Strict(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class Artifact(_Strict):
    """A downloadable package for one platform key."""

    url: str = Field(min_length=1)
    sha256: str

    @field_validator("sha256")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not _SHA256_RE.match(normalized):
            raise ValueError("sha256 must be 64 hex characters")
        return normalized


class Dependency(_Strict):
    """A declared runtime requirement of a release.

    ``type`` is an open tag (system, python, node, ...). When ``check`` is
    present it replaces the kind-specific probe entirely.
    """

    name: str = Field(min_length=1)
    type: str = Field(min_length=1)
    version: Optional[str] = None
    check: Optional[str] = None


class Release(_Strict):
    version: str
    uniconv_compat: str = ""
    interface: InterfaceKind
    dependencies: List[Dependency] = Field(default_factory=list)
    artifact: Dict[str, Artifact]

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        parse_version(value)
        return value

    @field_validator("interface", mode="before")
    @classmethod
    def _parse_interface(cls, value: Any) -> InterfaceKind:
        return InterfaceKind.parse(value)

    @field_validator("artifact", mode="before")
    @classmethod
    def _lower_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k).strip().lower(): v for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _check_platforms(self) -> "Release":
        keys = set(self.artifact)
        if self.interface is InterfaceKind.CLI and ANY_PLATFORM not in keys:
            raise ValueError(f"cli release {self.version} has no '{ANY_PLATFORM}' artifact")
        if self.interface is InterfaceKind.NATIVE and not (keys - {ANY_PLATFORM}):
            raise ValueError(f"native release {self.version} has no platform artifact")
        return self

    @property
    def parsed_version(self) -> Version:
        return parse_version(self.version)

    @property
    def platforms(self) -> List[str]:
        return sorted(self.artifact)


class Manifest(_Strict):
    """Full per-plugin manifest. Releases are ordered newest first."""

    name: str = Field(min_length=1)
    description: str = ""
    author: str = ""
    license: str = ""
    repository: str = ""
    keywords: List[str] = Field(default_factory=list)
    releases: List[Release] = Field(min_length=1)

    @field_validator("keywords")
    @classmethod
    def _unique_keywords(cls, value: List[str]) -> List[str]:
        return _dedupe(value)

    @model_validator(mode="after")
    def _unique_versions(self) -> "Manifest":
        seen = set()
        for release in self.releases:
            if release.version in seen:
                raise ValueError(f"duplicate release version {release.version}")
            seen.add(release.version)
        return self

    @property
    def latest(self) -> Release:
        return self.releases[0]

    def get_release(self, version: str) -> Optional[Release]:
        for release in self.releases:
            if release.version == version:
                return release
        # Tolerate "v1.2.0" and equivalent spellings
        try:
            wanted = parse_version(version.lstrip("vV"))
        except ValueError:
            return None
        for release in self.releases:
            if release.parsed_version == wanted:
                return release
        return None


class IndexEntry(_Strict):
    name: str = Field(min_length=1)
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    latest: str
    author: str = ""
    interface: InterfaceKind

    @field_validator("interface", mode="before")
    @classmethod
    def _parse_interface(cls, value: Any) -> InterfaceKind:
        return InterfaceKind.parse(value)

    @field_validator("keywords")
    @classmethod
    def _unique_keywords(cls, value: List[str]) -> List[str]:
        return _dedupe(value)

    def matches(self, query: str) -> bool:
        q = query.lower()
        if q in self.name.lower() or q in self.description.lower():
            return True
        return any(q in kw.lower() for kw in self.keywords)


class Index(_Strict):
    """Lightweight listing of every plugin and its latest version."""

    plugins: Dict[str, IndexEntry]
    updated_at: Optional[datetime] = None

    @field_validator("plugins", mode="before")
    @classmethod
    def _key_by_name(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        keyed: Dict[str, Any] = {}
        for item in value:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str):
                raise ValueError("index entry without a name")
            if name in keyed:
                raise ValueError(f"duplicate plugin name in index: {name}")
            keyed[name] = item
        return keyed

    def __contains__(self, name: str) -> bool:
        return name in self.plugins

    def get(self, name: str) -> Optional[IndexEntry]:
        return self.plugins.get(name)

    def search(self, query: str = "", interface: Optional[InterfaceKind] = None) -> List[IndexEntry]:
        results = []
        for entry in sorted(self.plugins.values(), key=lambda e: e.name):
            if interface and entry.interface is not interface:
                continue
            if query and not entry.matches(query):
                continue
            results.append(entry)
        return results


class Collection(_Strict):
    name: str = Field(min_length=1)
    description: str = ""
    plugins: List[str] = Field(default_factory=list)


class CollectionsFile(_Strict):
    version: int = 1
    collections: List[Collection] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "CollectionsFile":
        seen = set()
        for coll in self.collections:
            if coll.name in seen:
                raise ValueError(f"duplicate collection name: {coll.name}")
            seen.add(coll.name)
        return self

    def get(self, name: str) -> Optional[Collection]:
        for coll in self.collections:
            if coll.name == name:
                return coll
        return None


def _parse(model: type, data: Any, source: str, plugin_name: Optional[str] = None):
    if not isinstance(data, dict):
        raise MalformedData(
            f"{source}: expected a JSON object, got {type(data).__name__}",
            plugin_name=plugin_name,
            operation="parse",
        )
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "<root>"
        raise MalformedData(
            f"{source}: {loc}: {first.get('msg', 'invalid')} ({e.error_count()} error(s))",
            plugin_name=plugin_name,
            operation="parse",
        ) from e


def parse_index(data: Any, source: str = "index.json") -> Index:
    return _parse(Index, data, source)


def parse_manifest(data: Any, source: str = "manifest.json", name: Optional[str] = None) -> Manifest:
    manifest = _parse(Manifest, data, source, plugin_name=name)
    if name is not None and manifest.name != name:
        raise MalformedData(
            f"{source}: manifest declares name '{manifest.name}'",
            plugin_name=name,
            operation="parse",
        )
    return manifest


def parse_collections(data: Any, source: str = "collections.json") -> CollectionsFile:
    return _parse(CollectionsFile, data, source)
