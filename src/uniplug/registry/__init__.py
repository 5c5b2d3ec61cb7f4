"""Registry access: index, per-plugin manifests, and collections."""

from .cache import DocumentCache
from .collections import CollectionResolver, is_collection_ref
from .http import RegistryClient
from .models import (
    ANY_PLATFORM,
    Artifact,
    Collection,
    CollectionsFile,
    Dependency,
    Index,
    IndexEntry,
    InterfaceKind,
    Manifest,
    Release,
)
from .store import ManifestStore

__all__ = [
    "ANY_PLATFORM",
    "Artifact",
    "Collection",
    "CollectionResolver",
    "CollectionsFile",
    "Dependency",
    "DocumentCache",
    "Index",
    "IndexEntry",
    "InterfaceKind",
    "Manifest",
    "ManifestStore",
    "RegistryClient",
    "Release",
    "is_collection_ref",
]
