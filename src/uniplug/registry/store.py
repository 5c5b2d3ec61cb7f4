"""Two-tier manifest access: the index, then per-plugin manifests.

The index and each manifest are independently cacheable documents. A stale
cache entry is revalidated once it exceeds ``max_age``; if revalidation
fails on the network the stale copy is served instead of failing.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import unquote, urljoin, urlparse

from uniplug.errors import MalformedData, NetworkError, NotFound

from .cache import DocumentCache
from .http import RegistryClient
from .models import (
    CollectionsFile,
    Index,
    Manifest,
    check_plugin_name,
    parse_collections,
    parse_index,
    parse_manifest,
)

logger = logging.getLogger(__name__)

INDEX_PATH = "index.json"
COLLECTIONS_PATH = "collections.json"

T = TypeVar("T")


def manifest_path(name: str) -> str:
    return f"plugins/{name}/manifest.json"


def _local_root(source: str) -> Optional[Path]:
    """Return the registry directory for local sources, None for HTTP."""
    parsed = urlparse(source)
    if parsed.scheme in ("http", "https"):
        return None
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(source).expanduser()


class ManifestStore:
    """Load and cache registry documents from a remote or local source."""

    def __init__(
        self,
        source: str,
        cache: DocumentCache,
        client: Optional[RegistryClient] = None,
        max_age: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.cache = cache
        self.client = client or RegistryClient()
        self.max_age = max_age
        self._clock = clock
        self._local = _local_root(source)
        self._base_url = source if source.endswith("/") else source + "/"
        self._lock = threading.RLock()
        self._index: Optional[Index] = None
        self._collections: Optional[CollectionsFile] = None
        self._manifests: dict[str, Manifest] = {}

    @property
    def is_local(self) -> bool:
        return self._local is not None

    def url_for(self, relpath: str) -> str:
        if self._local is not None:
            return str(self._local / relpath)
        return urljoin(self._base_url, relpath)

    # ------------------------------------------------------------------
    # Public lookups
    # ------------------------------------------------------------------

    def get_index(self, refresh: bool = False) -> Index:
        """Return the plugin index, replaced wholesale on every refresh."""
        with self._lock:
            if self._index is None or refresh:
                self._index = self._load(INDEX_PATH, parse_index, refresh=refresh)
            return self._index

    def get_collections(self, refresh: bool = False) -> CollectionsFile:
        with self._lock:
            if self._collections is None or refresh:
                self._collections = self._load(COLLECTIONS_PATH, parse_collections, refresh=refresh)
            return self._collections

    def get_manifest(self, name: str, refresh: bool = False) -> Manifest:
        """Return the full manifest for ``name``.

        Raises:
            NotFound: ``name`` is not a valid plugin name, or is absent from
                the index and not cached.
            MalformedData: The manifest violates the registry schema.
            NetworkError: Neither the registry nor the cache can answer.
        """
        check_plugin_name(name)
        with self._lock:
            if name in self._manifests and not refresh:
                return self._manifests[name]

            relpath = manifest_path(name)
            try:
                index: Optional[Index] = self.get_index(refresh=refresh)
            except NetworkError as e:
                logger.warning(f"Index unavailable while resolving {name}: {e}")
                index = None

            if index is not None and name not in index:
                if not self._has_cached(relpath):
                    raise NotFound(
                        "plugin is not listed in the registry index",
                        plugin_name=name,
                        operation="resolve",
                    )
                logger.warning(f"{name} is no longer in the index; using cached manifest")

            def _parse(data: Any, source: str) -> Manifest:
                return parse_manifest(data, source, name=name)

            try:
                manifest = self._load(relpath, _parse, refresh=refresh, plugin_name=name)
            except NotFound as e:
                raise NotFound(
                    "plugin manifest not found in registry",
                    plugin_name=name,
                    operation="resolve",
                ) from e
            self._manifests[name] = manifest
            return manifest

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _has_cached(self, relpath: str) -> bool:
        if self._local is not None:
            return False
        return self.cache.has(self.url_for(relpath))

    def _decode(self, body: bytes, source: str, plugin_name: Optional[str]) -> Any:
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedData(
                f"{source}: invalid JSON: {e}", plugin_name=plugin_name, operation="parse"
            ) from e

    def _load(
        self,
        relpath: str,
        parser: Callable[[Any, str], T],
        refresh: bool = False,
        plugin_name: Optional[str] = None,
    ) -> T:
        if self._local is not None:
            return self._load_local(relpath, parser, plugin_name)

        url = self.url_for(relpath)
        now = self._clock()
        cached = self.cache.load(url)
        cached_value: Optional[T] = None
        if cached is not None:
            entry, body = cached
            try:
                cached_value = parser(self._decode(body, relpath, plugin_name), relpath)
            except MalformedData as e:
                logger.warning(f"Discarding invalid cache entry for {url}: {e}")
                self.cache.invalidate(url)
                cached = None

        if cached is not None and not refresh and entry.age(now) < self.max_age:
            logger.debug(f"Cache hit for {url} (age {entry.age(now):.0f}s)")
            return cached_value

        try:
            result = self.client.fetch(
                url,
                etag=entry.etag if cached is not None else None,
                last_modified=entry.last_modified if cached is not None else None,
            )
        except NetworkError as e:
            if cached is not None:
                logger.warning(f"Revalidation of {url} failed, serving stale cache: {e}")
                return cached_value
            raise NetworkError(
                f"registry unreachable and no cached copy of {relpath}",
                plugin_name=plugin_name,
                operation="fetch",
            ) from e

        if result.not_modified and cached is not None:
            self.cache.touch(entry, now)
            return cached_value

        value = parser(self._decode(result.body, relpath, plugin_name), relpath)
        self.cache.store(url, result.body, now, etag=result.etag, last_modified=result.last_modified)
        return value

    def _load_local(
        self,
        relpath: str,
        parser: Callable[[Any, str], T],
        plugin_name: Optional[str],
    ) -> T:
        path = self._local / relpath
        try:
            body = path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"{path} does not exist", plugin_name=plugin_name, operation="fetch") from None
        except OSError as e:
            raise NetworkError(f"cannot read {path}: {e}", plugin_name=plugin_name, operation="fetch") from e
        return parser(self._decode(body, relpath, plugin_name), relpath)
