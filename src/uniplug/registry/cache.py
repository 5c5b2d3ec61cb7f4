"""On-disk cache for registry documents.

Each entry is keyed by the source URL and stored as two files::

    <cache_dir>/<key>.json        raw response body
    <cache_dir>/<key>.meta.json   {url, etag, last_modified, fetched_at}

Writes are atomic (temp file then rename) so a crash never leaves a
half-written body behind a valid meta file.
"""

import hashlib
import json
import logging
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    url: str
    fetched_at: float
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)


class DocumentCache:
    """Persist registry responses with their HTTP validators."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    @staticmethod
    def _key(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]

    def _body_path(self, url: str) -> Path:
        return self.cache_dir / f"{self._key(url)}.json"

    def _meta_path(self, url: str) -> Path:
        return self.cache_dir / f"{self._key(url)}.meta.json"

    def _atomic_write(self, path: Path, data: bytes) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
        try:
            with open(fd, "wb") as f:
                f.write(data)
            Path(tmp_path).replace(path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def has(self, url: str) -> bool:
        return self._body_path(url).exists() and self._meta_path(url).exists()

    def load(self, url: str) -> Optional[Tuple[CacheEntry, bytes]]:
        """Return the cached entry and body, or None when absent or unreadable."""
        body_path = self._body_path(url)
        meta_path = self._meta_path(url)
        if not (body_path.exists() and meta_path.exists()):
            return None
        try:
            meta = json.loads(meta_path.read_text())
            entry = CacheEntry(**meta)
            body = body_path.read_bytes()
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache entry for {url}: {e}")
            return None
        if entry.url != url:
            return None
        return entry, body

    def store(
        self,
        url: str,
        body: bytes,
        fetched_at: float,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> CacheEntry:
        entry = CacheEntry(url=url, fetched_at=fetched_at, etag=etag, last_modified=last_modified)
        self._atomic_write(self._body_path(url), body)
        self._atomic_write(self._meta_path(url), json.dumps(asdict(entry), indent=2).encode())
        return entry

    def touch(self, entry: CacheEntry, fetched_at: float) -> CacheEntry:
        """Record a successful revalidation (HTTP 304)."""
        entry.fetched_at = fetched_at
        self._atomic_write(self._meta_path(entry.url), json.dumps(asdict(entry), indent=2).encode())
        return entry

    def invalidate(self, url: str) -> None:
        self._body_path(url).unlink(missing_ok=True)
        self._meta_path(url).unlink(missing_ok=True)

    def clear(self) -> int:
        """Remove every cached document. Returns the number of entries removed."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for meta in self.cache_dir.glob("*.meta.json"):
            key = meta.name[: -len(".meta.json")]
            meta.unlink(missing_ok=True)
            (self.cache_dir / f"{key}.json").unlink(missing_ok=True)
            removed += 1
        return removed
