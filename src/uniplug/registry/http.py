"""HTTP transport for registry documents and artifact downloads.

Manifest fetches retry transient failures with exponential backoff.
Artifact downloads are streamed to disk and never retried; the caller
cleans up staging and surfaces the error immediately.
"""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import httpx

from uniplug import __version__
from uniplug.errors import Cancelled, NetworkError, NotFound

logger = logging.getLogger(__name__)

USER_AGENT = f"uniplug/{__version__}"
CHUNK_SIZE = 64 * 1024

# Worth another attempt: rate limiting and server-side errors
_RETRY_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class FetchResult:
    """Outcome of a conditional GET."""

    status_code: int
    body: bytes = b""
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


class RegistryClient:
    """Thin httpx wrapper used by ManifestStore and InstallEngine."""

    def __init__(
        self,
        timeout: float = 30.0,
        download_timeout: float = 600.0,
        retries: int = 2,
        backoff_base: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: float | None = None) -> httpx.Client:
        """Create an httpx client with configured defaults."""
        return httpx.Client(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout or self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> FetchResult:
        """GET a registry document, revalidating against cache validators.

        Returns:
            FetchResult with status 200 (fresh body) or 304 (not modified).

        Raises:
            NotFound: The registry answered 404.
            NetworkError: Transport failure or error status after all retries.
        """
        headers = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        last_error: Exception | None = None
        attempts = self.retries + 1
        for attempt in range(attempts):
            try:
                with self._client() as client:
                    resp = client.get(url, headers=headers)
                if resp.status_code == 304:
                    return FetchResult(status_code=304)
                if resp.status_code == 404:
                    raise NotFound(f"{url} not found on registry", operation="fetch")
                if resp.status_code in _RETRY_STATUS:
                    last_error = httpx.HTTPStatusError(
                        f"HTTP {resp.status_code}", request=resp.request, response=resp
                    )
                else:
                    resp.raise_for_status()
                    return FetchResult(
                        status_code=resp.status_code,
                        body=resp.content,
                        etag=resp.headers.get("ETag"),
                        last_modified=resp.headers.get("Last-Modified"),
                    )
            except httpx.HTTPStatusError as e:
                raise NetworkError(
                    f"{url} returned HTTP {e.response.status_code}", operation="fetch"
                ) from e
            except httpx.TransportError as e:
                last_error = e

            if attempt < attempts - 1:
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(
                    f"Fetch of {url} failed (attempt {attempt + 1}/{attempts}): "
                    f"{last_error}; retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        raise NetworkError(
            f"could not fetch {url} after {attempts} attempt(s)", operation="fetch"
        ) from last_error

    def download(
        self,
        url: str,
        dest: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """Stream ``url`` into ``dest``.

        Returns:
            Number of bytes written.

        Raises:
            NetworkError: On any transport failure or error status.
            Cancelled: If ``cancel_event`` is set mid-transfer.
        """
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return self._copy_local(Path(unquote(parsed.path)), dest, cancel_event)

        written = 0
        try:
            with self._client(timeout=self.download_timeout) as client:
                with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with open(dest, "wb") as f:
                        for chunk in resp.iter_bytes(CHUNK_SIZE):
                            if cancel_event is not None and cancel_event.is_set():
                                raise Cancelled(f"download of {url} cancelled", operation="download")
                            f.write(chunk)
                            written += len(chunk)
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"{url} returned HTTP {e.response.status_code}", operation="download"
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"download of {url} failed: {e}", operation="download") from e

        logger.debug(f"Downloaded {written} bytes from {url}")
        return written

    def _copy_local(
        self,
        source: Path,
        dest: Path,
        cancel_event: Optional[threading.Event],
    ) -> int:
        """Artifacts on a local mirror (file:// URLs)."""
        written = 0
        try:
            with open(source, "rb") as src, open(dest, "wb") as out:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise Cancelled(f"copy of {source} cancelled", operation="download")
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
        except OSError as e:
            raise NetworkError(f"cannot read {source}: {e}", operation="download") from e
        return written
