"""Content hashing for downloaded artifacts."""

import hashlib
import io
import re
from pathlib import Path
from typing import BinaryIO, Union

CHUNK_SIZE = 1024 * 1024

_HEX64 = re.compile(r"^[0-9a-f]{64}$")

Payload = Union[bytes, bytearray, memoryview, BinaryIO, Path]


def normalize_digest(digest: str) -> str:
    """Lowercase and validate a hex sha256 digest.

    Raises:
        ValueError: If the digest is not 64 hex characters.
    """
    normalized = digest.strip().lower()
    if not _HEX64.match(normalized):
        raise ValueError(f"not a sha256 hex digest: {digest!r}")
    return normalized


def sha256_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """Hash a binary stream incrementally without buffering it."""
    h = hashlib.sha256()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def sha256_file(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    with open(path, "rb") as f:
        return sha256_stream(f, chunk_size)


def compute_digest(payload: Payload) -> str:
    if isinstance(payload, Path):
        return sha256_file(payload)
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return sha256_stream(io.BytesIO(bytes(payload)))
    return sha256_stream(payload)


def verify(payload: Payload, expected: str) -> bool:
    """Return True if ``payload`` hashes to ``expected``.

    ``payload`` may be bytes, a readable binary stream, or a file path.
    ``expected`` is compared case-insensitively.

    Raises:
        ValueError: If ``expected`` is not a valid sha256 hex digest.
    """
    return compute_digest(payload) == normalize_digest(expected)
