"""
Content-addressing digests for uploaded images.

The digest is both the tamper-evidence binding inside the signed message and
the deduplication key of the upload ledger.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Union

CHUNK_SIZE = 1024 * 1024

# Payloads above this are hashed in a worker thread
ASYNC_THRESHOLD = 256 * 1024


def digest(data: bytes) -> str:
    """Return the SHA-256 of ``data`` as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def digest_file(path: Union[str, Path]) -> str:
    """Hash a file on disk in chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


async def digest_async(data: bytes) -> str:
    """Hash without stalling the event loop on large payloads."""
    if len(data) < ASYNC_THRESHOLD:
        return digest(data)
    return await asyncio.to_thread(digest, data)


def short_hash(image_hash: str, length: int = 12) -> str:
    """Truncated hash for log lines."""
    if not image_hash:
        return "<none>"
    return image_hash[:length]
