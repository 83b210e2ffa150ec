"""
Snapguard Storage Writers.

Persists validated uploads and returns the reference the rest of the
application uses to find them. Supports the local filesystem (served under
``/uploads``) and a Walrus publisher over HTTP.
"""

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from snapguard.errors import StorageFailure
from snapguard.hasher import short_hash

logger = logging.getLogger(__name__)

# Magic numbers for payloads whose filename carries no extension
IMAGE_SIGNATURES = [
    (b"\xff\xd8\xff", ".jpg"),
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"GIF87a", ".gif"),
    (b"GIF89a", ".gif"),
]

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,10}$")


@dataclass
class StoredFile:
    """Where an accepted upload ended up."""

    path: str
    url: str
    image_hash: str
    identity: str
    size: int


def sniff_image_extension(content: bytes) -> str:
    """Extension for a recognised image signature, or "" if none matches."""
    for magic, ext in IMAGE_SIGNATURES:
        if content.startswith(magic):
            return ext
    if content.startswith(b"RIFF") and content[8:12] == b"WEBP":
        return ".webp"
    return ""


def is_image(content_type: Optional[str], content: bytes) -> bool:
    """True if the upload is declared as ``image/*`` or starts with an image signature."""
    if content_type and content_type.lower().startswith("image/"):
        return True
    return bool(sniff_image_extension(content))


def resolve_extension(filename: Optional[str], content: bytes) -> str:
    """Pick the stored extension from the filename, falling back to magic bytes."""
    if filename:
        ext = Path(filename).suffix.lower()
        if _EXTENSION_RE.match(ext):
            return ext
    return sniff_image_extension(content)


def is_safe_path_component(value: str) -> bool:
    """True if ``value`` can be used as a single directory or file name."""
    return bool(value) and value not in (".", "..") and not any(
        c in value for c in ("/", "\\", "\x00")
    )


def _check_path_component(name: str, value: str) -> None:
    if not is_safe_path_component(value):
        raise StorageFailure(
            f"Invalid {name} for storage path",
            hint="Identity and hash must be plain path components.",
        )


def _check_extension(extension: str) -> str:
    if not extension:
        return ""
    extension = extension.lower()
    if not extension.startswith("."):
        extension = "." + extension
    if not _EXTENSION_RE.match(extension):
        raise StorageFailure("Invalid file extension")
    return extension


class StorageWriterInterface(ABC):
    """Abstract interface for upload storage backends."""

    @abstractmethod
    async def store(
        self, data: bytes, identity: str, image_hash: str, extension: str = ""
    ) -> StoredFile:
        """Persist ``data`` and return its reference. Raises StorageFailure."""
        pass

    @abstractmethod
    async def discard(self, stored: StoredFile) -> None:
        """Remove a stored file (best-effort rollback)."""
        pass


class LocalStorageWriter(StorageWriterInterface):
    """
    Writes uploads to ``<root>/<identity>/<image_hash><ext>``.

    The bytes go to a temporary file in the same directory which is renamed
    into place once fully written, so the returned reference never points at
    a partial file.

    Example:
        >>> writer = LocalStorageWriter("public/uploads")
        >>> stored = await writer.store(data, "0xabc", image_hash, ".jpg")
        >>> stored.url
        '/uploads/0xabc/<image_hash>.jpg'
    """

    def __init__(self, root, url_prefix: str = "/uploads"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, identity: str, image_hash: str, extension: str = "") -> Path:
        _check_path_component("identity", identity)
        _check_path_component("image hash", image_hash)
        return self.root / identity / f"{image_hash}{_check_extension(extension)}"

    def url_for(self, identity: str, image_hash: str, extension: str = "") -> str:
        return f"{self.url_prefix}/{identity}/{image_hash}{_check_extension(extension)}"

    async def store(
        self, data: bytes, identity: str, image_hash: str, extension: str = ""
    ) -> StoredFile:
        path = self.path_for(identity, image_hash, extension)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error(f"Storage write failed for {identity}/{short_hash(image_hash)}: {e}")
            raise StorageFailure()

        return StoredFile(
            path=str(path),
            url=self.url_for(identity, image_hash, extension),
            image_hash=image_hash,
            identity=identity,
            size=len(data),
        )

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def discard(self, stored: StoredFile) -> None:
        try:
            await asyncio.to_thread(Path(stored.path).unlink, True)
        except OSError as e:
            logger.warning(f"Could not discard {stored.path}: {e}")


class WalrusStorageWriter(StorageWriterInterface):
    """
    Stores uploads as Walrus blobs via a publisher's HTTP API.

    The returned URL points at the aggregator, which serves blobs by id.
    Walrus blobs are content-addressed, so ``identity`` only appears in logs.
    """

    def __init__(
        self,
        publisher_url: str,
        aggregator_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    def blob_url(self, blob_id: str) -> str:
        return f"{self.aggregator_url}/v1/blobs/{blob_id}"

    @staticmethod
    def _extract_blob_id(data: dict) -> Optional[str]:
        created = data.get("newlyCreated") or {}
        blob_id = (created.get("blobObject") or {}).get("blobId")
        if blob_id:
            return blob_id
        certified = data.get("alreadyCertified") or {}
        if certified.get("blobId"):
            return certified["blobId"]
        return (data.get("blobObject") or {}).get("blobId")

    async def store(
        self, data: bytes, identity: str, image_hash: str, extension: str = ""
    ) -> StoredFile:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.put(f"{self.publisher_url}/v1/blobs", content=data)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Walrus upload failed for {identity}/{short_hash(image_hash)}: {e}")
            raise StorageFailure()
        finally:
            if not self._client:
                await client.aclose()

        blob_id = self._extract_blob_id(payload) if isinstance(payload, dict) else None
        if not blob_id:
            logger.error(f"No blob ID in Walrus response for {short_hash(image_hash)}")
            raise StorageFailure()

        return StoredFile(
            path=blob_id,
            url=self.blob_url(blob_id),
            image_hash=image_hash,
            identity=identity,
            size=len(data),
        )

    async def discard(self, stored: StoredFile) -> None:
        # Publishers expose no delete; the blob simply stays unreferenced
        logger.info(f"Walrus blob {stored.path} left unreferenced")
