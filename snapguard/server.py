"""
Snapguard HTTP service.

Exposes the upload guard over HTTP for the check-in web application.

Usage:
    # Start the service
    snapguard serve

    # Or with uvicorn for production
    uvicorn snapguard.server:create_app --factory --host 0.0.0.0 --port 3000

Endpoints:
    GET  /status                            - Health check and pipeline statistics
    POST /api/upload-image-with-signature   - Signed image upload (multipart/form-data)
    GET  /uploads/...                       - Stored images (local storage backend)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from snapguard import __version__
from snapguard.config import GuardSettings
from snapguard.errors import ContentRejected, UploadError
from snapguard.freshness import FreshnessGuard
from snapguard.ledger import MemoryUploadLedger, RedisUploadLedger, UploadLedgerInterface
from snapguard.moderation import ContentClassifier
from snapguard.pipeline import UploadGuard, UploadRequest
from snapguard.storage import LocalStorageWriter, StorageWriterInterface, WalrusStorageWriter

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/upload-image-with-signature"
READ_CHUNK_SIZE = 1024 * 1024


# =============================================================================
# Pydantic Models
# =============================================================================


class StatusResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    ledger_backend: str
    storage_backend: str
    stats: dict


class UploadResponse(BaseModel):
    """Accepted upload."""

    success: bool
    imageUrl: str
    fileHash: str
    signature: str
    message: str


# =============================================================================
# Wiring
# =============================================================================


def build_ledger(settings: GuardSettings) -> UploadLedgerInterface:
    """Redis ledger when a URL is configured, otherwise process memory."""
    if settings.redis_url:
        import redis.asyncio as redis

        client = redis.Redis.from_url(settings.redis_url)
        return RedisUploadLedger(client, ttl_seconds=settings.ledger_ttl)
    return MemoryUploadLedger(ttl_seconds=settings.ledger_ttl)


def build_storage(settings: GuardSettings) -> StorageWriterInterface:
    if settings.storage_backend == "walrus":
        return WalrusStorageWriter(settings.walrus_publisher_url, settings.walrus_aggregator_url)
    if settings.storage_backend == "local":
        return LocalStorageWriter(settings.upload_root, url_prefix=settings.url_prefix)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


def build_guard(settings: GuardSettings) -> UploadGuard:
    """Create the guard and its collaborators from settings."""
    return UploadGuard(
        storage=build_storage(settings),
        ledger=build_ledger(settings),
        freshness=FreshnessGuard(window_seconds=settings.freshness_window),
        cross_identity=settings.cross_identity,
        max_upload_bytes=settings.max_upload_bytes,
    )


async def read_upload(file: UploadFile, guard: UploadGuard) -> bytes:
    """Read the uploaded file in chunks, stopping as soon as it exceeds the size limit."""
    chunks = []
    size = 0
    while True:
        chunk = await file.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        guard.check_size(size)
        chunks.append(chunk)
    return b"".join(chunks)


async def moderate(classifier: ContentClassifier, data: bytes) -> None:
    """Run the moderation pre-check. Anything but a clean verdict rejects."""
    try:
        result = await classifier.classify(data)
    except Exception as e:
        logger.error(f"Moderation classifier failed: {e}")
        raise ContentRejected(hint="Content moderation is unavailable, please retry later.")

    if not result.is_safe:
        raise ContentRejected(result.reason or None)


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(
    guard: Optional[UploadGuard] = None,
    settings: Optional[GuardSettings] = None,
    classifier: Optional[ContentClassifier] = None,
) -> FastAPI:
    """
    Build the service.

    The guard (and with it the upload ledger) is created here, once per
    application, and lives until the process exits.

    Args:
        guard: Pre-built guard (tests); built from ``settings`` when omitted.
        settings: Service settings (default: from environment).
        classifier: Optional moderation pre-check.
    """
    settings = settings or GuardSettings.from_env()
    guard = guard or build_guard(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        ledger = app.state.guard.ledger
        if isinstance(ledger, RedisUploadLedger):
            await ledger.close()

    app = FastAPI(
        title="Snapguard",
        description="Authenticated image upload guard",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.guard = guard
    app.state.classifier = classifier

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.get("/status", response_model=StatusResponse)
    async def get_status(request: Request):
        """Health check endpoint."""
        current = request.app.state.guard
        return StatusResponse(
            status="ok",
            version=__version__,
            ledger_backend=type(current.ledger).__name__,
            storage_backend=type(current.storage).__name__,
            stats=current.stats,
        )

    @app.post(UPLOAD_PATH, response_model=UploadResponse)
    async def upload_image_with_signature(
        request: Request,
        file: Optional[UploadFile] = File(None),
        signature: Optional[str] = Form(None),
        public_key: Optional[str] = Form(None, alias="publicKey"),
        message: Optional[str] = Form(None),
        user_address: Optional[str] = Form(None, alias="userAddress"),
        device_id: Optional[str] = Form(None, alias="deviceId"),
    ):
        """
        Accept a signed image upload.

        The message must be signed by ``publicKey`` and name the SHA-256 of
        ``file``. Rejections come back as ``{"error": ..., "hint"?: ...}``.
        """
        try:
            current_guard = request.app.state.guard
            data = await read_upload(file, current_guard) if file is not None else None

            current_classifier = request.app.state.classifier
            if current_classifier is not None and data:
                await moderate(current_classifier, data)

            result = await current_guard.accept(
                UploadRequest(
                    file_bytes=data,
                    signature=signature,
                    public_key=public_key,
                    message=message,
                    identity=user_address,
                    device_id=device_id,
                    filename=file.filename if file is not None else None,
                    content_type=file.content_type if file is not None else None,
                )
            )
            return result.to_response()

        except UploadError:
            raise
        except Exception as e:
            logger.error(f"Upload error: {e}")
            return JSONResponse(status_code=500, content={"error": "Upload failed"})

    storage = guard.storage
    if isinstance(storage, LocalStorageWriter):
        root = Path(storage.root)
        root.mkdir(parents=True, exist_ok=True)
        app.mount(storage.url_prefix or "/", StaticFiles(directory=str(root)), name="uploads")

    return app
