"""
Shared pytest fixtures for Snapguard tests.
"""

import time

import pytest

from snapguard.freshness import FreshnessGuard
from snapguard.ledger import MemoryUploadLedger
from snapguard.pipeline import UploadGuard, UploadRequest
from snapguard.signer import Ed25519Signer, sign_upload
from snapguard.storage import LocalStorageWriter


class FakeClock:
    """Settable clock for freshness tests."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def signer() -> Ed25519Signer:
    """Create a signer with a fresh keypair."""
    return Ed25519Signer.generate()


@pytest.fixture
def other_signer() -> Ed25519Signer:
    return Ed25519Signer.generate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(float(int(time.time())))


@pytest.fixture
def image_bytes() -> bytes:
    """Minimal JPEG-looking payload."""
    return b"\xff\xd8\xff\xe0" + b"check-in photo" * 64


@pytest.fixture
def upload_root(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def storage(upload_root) -> LocalStorageWriter:
    return LocalStorageWriter(upload_root, url_prefix="/uploads")


@pytest.fixture
def ledger() -> MemoryUploadLedger:
    return MemoryUploadLedger()


@pytest.fixture
def guard(storage, ledger, clock) -> UploadGuard:
    """Guard wired to temp storage, a memory ledger and the fake clock."""
    return UploadGuard(
        storage=storage,
        ledger=ledger,
        freshness=FreshnessGuard(window_seconds=300, clock=clock),
        max_upload_bytes=1024 * 1024,
    )


@pytest.fixture
def make_request(clock):
    """Build a correctly signed UploadRequest."""

    def _make(
        data: bytes,
        identity: str,
        signer: Ed25519Signer,
        device_id=None,
        declared_device_id=None,
        filename="photo.jpg",
        content_type="image/jpeg",
        now=None,
    ) -> UploadRequest:
        signed = sign_upload(
            data, identity, signer, device_id=device_id, now=clock.now if now is None else now
        )
        return UploadRequest(
            file_bytes=data,
            signature=signed.signature,
            public_key=signed.public_key,
            message=signed.message,
            identity=identity,
            device_id=declared_device_id if declared_device_id is not None else device_id,
            filename=filename,
            content_type=content_type,
        )

    return _make
