"""
Snapguard - Authenticated image uploads for on-chain check-ins.

This package accepts a captured photo together with a detached Ed25519
signature over a structured message, and only stores the photo when the
signature, timestamp, content hash and optional device binding all check out.
"""

__version__ = "1.0.0"

# Pipeline
from .pipeline import UploadGuard, UploadRequest, UploadResult, PipelineState
from .errors import (
    UploadError,
    MissingInput,
    MalformedMessage,
    InvalidSignature,
    TimestampExpired,
    HashMismatch,
    DuplicateUpload,
    DeviceMismatch,
    IdentityMismatch,
    StorageFailure,
    PayloadTooLarge,
    UnsupportedMedia,
    ContentRejected,
)

# Components
from .hasher import digest
from .message import ParsedMessage, encode, encode_with_device, parse
from .verifier import SignatureVerifier, verify_signature
from .freshness import FreshnessGuard
from .ledger import UploadRecord, UploadLedgerInterface, MemoryUploadLedger, RedisUploadLedger
from .device import DeviceBinder, device_fingerprint
from .storage import StoredFile, StorageWriterInterface, LocalStorageWriter, WalrusStorageWriter
from .config import CrossIdentityPolicy, GuardSettings

# Client side
from .signer import Ed25519Signer, SignResult, SignedUpload, sign_upload


# HTTP layers (lazy imports so the core does not require the web stack)
def __getattr__(name):
    """Lazy loading of the service and client."""
    if name == "create_app":
        from .server import create_app

        return create_app
    elif name in ("UploadClient", "UploadRejectedError", "UploadConnectionError"):
        from . import client

        return getattr(client, name)
    raise AttributeError(f"module 'snapguard' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Pipeline
    "UploadGuard",
    "UploadRequest",
    "UploadResult",
    "PipelineState",
    # Errors
    "UploadError",
    "MissingInput",
    "MalformedMessage",
    "InvalidSignature",
    "TimestampExpired",
    "HashMismatch",
    "DuplicateUpload",
    "DeviceMismatch",
    "IdentityMismatch",
    "StorageFailure",
    "PayloadTooLarge",
    "UnsupportedMedia",
    "ContentRejected",
    # Components
    "digest",
    "ParsedMessage",
    "encode",
    "encode_with_device",
    "parse",
    "SignatureVerifier",
    "verify_signature",
    "FreshnessGuard",
    "UploadRecord",
    "UploadLedgerInterface",
    "MemoryUploadLedger",
    "RedisUploadLedger",
    "DeviceBinder",
    "device_fingerprint",
    "StoredFile",
    "StorageWriterInterface",
    "LocalStorageWriter",
    "WalrusStorageWriter",
    "CrossIdentityPolicy",
    "GuardSettings",
    # Client side
    "Ed25519Signer",
    "SignResult",
    "SignedUpload",
    "sign_upload",
    # HTTP (lazy loaded)
    "create_app",
    "UploadClient",
    "UploadRejectedError",
    "UploadConnectionError",
]
