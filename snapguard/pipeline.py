"""
Snapguard Upload Pipeline - Decides whether a signed upload is accepted.

Checks run strictly in order and stop at the first failure:

    RECEIVED -> SIGNATURE_CHECKED -> MESSAGE_PARSED -> TIMESTAMP_CHECKED
             -> HASH_BOUND -> DUPLICATE_CHECKED -> DEVICE_CHECKED -> STORED

Nothing is written to the ledger or storage before DEVICE_CHECKED. The
duplicate check, device check, ledger claim and storage write run under a
per-key lock so two identical requests cannot both pass the duplicate check.
The ledger claim is an atomic insert-if-absent, which extends the guarantee to
several guards sharing one ledger. A claim whose storage write fails is
released again.
"""

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Hashable, Optional

from snapguard import message as message_codec
from snapguard.config import CrossIdentityPolicy
from snapguard.device import DeviceBinder
from snapguard.errors import (
    DeviceMismatch,
    DuplicateUpload,
    HashMismatch,
    IdentityMismatch,
    InvalidSignature,
    MalformedMessage,
    MissingInput,
    PayloadTooLarge,
    StorageFailure,
    TimestampExpired,
    UnsupportedMedia,
    UploadError,
)
from snapguard.freshness import FreshnessGuard
from snapguard.hasher import digest_async, short_hash
from snapguard.ledger import MemoryUploadLedger, UploadLedgerInterface, UploadRecord
from snapguard.locks import KeyedLock
from snapguard.storage import (
    StorageWriterInterface,
    StoredFile,
    is_image,
    is_safe_path_component,
    resolve_extension,
)
from snapguard.verifier import SignatureVerifier

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Image uploaded successfully with signature verification"


class PipelineState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    MESSAGE_PARSED = "message_parsed"
    TIMESTAMP_CHECKED = "timestamp_checked"
    HASH_BOUND = "hash_bound"
    DUPLICATE_CHECKED = "duplicate_checked"
    DEVICE_CHECKED = "device_checked"
    STORED = "stored"
    REJECTED = "rejected"


@dataclass
class UploadRequest:
    """One incoming upload, exactly as submitted."""

    file_bytes: Optional[bytes]
    signature: Optional[str]
    public_key: Optional[str]
    message: Optional[str]
    identity: Optional[str] = None
    device_id: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class UploadResult:
    """An accepted upload."""

    image_url: str
    file_hash: str
    signature: str
    message: str
    stored: StoredFile
    record: UploadRecord
    state: PipelineState = PipelineState.STORED

    def to_response(self) -> dict:
        """Body of the JSON success response."""
        return {
            "success": True,
            "imageUrl": self.image_url,
            "fileHash": self.file_hash,
            "signature": self.signature,
            "message": SUCCESS_MESSAGE,
        }


class UploadGuard:
    """
    Runs the authenticated upload pipeline.

    The ledger and storage are injected so the same guard runs against an
    in-memory ledger in tests and a durable one in production. Create one
    guard at service startup and reuse it for every request.

    Example:
        >>> guard = UploadGuard(storage=LocalStorageWriter("public/uploads"))
        >>> result = await guard.accept(UploadRequest(
        ...     file_bytes=data, signature=sig, public_key=pk,
        ...     message=msg, identity="0xabc",
        ... ))
        >>> result.image_url
        '/uploads/0xabc/<hash>.jpg'
    """

    def __init__(
        self,
        storage: StorageWriterInterface,
        ledger: Optional[UploadLedgerInterface] = None,
        verifier: Optional[SignatureVerifier] = None,
        freshness: Optional[FreshnessGuard] = None,
        cross_identity: CrossIdentityPolicy = CrossIdentityPolicy.ALLOW,
        max_upload_bytes: Optional[int] = None,
    ):
        """
        Initialize the guard.

        Args:
            storage: Where accepted files are written.
            ledger: Record of accepted uploads (default: in-memory, never expires).
            verifier: Signature verifier (default: Ed25519).
            freshness: Timestamp window check (default: 300 seconds).
            cross_identity: Whether another identity may upload an already-seen image.
            max_upload_bytes: Largest accepted payload, None for no limit.
        """
        self._storage = storage
        self._ledger = ledger if ledger is not None else MemoryUploadLedger()
        self._verifier = verifier or SignatureVerifier()
        self._freshness = freshness or FreshnessGuard()
        self._cross_identity = CrossIdentityPolicy(cross_identity)
        self._max_upload_bytes = max_upload_bytes
        self._locks = KeyedLock()
        self._stats: Dict[str, int] = {"requests": 0, "accepted": 0, "rejected": 0}

    @property
    def ledger(self) -> UploadLedgerInterface:
        return self._ledger

    @property
    def storage(self) -> StorageWriterInterface:
        return self._storage

    @property
    def max_upload_bytes(self) -> Optional[int]:
        return self._max_upload_bytes

    def check_size(self, size: int) -> None:
        """Raise PayloadTooLarge if ``size`` bytes exceeds the configured limit."""
        if self._max_upload_bytes and size > self._max_upload_bytes:
            raise PayloadTooLarge(
                hint=f"Images must be at most {self._max_upload_bytes} bytes.",
            )

    async def accept(self, request: UploadRequest) -> UploadResult:
        """
        Validate and store an upload.

        Returns:
            UploadResult for the stored file.

        Raises:
            UploadError: The first failed check; ``error.state`` is the last
                state reached before the rejection.
        """
        self._stats["requests"] += 1
        progress = {"state": PipelineState.RECEIVED, "hash": None, "identity": None}
        try:
            result = await self._run(request, progress)
        except UploadError as e:
            if e.state is None:
                e.state = progress["state"]
            self._record_rejection(e, progress["identity"] or request.identity, progress["hash"])
            raise

        self._stats["accepted"] += 1
        logger.info(f"[SUCCESS] Image uploaded by {result.stored.identity}: {result.image_url}")
        return result

    async def _run(self, request: UploadRequest, progress: dict) -> UploadResult:
        def advance(state: PipelineState) -> None:
            progress["state"] = state

        # RECEIVED
        if not request.file_bytes:
            raise MissingInput("No file provided")
        if not request.signature or not request.public_key or not request.message:
            raise MissingInput()
        self.check_size(len(request.file_bytes))
        if not is_image(request.content_type, request.file_bytes):
            raise UnsupportedMedia()

        if not self._verifier.verify(request.message, request.signature, request.public_key):
            raise InvalidSignature()
        advance(PipelineState.SIGNATURE_CHECKED)

        parsed = message_codec.parse(request.message)
        if parsed is None:
            raise MalformedMessage()
        progress["hash"] = parsed.image_hash
        progress["identity"] = parsed.identity
        if request.identity and request.identity != parsed.identity:
            raise IdentityMismatch()
        if not is_safe_path_component(parsed.identity):
            raise MalformedMessage("Invalid identity in message")
        identity = parsed.identity
        advance(PipelineState.MESSAGE_PARSED)

        if not self._freshness.is_fresh(parsed.timestamp):
            raise TimestampExpired()
        advance(PipelineState.TIMESTAMP_CHECKED)

        file_hash = await digest_async(request.file_bytes)
        if not hmac.compare_digest(file_hash.encode(), parsed.image_hash.lower().encode("utf-8")):
            raise HashMismatch()
        progress["hash"] = file_hash
        advance(PipelineState.HASH_BOUND)

        extension = resolve_extension(request.filename, request.file_bytes)

        async with self._locks.hold(self._lock_key(file_hash, identity)):
            if await self._ledger.is_duplicate(file_hash, identity):
                raise DuplicateUpload()
            if self._cross_identity is CrossIdentityPolicy.REJECT:
                if await self._ledger.identities_for(file_hash):
                    raise DuplicateUpload()
            advance(PipelineState.DUPLICATE_CHECKED)

            if not DeviceBinder.matches(request.device_id, parsed.device_id):
                raise DeviceMismatch()
            advance(PipelineState.DEVICE_CHECKED)

            # The claim is the cross-process guard: another guard sharing the
            # ledger may have passed the duplicate check at the same time
            try:
                record = await self._ledger.claim(
                    file_hash,
                    parsed.timestamp,
                    identity,
                    exclusive=self._cross_identity is CrossIdentityPolicy.REJECT,
                )
            except Exception as e:
                logger.error(f"Ledger write failed for {identity}/{short_hash(file_hash)}: {e}")
                raise StorageFailure()
            if record is None:
                raise DuplicateUpload()

            try:
                stored = await self._storage.store(
                    request.file_bytes, identity, file_hash, extension
                )
            except BaseException:
                await self._ledger.release(file_hash, identity)
                raise
            advance(PipelineState.STORED)

        return UploadResult(
            image_url=stored.url,
            file_hash=file_hash,
            signature=request.signature,
            message=request.message,
            stored=stored,
            record=record,
        )

    def _lock_key(self, file_hash: str, identity: str) -> Hashable:
        # Cross-identity rejection compares against every identity, so it
        # must serialize on the hash alone
        if self._cross_identity is CrossIdentityPolicy.REJECT:
            return file_hash
        return (file_hash, identity)

    def _record_rejection(
        self, error: UploadError, identity: Optional[str], image_hash: Optional[str]
    ) -> None:
        self._stats["rejected"] += 1
        self._stats[error.kind] = self._stats.get(error.kind, 0) + 1

        who = identity or "<unknown>"
        detail = f"{error.kind} from {who} (hash {short_hash(image_hash)}, at {error.state.value})"
        if error.security_event:
            logger.warning(f"[SECURITY] {detail}")
        elif isinstance(error, StorageFailure):
            logger.error(detail)
        else:
            logger.info(f"Upload rejected: {detail}")

    @property
    def stats(self) -> Dict[str, int]:
        """Return pipeline statistics."""
        return self._stats.copy()
