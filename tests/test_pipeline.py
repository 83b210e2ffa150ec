"""
Tests for the upload pipeline.
"""

import asyncio
import dataclasses
import logging
from pathlib import Path

import pytest

from snapguard.config import CrossIdentityPolicy
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
)
from snapguard.freshness import FreshnessGuard
from snapguard.hasher import digest
from snapguard.ledger import MemoryUploadLedger
from snapguard.pipeline import SUCCESS_MESSAGE, PipelineState, UploadGuard, UploadRequest


def stored_files(root: Path):
    if not root.exists():
        return []
    return [p for p in root.rglob("*") if p.is_file()]


class TestAccept:
    @pytest.mark.asyncio
    async def test_end_to_end(self, guard, make_request, signer, upload_root, ledger):
        data = b"test-image"
        file_hash = digest(data)

        result = await guard.accept(make_request(data, "0xABC", signer))

        assert result.file_hash == file_hash
        assert result.state is PipelineState.STORED
        assert result.image_url == f"/uploads/0xABC/{file_hash}.jpg"
        assert (upload_root / "0xABC" / f"{file_hash}.jpg").read_bytes() == data
        assert await ledger.is_duplicate(file_hash, "0xABC")

    @pytest.mark.asyncio
    async def test_response_body(self, guard, make_request, signer, image_bytes):
        request = make_request(image_bytes, "0xABC", signer)

        body = (await guard.accept(request)).to_response()

        assert body == {
            "success": True,
            "imageUrl": f"/uploads/0xABC/{digest(image_bytes)}.jpg",
            "fileHash": digest(image_bytes),
            "signature": request.signature,
            "message": SUCCESS_MESSAGE,
        }

    @pytest.mark.asyncio
    async def test_identity_taken_from_message(self, guard, make_request, signer, image_bytes):
        request = dataclasses.replace(make_request(image_bytes, "0xABC", signer), identity=None)

        result = await guard.accept(request)

        assert result.stored.identity == "0xABC"

    @pytest.mark.asyncio
    async def test_expired_after_ten_minutes(self, guard, make_request, signer, clock):
        request = make_request(b"test-image", "0xABC", signer)
        clock.advance(600)

        with pytest.raises(TimestampExpired) as exc_info:
            await guard.accept(request)

        assert exc_info.value.state is PipelineState.MESSAGE_PARSED

    @pytest.mark.asyncio
    async def test_future_timestamp(self, guard, make_request, signer, clock, image_bytes):
        request = make_request(image_bytes, "0xABC", signer, now=clock.now + 60)

        with pytest.raises(TimestampExpired):
            await guard.accept(request)


class TestRejections:
    @pytest.mark.asyncio
    async def test_no_file(self, guard, make_request, signer, image_bytes):
        request = dataclasses.replace(make_request(image_bytes, "0xABC", signer), file_bytes=None)

        with pytest.raises(MissingInput) as exc_info:
            await guard.accept(request)

        assert exc_info.value.message == "No file provided"
        assert exc_info.value.state is PipelineState.RECEIVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["signature", "public_key", "message"])
    async def test_missing_field(self, guard, make_request, signer, image_bytes, field):
        request = dataclasses.replace(make_request(image_bytes, "0xABC", signer), **{field: None})

        with pytest.raises(MissingInput) as exc_info:
            await guard.accept(request)

        assert exc_info.value.message == "Missing signature or public key"

    @pytest.mark.asyncio
    async def test_payload_too_large(self, storage, ledger, make_request, signer):
        small_guard = UploadGuard(storage=storage, ledger=ledger, max_upload_bytes=8)

        with pytest.raises(PayloadTooLarge):
            await small_guard.accept(make_request(b"more than eight bytes", "0xABC", signer))

    @pytest.mark.asyncio
    async def test_size_checked_before_signature(self, storage, ledger, make_request, signer):
        small_guard = UploadGuard(storage=storage, ledger=ledger, max_upload_bytes=8)
        request = dataclasses.replace(
            make_request(b"more than eight bytes", "0xABC", signer), signature="00" * 64
        )

        with pytest.raises(PayloadTooLarge) as exc_info:
            await small_guard.accept(request)

        assert exc_info.value.state is PipelineState.RECEIVED

    @pytest.mark.asyncio
    async def test_non_image_rejected(self, guard, make_request, signer, upload_root, ledger):
        request = make_request(b"just some notes", "0xABC", signer, content_type="text/plain")

        with pytest.raises(UnsupportedMedia) as exc_info:
            await guard.accept(request)

        assert exc_info.value.status_code == 415
        assert exc_info.value.state is PipelineState.RECEIVED
        assert stored_files(upload_root) == []
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_undeclared_type_recognised_by_content(
        self, guard, make_request, signer, image_bytes
    ):
        request = make_request(image_bytes, "0xABC", signer, content_type=None)

        assert (await guard.accept(request)).state is PipelineState.STORED

    @pytest.mark.asyncio
    async def test_undeclared_type_unrecognised_content(self, guard, make_request, signer):
        request = make_request(b"just some notes", "0xABC", signer, content_type=None)

        with pytest.raises(UnsupportedMedia):
            await guard.accept(request)

    @pytest.mark.asyncio
    async def test_wrong_key(self, guard, make_request, signer, other_signer, image_bytes):
        request = dataclasses.replace(
            make_request(image_bytes, "0xABC", signer), public_key=other_signer.public_key_hex
        )

        with pytest.raises(InvalidSignature) as exc_info:
            await guard.accept(request)

        assert exc_info.value.status_code == 401
        assert "correct private key" in exc_info.value.hint

    @pytest.mark.asyncio
    async def test_malformed_message(self, guard, signer, image_bytes):
        message = f"upload_image:{digest(image_bytes)}:0xABC"
        result = signer.sign(message.encode())
        request = UploadRequest(
            file_bytes=image_bytes,
            signature=result.signature,
            public_key=result.public_key,
            message=message,
        )

        with pytest.raises(MalformedMessage) as exc_info:
            await guard.accept(request)

        assert exc_info.value.state is PipelineState.SIGNATURE_CHECKED

    @pytest.mark.asyncio
    async def test_hash_mismatch(self, guard, make_request, signer, upload_root, ledger):
        signed_for = make_request(b"original", "0xABC", signer)
        request = dataclasses.replace(signed_for, file_bytes=b"swapped")

        with pytest.raises(HashMismatch) as exc_info:
            await guard.accept(request)

        assert exc_info.value.state is PipelineState.TIMESTAMP_CHECKED
        assert stored_files(upload_root) == []
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_identity_mismatch(self, guard, make_request, signer, image_bytes):
        request = dataclasses.replace(make_request(image_bytes, "0xABC", signer), identity="0xDEF")

        with pytest.raises(IdentityMismatch):
            await guard.accept(request)

    @pytest.mark.asyncio
    async def test_unsafe_identity(self, guard, make_request, signer, image_bytes):
        request = make_request(image_bytes, "..", signer)

        with pytest.raises(MalformedMessage):
            await guard.accept(request)


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_same_identity_rejected(self, guard, make_request, signer, image_bytes, clock):
        await guard.accept(make_request(image_bytes, "0xABC", signer))
        clock.advance(5)

        with pytest.raises(DuplicateUpload) as exc_info:
            await guard.accept(make_request(image_bytes, "0xABC", signer))

        assert exc_info.value.status_code == 409
        assert exc_info.value.state is PipelineState.HASH_BOUND

    @pytest.mark.asyncio
    async def test_other_identity_allowed(
        self, guard, make_request, signer, other_signer, image_bytes, ledger
    ):
        await guard.accept(make_request(image_bytes, "0xABC", signer))
        result = await guard.accept(make_request(image_bytes, "0xDEF", other_signer))

        assert result.image_url.startswith("/uploads/0xDEF/")
        assert sorted(await ledger.identities_for(digest(image_bytes))) == ["0xABC", "0xDEF"]

    @pytest.mark.asyncio
    async def test_other_identity_rejected_by_policy(
        self, storage, ledger, clock, make_request, signer, other_signer, image_bytes
    ):
        strict = UploadGuard(
            storage=storage,
            ledger=ledger,
            freshness=FreshnessGuard(clock=clock),
            cross_identity=CrossIdentityPolicy.REJECT,
        )
        await strict.accept(make_request(image_bytes, "0xABC", signer))

        with pytest.raises(DuplicateUpload):
            await strict.accept(make_request(image_bytes, "0xDEF", other_signer))

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests(self, guard, make_request, signer, upload_root):
        request = make_request(b"race", "0xABC", signer)

        results = await asyncio.gather(
            *(guard.accept(request) for _ in range(10)), return_exceptions=True
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        duplicates = [r for r in results if isinstance(r, DuplicateUpload)]
        assert len(accepted) == 1
        assert len(duplicates) == 9
        assert len(stored_files(upload_root)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_cross_identity_reject(
        self, storage, ledger, clock, make_request, signer, other_signer
    ):
        strict = UploadGuard(
            storage=storage,
            ledger=ledger,
            freshness=FreshnessGuard(clock=clock),
            cross_identity="reject",
        )
        requests = [
            make_request(b"shared", "0xABC", signer),
            make_request(b"shared", "0xDEF", other_signer),
        ]

        results = await asyncio.gather(*(strict.accept(r) for r in requests), return_exceptions=True)

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, DuplicateUpload) for r in results) == 1

    @pytest.mark.asyncio
    async def test_guards_sharing_a_ledger(
        self, storage, ledger, clock, make_request, signer, upload_root
    ):
        guards = [
            UploadGuard(storage=storage, ledger=ledger, freshness=FreshnessGuard(clock=clock))
            for _ in range(2)
        ]
        request = make_request(b"race", "0xABC", signer)

        results = await asyncio.gather(
            *(guards[i % 2].accept(request) for i in range(4)), return_exceptions=True
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, DuplicateUpload) for r in results) == 3
        assert len(stored_files(upload_root)) == 1
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_lost_claim_is_duplicate(self, storage, clock, make_request, signer, upload_root):
        # Every guard sees "not a duplicate", as when another process has not committed yet
        ledger = StaleReadLedger()
        first = UploadGuard(storage=storage, ledger=ledger, freshness=FreshnessGuard(clock=clock))
        second = UploadGuard(storage=storage, ledger=ledger, freshness=FreshnessGuard(clock=clock))
        request = make_request(b"race", "0xABC", signer)
        accepted = await first.accept(request)

        with pytest.raises(DuplicateUpload) as exc_info:
            await second.accept(request)

        assert exc_info.value.state is PipelineState.DEVICE_CHECKED
        assert Path(accepted.stored.path).read_bytes() == b"race"
        assert len(stored_files(upload_root)) == 1
        assert len(ledger) == 1


class TestDeviceBinding:
    @pytest.mark.asyncio
    async def test_matching_device(self, guard, make_request, signer, image_bytes):
        request = make_request(image_bytes, "0xABC", signer, device_id="dev-1")

        result = await guard.accept(request)

        assert "dev-1" in result.message

    @pytest.mark.asyncio
    async def test_device_mismatch_has_no_side_effects(
        self, guard, make_request, signer, image_bytes, upload_root, ledger
    ):
        request = make_request(
            image_bytes, "0xABC", signer, device_id="dev-1", declared_device_id="dev-2"
        )

        with pytest.raises(DeviceMismatch) as exc_info:
            await guard.accept(request)

        assert exc_info.value.state is PipelineState.DUPLICATE_CHECKED
        assert stored_files(upload_root) == []
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_undeclared_device_skips_check(self, guard, make_request, signer, image_bytes):
        request = dataclasses.replace(
            make_request(image_bytes, "0xABC", signer, device_id="dev-1"), device_id=None
        )

        assert (await guard.accept(request)).state is PipelineState.STORED

    @pytest.mark.asyncio
    async def test_declared_device_without_signed_one(self, guard, make_request, signer, image_bytes):
        request = make_request(image_bytes, "0xABC", signer, declared_device_id="dev-9")

        assert (await guard.accept(request)).state is PipelineState.STORED


class FailingLedger(MemoryUploadLedger):
    async def claim(self, image_hash, timestamp, identity, exclusive=False):
        raise RuntimeError("ledger unavailable")


class StaleReadLedger(MemoryUploadLedger):
    async def is_duplicate(self, image_hash, identity):
        return False


class FailingStorage:
    async def store(self, data, identity, image_hash, extension=""):
        raise StorageFailure()

    async def discard(self, stored):
        pass


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_ledger_failure_writes_no_file(
        self, storage, clock, make_request, signer, image_bytes, upload_root
    ):
        failing = UploadGuard(
            storage=storage, ledger=FailingLedger(), freshness=FreshnessGuard(clock=clock)
        )

        with pytest.raises(StorageFailure) as exc_info:
            await failing.accept(make_request(image_bytes, "0xABC", signer))

        assert exc_info.value.status_code == 500
        assert stored_files(upload_root) == []

    @pytest.mark.asyncio
    async def test_storage_failure_not_recorded(
        self, ledger, clock, make_request, signer, image_bytes
    ):
        failing = UploadGuard(
            storage=FailingStorage(), ledger=ledger, freshness=FreshnessGuard(clock=clock)
        )

        with pytest.raises(StorageFailure) as exc_info:
            await failing.accept(make_request(image_bytes, "0xABC", signer))

        assert exc_info.value.state is PipelineState.DEVICE_CHECKED
        assert len(ledger) == 0


class TestRejectionLogging:
    @pytest.mark.asyncio
    async def test_security_event_names_signed_identity(
        self, guard, make_request, signer, image_bytes, caplog
    ):
        request = dataclasses.replace(
            make_request(
                image_bytes, "0xABC", signer, device_id="dev-1", declared_device_id="dev-2"
            ),
            identity=None,
        )
        caplog.set_level(logging.INFO, logger="snapguard")

        with pytest.raises(DeviceMismatch):
            await guard.accept(request)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "[SECURITY] DeviceMismatch from 0xABC" in warnings[0].getMessage()
        assert "<unknown>" not in caplog.text

    @pytest.mark.asyncio
    async def test_unparsed_rejection_logs_unknown(
        self, guard, make_request, signer, image_bytes, caplog
    ):
        request = dataclasses.replace(
            make_request(image_bytes, "0xABC", signer), identity=None, signature="00" * 64
        )
        caplog.set_level(logging.INFO, logger="snapguard")

        with pytest.raises(InvalidSignature):
            await guard.accept(request)

        assert "InvalidSignature from <unknown>" in caplog.text

    @pytest.mark.asyncio
    async def test_signature_not_logged(
        self, guard, make_request, signer, other_signer, image_bytes, caplog
    ):
        accepted = make_request(image_bytes, "0xABC", signer)
        forged = dataclasses.replace(
            make_request(b"test-image", "0xABC", signer), public_key=other_signer.public_key_hex
        )
        caplog.set_level(logging.DEBUG, logger="snapguard")

        await guard.accept(accepted)
        with pytest.raises(DuplicateUpload):
            await guard.accept(accepted)
        with pytest.raises(InvalidSignature):
            await guard.accept(forged)

        assert caplog.records
        assert accepted.signature not in caplog.text
        assert forged.signature not in caplog.text


@pytest.mark.asyncio
async def test_stats(guard, make_request, signer, image_bytes):
    request = make_request(image_bytes, "0xABC", signer)
    await guard.accept(request)
    with pytest.raises(DuplicateUpload):
        await guard.accept(request)

    stats = guard.stats
    assert stats["requests"] == 2
    assert stats["accepted"] == 1
    assert stats["rejected"] == 1
    assert stats["DuplicateUpload"] == 1
