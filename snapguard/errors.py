"""
Snapguard error taxonomy.

Every rejection raised by the upload pipeline is an UploadError subclass.
The HTTP layer maps ``status_code``, ``error`` and ``hint`` straight onto the
response body, so messages here are user-visible.
"""

from typing import Optional


class UploadError(Exception):
    """Base exception for rejected uploads."""

    kind = "UploadError"
    status_code = 400
    security_event = False
    default_message = "Upload rejected"
    default_hint: Optional[str] = None

    def __init__(self, message: Optional[str] = None, hint: Optional[str] = None, state=None):
        self.message = message or self.default_message
        self.hint = hint if hint is not None else self.default_hint
        # PipelineState at which the request was rejected (set by the guard)
        self.state = state
        super().__init__(self.message)

    def to_response(self) -> dict:
        """Body of the JSON error response."""
        body = {"error": self.message}
        if self.hint:
            body["hint"] = self.hint
        return body


class MissingInput(UploadError):
    """File, signature, public key or message absent."""

    kind = "MissingInput"
    status_code = 400
    default_message = "Missing signature or public key"


class MalformedMessage(UploadError):
    """Message matches neither canonical grammar."""

    kind = "MalformedMessage"
    status_code = 400
    default_message = "Invalid message format"


class InvalidSignature(UploadError):
    kind = "InvalidSignature"
    status_code = 401
    security_event = True
    default_message = "Invalid signature"
    default_hint = (
        "Signature verification failed. Please ensure you're using the correct private key."
    )


class TimestampExpired(UploadError):
    kind = "TimestampExpired"
    status_code = 401
    security_event = True
    default_message = "Timestamp expired"
    default_hint = "Sign a fresh message and resubmit."


class HashMismatch(UploadError):
    kind = "HashMismatch"
    status_code = 401
    security_event = True
    default_message = "File hash mismatch"


class DuplicateUpload(UploadError):
    """Same content already accepted. Idempotency rejection, not an attack."""

    kind = "DuplicateUpload"
    status_code = 409
    default_message = "This image has already been uploaded"


class DeviceMismatch(UploadError):
    kind = "DeviceMismatch"
    status_code = 401
    security_event = True
    default_message = "Device mismatch - upload from different device detected"


class StorageFailure(UploadError):
    """Directory, file or remote write failed. Safe for the client to retry."""

    kind = "StorageFailure"
    status_code = 500
    default_message = "Upload failed"


class PayloadTooLarge(UploadError):
    kind = "PayloadTooLarge"
    status_code = 413
    default_message = "Image is too large"


class ContentRejected(UploadError):
    """Moderation pre-check flagged the image or could not classify it."""

    kind = "ContentRejected"
    status_code = 422
    default_message = "Image rejected by content moderation"


class IdentityMismatch(UploadError):
    """Declared uploader differs from the identity inside the signed message."""

    kind = "IdentityMismatch"
    status_code = 401
    security_event = True
    default_message = "Identity mismatch - message was signed for a different address"


class UnsupportedMedia(UploadError):
    """Payload is neither declared nor recognised as an image."""

    kind = "UnsupportedMedia"
    status_code = 415
    default_message = "Only image files are allowed"
