"""
Snapguard upload client.

Signs an image with an explicitly supplied signer and submits it to the
upload endpoint.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path

import httpx

from snapguard.signer import SignerInterface, SignedUpload, sign_upload

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_BASE_URL = "http://127.0.0.1:3000"
DEFAULT_TIMEOUT = 30.0  # seconds
UPLOAD_PATH = "/api/upload-image-with-signature"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class UploadResponse:
    """Response from the upload endpoint."""

    image_url: str
    file_hash: str
    signature: str
    message: str
    device_id: str | None = None


# =============================================================================
# Exceptions
# =============================================================================


class UploadClientError(Exception):
    """Base exception for upload client errors."""

    pass


class UploadConnectionError(UploadClientError):
    """Raised when the service is unreachable."""

    def __init__(self, message: str = "Upload service is not available"):
        super().__init__(message)


class UploadRejectedError(UploadClientError):
    """Raised when the service rejects the upload."""

    def __init__(self, status_code: int, error: str, hint: str | None = None):
        self.status_code = status_code
        self.error = error
        self.hint = hint
        super().__init__(f"{status_code}: {error}")


# =============================================================================
# Client
# =============================================================================


class UploadClient:
    """
    Synchronous client for the upload service.

    Example:
        ```python
        from snapguard.client import UploadClient
        from snapguard.signer import Ed25519Signer

        client = UploadClient("https://checkin.example.com")
        result = client.upload_file("photo.jpg", identity="0xabc", signer=Ed25519Signer.generate())
        print(result.image_url)
        ```
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Service URL (default: http://127.0.0.1:3000)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (tests, proxies)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> UploadClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def upload(
        self,
        data: bytes,
        filename: str,
        identity: str,
        signer: SignerInterface,
        device_id: str | None = None,
    ) -> UploadResponse:
        """
        Sign and upload image bytes.

        Args:
            data: Image bytes.
            filename: Name sent with the file; its extension is kept on the server.
            identity: Uploader account address.
            signer: Signing capability.
            device_id: Optional device fingerprint to bind into the signature.

        Raises:
            UploadConnectionError: If the service is unreachable.
            UploadRejectedError: If the service rejects the upload.
        """
        signed = sign_upload(data, identity, signer, device_id=device_id)
        return self.submit(data, filename, signed)

    def upload_file(
        self,
        file_path: str | Path,
        identity: str,
        signer: SignerInterface,
        device_id: str | None = None,
    ) -> UploadResponse:
        """Sign and upload an image from disk."""
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return self.upload(path.read_bytes(), path.name, identity, signer, device_id)

    def submit(self, data: bytes, filename: str, signed: SignedUpload) -> UploadResponse:
        """Submit an already signed upload."""
        mime_type, _ = mimetypes.guess_type(filename)
        files = {"file": (filename, data, mime_type or "application/octet-stream")}

        try:
            response = self._client.post(
                f"{self.base_url}{UPLOAD_PATH}",
                files=files,
                data=signed.form_fields(),
            )
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise UploadConnectionError(f"Connection failed: {e}")

        self._handle_error_status(response)

        body = response.json()
        return UploadResponse(
            image_url=body["imageUrl"],
            file_hash=body["fileHash"],
            signature=body["signature"],
            message=signed.message,
            device_id=signed.device_id,
        )

    @staticmethod
    def _handle_error_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise UploadRejectedError(
            response.status_code,
            body.get("error") or "Upload failed",
            body.get("hint"),
        )
