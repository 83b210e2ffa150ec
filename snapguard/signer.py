"""
Snapguard Signer - Client-side signing of upload messages.

The signer is always passed in explicitly; nothing here looks up a wallet
from global state. Any object with a ``sign(message: bytes) -> SignResult``
method works, so a wallet bridge can stand in for the local Ed25519 key.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from snapguard import message as message_codec
from snapguard.hasher import digest
from snapguard.verifier import decode_hex


@dataclass
class SignResult:
    """Detached signature and the key that verifies it, both hex."""

    signature: str
    public_key: str


class SignerInterface(Protocol):
    def sign(self, message: bytes) -> SignResult:
        ...


class Ed25519Signer:
    """
    Signs raw message bytes with an Ed25519 private key.

    Example:
        >>> signer = Ed25519Signer.generate()
        >>> result = signer.sign(b"upload_image:...")
        >>> len(bytes.fromhex(result.signature))
        64
    """

    def __init__(self, private_key: Ed25519PrivateKey):
        if private_key is None:
            raise ValueError("Ed25519Signer requires a private key")
        self._key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        """Create a signer with a fresh keypair."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_hex(cls, private_key_hex: str) -> "Ed25519Signer":
        """Load a 32-byte raw private key from hex (``0x`` prefix allowed)."""
        try:
            raw = decode_hex(private_key_hex)
            return cls(Ed25519PrivateKey.from_private_bytes(raw))
        except ValueError as e:
            raise ValueError(f"Invalid Ed25519 private key: {e}")

    def private_key_hex(self) -> str:
        return self._key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ).hex()

    @property
    def public_key_hex(self) -> str:
        return self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()

    def sign(self, message: bytes) -> SignResult:
        return SignResult(signature=self._key.sign(message).hex(), public_key=self.public_key_hex)


@dataclass
class SignedUpload:
    """Everything the upload endpoint needs besides the file itself."""

    image_hash: str
    message: str
    timestamp: int
    signature: str
    public_key: str
    identity: str
    device_id: Optional[str] = None

    def form_fields(self) -> Dict[str, str]:
        """Multipart form fields for the upload endpoint."""
        fields = {
            "signature": self.signature,
            "publicKey": self.public_key,
            "message": self.message,
            "userAddress": self.identity,
        }
        if self.device_id:
            fields["deviceId"] = self.device_id
        return fields


def sign_upload(
    data: bytes,
    identity: str,
    signer: SignerInterface,
    device_id: Optional[str] = None,
    now: Optional[float] = None,
) -> SignedUpload:
    """
    Hash an image, build the upload message and sign it.

    Args:
        data: Image bytes.
        identity: Uploader account address.
        signer: Signing capability (local key or wallet bridge).
        device_id: Optional device fingerprint to bind into the message.
        now: Override for the message timestamp.

    Raises:
        ValueError: If the signer returns nothing.
    """
    image_hash = digest(data)
    if device_id:
        message, timestamp = message_codec.encode_with_device(image_hash, device_id, identity, now)
    else:
        message, timestamp = message_codec.encode(image_hash, identity, now)

    result = signer.sign(message.encode("utf-8"))
    if not result or not result.signature or not result.public_key:
        raise ValueError("Failed to sign message - no signer response")

    return SignedUpload(
        image_hash=image_hash,
        message=message,
        timestamp=timestamp,
        signature=result.signature,
        public_key=result.public_key,
        identity=identity,
        device_id=device_id,
    )
