"""
Snapguard Signature Verifier - Detached Ed25519 verification over upload messages.

The verifier never raises: malformed input, decode errors and signature
mismatches all come back as ``False`` with a logged reason for operators.
"""

import logging
from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

logger = logging.getLogger(__name__)

MIN_SIGNATURE_BYTES = 64
MIN_PUBLIC_KEY_BYTES = 32


def decode_hex(value: str) -> bytes:
    """Decode a hex string with an optional ``0x`` prefix."""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


class SignatureVerifier:
    """
    Verifies detached Ed25519 signatures over UTF-8 message bytes.

    Example:
        >>> verifier = SignatureVerifier()
        >>> verifier.verify(message, signature_hex, public_key_hex)
        True
    """

    def __init__(self):
        self._stats = {"verifications": 0, "successes": 0, "failures": 0}

    def verify(self, message: str, signature: str, public_key: str) -> bool:
        """
        Check ``signature`` over ``message`` against ``public_key``.

        Args:
            message: The signed text.
            signature: Hex-encoded signature (64 bytes for Ed25519).
            public_key: Hex-encoded raw public key (32 bytes for Ed25519).

        Returns:
            True only when the signature is cryptographically valid.
        """
        self._stats["verifications"] += 1

        reason = self._check(message, signature, public_key)
        if reason is None:
            self._stats["successes"] += 1
            logger.debug("Signature valid")
            return True

        self._stats["failures"] += 1
        logger.info(f"Signature rejected: {reason}")
        return False

    def _check(self, message: str, signature: str, public_key: str) -> Optional[str]:
        """Return None when valid, otherwise the rejection reason."""
        if not message:
            return "message is empty"
        if not signature or not public_key:
            return "signature or public key missing"

        try:
            signature_bytes = decode_hex(signature)
            public_key_bytes = decode_hex(public_key)
        except ValueError as e:
            return f"invalid hex encoding ({e})"

        if len(signature_bytes) < MIN_SIGNATURE_BYTES:
            return f"signature too short ({len(signature_bytes)} bytes)"
        if len(public_key_bytes) < MIN_PUBLIC_KEY_BYTES:
            return f"public key too short ({len(public_key_bytes)} bytes)"

        try:
            key = Ed25519PublicKey.from_public_bytes(public_key_bytes)
            key.verify(signature_bytes, message.encode("utf-8"))
        except InvalidSignature:
            return "signature does not match message and key"
        except ValueError as e:
            return f"unusable key or signature ({e})"

        return None

    @property
    def stats(self) -> Dict[str, int]:
        """Return verification statistics."""
        return self._stats.copy()


_default_verifier = SignatureVerifier()


def verify_signature(message: str, signature: str, public_key: str) -> bool:
    """Verify with a shared module-level verifier."""
    return _default_verifier.verify(message, signature, public_key)
