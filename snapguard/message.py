"""
Snapguard canonical upload message.

The message is the only signed artifact, so every fact the server checks is
embedded in it. Two colon-delimited shapes exist:

    upload_image:<imageHash>:<timestamp>:<identity>
    upload_image:<imageHash>:<deviceId>:<timestamp>:<identity>
"""

import time
from dataclasses import dataclass
from typing import Optional, Tuple

MESSAGE_PREFIX = "upload_image"
SEPARATOR = ":"


@dataclass(frozen=True)
class ParsedMessage:
    """Claims extracted from a signed upload message."""

    image_hash: str
    timestamp: int
    identity: str
    device_id: Optional[str] = None

    @property
    def has_device(self) -> bool:
        return self.device_id is not None


def _now(now: Optional[float]) -> int:
    return int(now if now is not None else time.time())


def _check_component(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"Upload message requires a non-empty {name}")
    if SEPARATOR in value:
        raise ValueError(f"{name} must not contain '{SEPARATOR}'")


def encode(image_hash: str, identity: str, now: Optional[float] = None) -> Tuple[str, int]:
    """
    Build the 4-field message for an upload.

    Args:
        image_hash: Hex digest of the image being uploaded.
        identity: Uploader account address.
        now: Override for the current unix time (tests).

    Returns:
        Tuple of (message, timestamp).
    """
    _check_component("image_hash", image_hash)
    _check_component("identity", identity)
    timestamp = _now(now)
    message = SEPARATOR.join([MESSAGE_PREFIX, image_hash, str(timestamp), identity])
    return message, timestamp


def encode_with_device(
    image_hash: str, device_id: str, identity: str, now: Optional[float] = None
) -> Tuple[str, int]:
    """Build the 5-field message that also binds a device fingerprint."""
    _check_component("image_hash", image_hash)
    _check_component("device_id", device_id)
    _check_component("identity", identity)
    timestamp = _now(now)
    message = SEPARATOR.join(
        [MESSAGE_PREFIX, image_hash, device_id, str(timestamp), identity]
    )
    return message, timestamp


def _parse_timestamp(raw: str) -> Optional[int]:
    if not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)


def parse(message: str) -> Optional[ParsedMessage]:
    """
    Parse a signed upload message.

    Returns None for anything that is not exactly one of the two canonical
    shapes; callers must treat None as a malformed request.
    """
    if not message:
        return None

    parts = message.split(SEPARATOR)
    if parts[0] != MESSAGE_PREFIX:
        return None

    if len(parts) == 4:
        _, image_hash, raw_ts, identity = parts
        device_id = None
    elif len(parts) == 5:
        _, image_hash, device_id, raw_ts, identity = parts
        if not device_id:
            return None
    else:
        return None

    timestamp = _parse_timestamp(raw_ts)
    if timestamp is None or not image_hash or not identity:
        return None

    return ParsedMessage(
        image_hash=image_hash,
        timestamp=timestamp,
        identity=identity,
        device_id=device_id,
    )
