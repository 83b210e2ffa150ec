"""
Optional device binding for uploads.

The check only applies when the request declares a device id AND the signed
message embeds one. When both are present they must be identical.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional


class DeviceBinder:
    """Compares the declared device fingerprint with the signed one."""

    @staticmethod
    def applies(declared: Optional[str], signed: Optional[str]) -> bool:
        return bool(declared) and bool(signed)

    @staticmethod
    def matches(declared: Optional[str], signed: Optional[str]) -> bool:
        """
        Return True if the binding holds.

        Only meaningful when ``applies()`` is True; a missing side is treated
        as not applicable and passes.
        """
        if not DeviceBinder.applies(declared, signed):
            return True
        return hmac.compare_digest(declared.encode("utf-8"), signed.encode("utf-8"))


def device_fingerprint(attributes: Dict[str, Any]) -> str:
    """
    Derive a device id from client-reported attributes.

    Attributes are things like user agent, language, platform, hardware
    concurrency and touch points. They are hashed as canonical JSON so the
    same attributes always give the same id.
    """
    canonical = json.dumps(attributes, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
