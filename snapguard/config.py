# snapguard/config.py
"""
Centralized configuration for Snapguard.

All configurable values are read from environment variables with sensible defaults.
This allows different environments (dev, staging, production) to use different
settings without code changes.

Usage:
    from snapguard.config import GuardSettings

    settings = GuardSettings.from_env()

Environment Variables:
    SNAPGUARD_UPLOAD_ROOT: Directory for locally stored uploads (default: ./public/uploads)
    SNAPGUARD_URL_PREFIX: URL prefix for stored uploads (default: /uploads)
    SNAPGUARD_FRESHNESS_WINDOW: Signed message validity in seconds (default: 300)
    SNAPGUARD_LEDGER_TTL: Seconds before ledger entries age out, 0 = never (default: 0)
    SNAPGUARD_CROSS_IDENTITY: "allow" or "reject" same image from another identity (default: allow)
    SNAPGUARD_MAX_UPLOAD_BYTES: Largest accepted payload (default: 10 MiB)
    SNAPGUARD_STORAGE_BACKEND: "local" or "walrus" (default: local)
    SNAPGUARD_REDIS_URL: Use a Redis-backed ledger when set (default: unset)
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional


class CrossIdentityPolicy(str, Enum):
    """What to do when a different identity uploads an already-accepted image."""

    ALLOW = "allow"
    REJECT = "reject"


# =============================================================================
# Pipeline Configuration
# =============================================================================

# Accepted age of a signed upload message
FRESHNESS_WINDOW_SECONDS: Final[int] = int(os.getenv("SNAPGUARD_FRESHNESS_WINDOW", "300"))

# 0 keeps ledger entries for the life of the process
LEDGER_TTL_SECONDS: Final[int] = int(os.getenv("SNAPGUARD_LEDGER_TTL", "0"))

CROSS_IDENTITY_POLICY: Final[str] = os.getenv("SNAPGUARD_CROSS_IDENTITY", "allow")

MAX_UPLOAD_BYTES: Final[int] = int(
    os.getenv("SNAPGUARD_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))
)

# =============================================================================
# Storage Configuration
# =============================================================================

STORAGE_BACKEND: Final[str] = os.getenv("SNAPGUARD_STORAGE_BACKEND", "local")

UPLOAD_ROOT: Final[str] = os.getenv(
    "SNAPGUARD_UPLOAD_ROOT",
    os.path.join(os.getcwd(), "public", "uploads"),
)

URL_PREFIX: Final[str] = os.getenv("SNAPGUARD_URL_PREFIX", "/uploads")

WALRUS_PUBLISHER_URL: Final[str] = os.getenv(
    "SNAPGUARD_WALRUS_PUBLISHER",
    "https://publisher.walrus-testnet.walrus.space",
)

WALRUS_AGGREGATOR_URL: Final[str] = os.getenv(
    "SNAPGUARD_WALRUS_AGGREGATOR",
    "https://aggregator.walrus-testnet.walrus.space",
)

REDIS_URL: Final[Optional[str]] = os.getenv("SNAPGUARD_REDIS_URL") or None

# =============================================================================
# Service Configuration
# =============================================================================

HOST: Final[str] = os.getenv("SNAPGUARD_HOST", "127.0.0.1")
PORT: Final[int] = int(os.getenv("SNAPGUARD_PORT", "3000"))


@dataclass
class GuardSettings:
    """Settings consumed by the service factory."""

    freshness_window: int = FRESHNESS_WINDOW_SECONDS
    ledger_ttl: Optional[int] = None
    cross_identity: CrossIdentityPolicy = CrossIdentityPolicy.ALLOW
    max_upload_bytes: Optional[int] = MAX_UPLOAD_BYTES
    storage_backend: str = "local"
    upload_root: str = UPLOAD_ROOT
    url_prefix: str = URL_PREFIX
    walrus_publisher_url: str = WALRUS_PUBLISHER_URL
    walrus_aggregator_url: str = WALRUS_AGGREGATOR_URL
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "GuardSettings":
        """Build settings from the module-level environment values."""
        return cls(
            freshness_window=FRESHNESS_WINDOW_SECONDS,
            ledger_ttl=LEDGER_TTL_SECONDS or None,
            cross_identity=CrossIdentityPolicy(CROSS_IDENTITY_POLICY.lower()),
            max_upload_bytes=MAX_UPLOAD_BYTES or None,
            storage_backend=STORAGE_BACKEND.lower(),
            upload_root=UPLOAD_ROOT,
            url_prefix=URL_PREFIX,
            walrus_publisher_url=WALRUS_PUBLISHER_URL,
            walrus_aggregator_url=WALRUS_AGGREGATOR_URL,
            redis_url=REDIS_URL,
        )


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================

def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    print("Snapguard Configuration:")
    print(f"  FRESHNESS_WINDOW:   {FRESHNESS_WINDOW_SECONDS}s")
    print(f"  LEDGER_TTL:         {LEDGER_TTL_SECONDS or 'never'}")
    print(f"  CROSS_IDENTITY:     {CROSS_IDENTITY_POLICY}")
    print(f"  MAX_UPLOAD_BYTES:   {MAX_UPLOAD_BYTES}")
    print(f"  STORAGE_BACKEND:    {STORAGE_BACKEND}")
    print(f"  UPLOAD_ROOT:        {UPLOAD_ROOT}")
    print(f"  URL_PREFIX:         {URL_PREFIX}")
    print(f"  REDIS_URL:          {'set' if REDIS_URL else 'unset'}")
    print(f"  HOST:PORT:          {HOST}:{PORT}")


if __name__ == "__main__":
    print_config()
