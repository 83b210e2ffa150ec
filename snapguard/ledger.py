"""
Snapguard Upload Ledger.

Records which identity has already uploaded which image hash so a repeated
submission can be rejected. Supports in-memory and Redis-backed storage.

The memory ledger lives only as long as the process: duplicate protection is
best-effort across restarts unless the Redis backend is used.
"""

import time
import json
import logging
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class UploadRecord:
    """
    An accepted upload.

    Attributes:
        image_hash: Digest of the stored image.
        timestamp: Unix timestamp from the signed message.
        identity: Account address that uploaded it.
        recorded_at: Server time the record was written.
    """

    image_hash: str
    timestamp: int
    identity: str
    recorded_at: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UploadRecord":
        """Create from dictionary."""
        return cls(**data)


class UploadLedgerInterface(ABC):
    """Abstract interface for upload ledger backends."""

    @abstractmethod
    async def is_duplicate(self, image_hash: str, identity: str) -> bool:
        """True if this identity already uploaded this hash."""
        pass

    @abstractmethod
    async def claim(
        self, image_hash: str, timestamp: int, identity: str, exclusive: bool = False
    ) -> Optional[UploadRecord]:
        """
        Record an upload only if it is not already present.

        The check and the insert are a single atomic step, so guards in
        different processes sharing one ledger cannot both win.

        Args:
            exclusive: Also fail if any other identity holds this hash.

        Returns:
            The new record, or None if the upload was already claimed.
        """
        pass

    @abstractmethod
    async def release(self, image_hash: str, identity: str) -> None:
        """Undo a claim whose upload could not be stored."""
        pass

    @abstractmethod
    async def get(self, image_hash: str, identity: str) -> Optional[UploadRecord]:
        """Get the record for a (hash, identity) pair."""
        pass

    @abstractmethod
    async def identities_for(self, image_hash: str) -> List[str]:
        """All identities with a live record for this hash."""
        pass


class MemoryUploadLedger(UploadLedgerInterface):
    """
    In-memory upload ledger for tests and single-instance deployments.

    Entries never expire unless ``ttl_seconds`` is given; with a TTL, old
    entries age out and the same upload is accepted again afterwards.

    Example:
        >>> ledger = MemoryUploadLedger()
        >>> await ledger.claim(image_hash, int(time.time()), "0xabc")
        >>> await ledger.is_duplicate(image_hash, "0xabc")
        True
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        """
        Initialize the memory ledger.

        Args:
            ttl_seconds: Age after which a record is forgotten. None keeps records forever.
        """
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive or None")
        self._records: Dict[Tuple[str, str], UploadRecord] = {}
        self._ttl = ttl_seconds
        self._lock = asyncio.Lock()
        self._stats = {"recorded": 0, "duplicates_blocked": 0, "expired": 0}

    def _is_expired(self, record: UploadRecord) -> bool:
        return self._ttl is not None and time.time() - record.recorded_at > self._ttl

    def _live(self, key: Tuple[str, str]) -> Optional[UploadRecord]:
        """Lookup without lock; drops the entry if it aged out."""
        record = self._records.get(key)
        if record is not None and self._is_expired(record):
            del self._records[key]
            self._stats["expired"] += 1
            return None
        return record

    async def is_duplicate(self, image_hash: str, identity: str) -> bool:
        async with self._lock:
            if self._live((image_hash, identity)) is not None:
                self._stats["duplicates_blocked"] += 1
                return True
            return False

    async def claim(
        self, image_hash: str, timestamp: int, identity: str, exclusive: bool = False
    ) -> Optional[UploadRecord]:
        async with self._lock:
            taken = self._live((image_hash, identity)) is not None
            if not taken and exclusive:
                taken = bool(self._live_identities(image_hash))
            if taken:
                self._stats["duplicates_blocked"] += 1
                return None

            record = UploadRecord(
                image_hash=image_hash,
                timestamp=timestamp,
                identity=identity,
                recorded_at=time.time(),
            )
            self._records[(image_hash, identity)] = record
            self._stats["recorded"] += 1
            return record

    async def release(self, image_hash: str, identity: str) -> None:
        async with self._lock:
            if self._records.pop((image_hash, identity), None) is not None:
                self._stats["recorded"] -= 1

    async def get(self, image_hash: str, identity: str) -> Optional[UploadRecord]:
        async with self._lock:
            return self._live((image_hash, identity))

    def _live_identities(self, image_hash: str) -> List[str]:
        keys = [key for key in self._records if key[0] == image_hash]
        return [key[1] for key in keys if self._live(key) is not None]

    async def identities_for(self, image_hash: str) -> List[str]:
        async with self._lock:
            return self._live_identities(image_hash)

    async def cleanup_expired(self) -> int:
        """Remove all aged-out records. Returns count removed."""
        if self._ttl is None:
            return 0
        async with self._lock:
            expired = [key for key, rec in self._records.items() if self._is_expired(rec)]
            for key in expired:
                del self._records[key]
            self._stats["expired"] += len(expired)
            return len(expired)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def stats(self) -> dict:
        """Return ledger statistics."""
        return {**self._stats, "active": len(self._records)}


class RedisUploadLedger(UploadLedgerInterface):
    """
    Redis-backed upload ledger for durable or multi-instance deployments.

    Each (hash, identity) pair is a JSON string key; a set per hash lists the
    identities that uploaded it. Claims use ``SET NX``, so guards in several
    processes sharing the ledger still accept an upload only once. Redis
    errors propagate to the caller so the pipeline rejects the request
    instead of accepting it unchecked.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> ledger = RedisUploadLedger(client)
    """

    def __init__(
        self,
        redis_client,
        key_prefix: str = "snapguard:upload:",
        ttl_seconds: Optional[int] = None,
    ):
        """
        Initialize Redis upload ledger.

        Args:
            redis_client: An async Redis client (redis.asyncio.Redis).
            key_prefix: Prefix for ledger keys.
            ttl_seconds: Expiry applied to every record. None keeps records forever.
        """
        self._redis = redis_client
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, image_hash: str, identity: str) -> str:
        """Generate prefixed record key."""
        return f"{self._prefix}{image_hash}:{identity}"

    def _index_key(self, image_hash: str) -> str:
        return f"{self._prefix}index:{image_hash}"

    def _owner_key(self, image_hash: str) -> str:
        return f"{self._prefix}owner:{image_hash}"

    async def is_duplicate(self, image_hash: str, identity: str) -> bool:
        exists = await self._redis.exists(self._key(image_hash, identity))
        return exists > 0

    async def claim(
        self, image_hash: str, timestamp: int, identity: str, exclusive: bool = False
    ) -> Optional[UploadRecord]:
        """Claim with ``SET NX``; an exclusive claim first takes the per-hash owner key."""
        owner_key = self._owner_key(image_hash)
        if exclusive:
            if not await self._redis.set(owner_key, identity, nx=True, ex=self._ttl):
                return None

        record = UploadRecord(
            image_hash=image_hash,
            timestamp=timestamp,
            identity=identity,
            recorded_at=time.time(),
        )
        payload = json.dumps(record.to_dict())
        won = await self._redis.set(
            self._key(image_hash, identity), payload, nx=True, ex=self._ttl
        )
        if not won:
            if exclusive:
                await self._redis.delete(owner_key)
            return None

        await self._redis.sadd(self._index_key(image_hash), identity)
        return record

    async def release(self, image_hash: str, identity: str) -> None:
        await self._redis.delete(self._key(image_hash, identity))
        await self._redis.srem(self._index_key(image_hash), identity)
        owner = await self._redis.get(self._owner_key(image_hash))
        if isinstance(owner, bytes):
            owner = owner.decode("utf-8")
        if owner == identity:
            await self._redis.delete(self._owner_key(image_hash))

    async def get(self, image_hash: str, identity: str) -> Optional[UploadRecord]:
        data = await self._redis.get(self._key(image_hash, identity))
        if not data:
            return None
        return UploadRecord.from_dict(json.loads(data))

    async def identities_for(self, image_hash: str) -> List[str]:
        members = await self._redis.smembers(self._index_key(image_hash))
        identities = []
        for member in members:
            identity = member.decode("utf-8") if isinstance(member, bytes) else member
            # The index set has no TTL; skip identities whose record expired
            if await self._redis.exists(self._key(image_hash, identity)):
                identities.append(identity)
        return sorted(identities)

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close the underlying Redis connection pool."""
        await self._redis.aclose()
