"""
VectorX402 Nonce Tracking.

Remembers which challenge nonces each signer has already turned into a
payment proof, so the same challenge cannot be paid (and replayed) twice.
Supports both in-memory and Redis-backed storage.
"""

import time
import logging
import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict

logger = logging.getLogger(__name__)


def nonce_key(identity: str, nonce: str) -> str:
    """Nonces are scoped per signer identity."""
    return f"{identity}:{nonce}"


class NonceTrackerInterface(ABC):
    """Abstract interface for nonce tracking implementations."""

    @abstractmethod
    async def is_used(self, identity: str, nonce: str) -> bool:
        """Check if a nonce has already been consumed by this identity."""
        pass

    @abstractmethod
    async def consume(self, identity: str, nonce: str, expires_at: float) -> bool:
        """
        Atomically mark a nonce as consumed.

        Returns False (and changes nothing) if it was already consumed.
        """
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Forget nonces whose retention window has passed. Returns the number forgotten."""
        pass


class MemoryNonceTracker(NonceTrackerInterface):
    """
    In-memory nonce tracker with automatic expiration.

    Suitable for a single agent process. For a fleet of agents sharing one
    wallet, use RedisNonceTracker.

    Example:
        >>> tracker = MemoryNonceTracker(max_size=100000)
        >>> if not await tracker.consume(address, challenge.nonce, expires_at):
        ...     raise ReplayedNonce(challenge.nonce)
    """

    def __init__(self, max_size: int = 100000, cleanup_interval: int = 60):
        """
        Args:
            max_size: Consumed nonces kept before the oldest are forgotten.
            cleanup_interval: Seconds between sweeps of expired entries.
        """
        self._nonces: OrderedDict[str, float] = OrderedDict()  # key -> expires_at
        self._max_size = max_size
        self._cleanup_interval = cleanup_interval
        self._lock = asyncio.Lock()
        self._last_cleanup = time.time()
        self._stats = {"tracked": 0, "replays_blocked": 0, "evicted": 0}

    async def is_used(self, identity: str, nonce: str) -> bool:
        """Check if nonce was already consumed (replay)."""
        async with self._lock:
            self._maybe_cleanup()
            return self._is_live(nonce_key(identity, nonce))

    async def consume(self, identity: str, nonce: str, expires_at: float) -> bool:
        """Mark a nonce as consumed unless it already is."""
        key = nonce_key(identity, nonce)
        async with self._lock:
            self._maybe_cleanup()

            if self._is_live(key):
                self._stats["replays_blocked"] += 1
                return False

            # Full: forget the oldest consumed nonces first
            while len(self._nonces) >= self._max_size:
                oldest = next(iter(self._nonces))
                del self._nonces[oldest]
                self._stats["evicted"] += 1

            self._nonces[key] = float(expires_at)
            self._stats["tracked"] += 1
            return True

    async def cleanup_expired(self) -> int:
        """Forget every nonce past its retention window."""
        async with self._lock:
            return self._cleanup_internal()

    def _is_live(self, key: str) -> bool:
        expires_at = self._nonces.get(key)
        if expires_at is None:
            return False
        if time.time() < expires_at:
            return True
        # Retention window passed
        del self._nonces[key]
        return False

    def _cleanup_internal(self) -> int:
        """Caller holds the lock."""
        now = time.time()
        expired = [key for key, exp in self._nonces.items() if now >= exp]

        for key in expired:
            del self._nonces[key]

        return len(expired)

    def _maybe_cleanup(self) -> None:
        """Sweep at most once per cleanup_interval."""
        now = time.time()
        if now - self._last_cleanup >= self._cleanup_interval:
            self._cleanup_internal()
            self._last_cleanup = now

    @property
    def stats(self) -> dict:
        """Counters for consumed, replayed and evicted nonces."""
        return {**self._stats, "active": len(self._nonces), "max_size": self._max_size}


class RedisNonceTracker(NonceTrackerInterface):
    """
    Redis-backed nonce tracker for agents sharing a wallet across processes.

    Uses SET NX with a TTL so the check-and-mark is a single atomic command
    and Redis expires entries on its own.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> tracker = RedisNonceTracker(client)
    """

    def __init__(self, redis_client, key_prefix: str = "vectorx402:nonce:", grace_period: int = 60):
        """
        Args:
            redis_client: redis.asyncio.Redis (or compatible) client.
            key_prefix: Namespace for consumed-nonce keys.
            grace_period: Extra seconds to keep a nonce after its expiry.
        """
        self._redis = redis_client
        self._prefix = key_prefix
        self._grace_period = grace_period

    def _key(self, identity: str, nonce: str) -> str:
        """Redis key for an identity-scoped nonce."""
        return f"{self._prefix}{nonce_key(identity, nonce)}"

    async def is_used(self, identity: str, nonce: str) -> bool:
        """A consumed nonce exists as a key until its TTL runs out."""
        exists = await self._redis.exists(self._key(identity, nonce))
        return exists > 0

    async def consume(self, identity: str, nonce: str, expires_at: float) -> bool:
        """SET NX with TTL matching the retention window."""
        ttl = max(int(expires_at - time.time()) + self._grace_period, 60)
        created = await self._redis.set(self._key(identity, nonce), "1", ex=ttl, nx=True)
        if not created:
            logger.warning(f"Nonce replay blocked: {identity} {nonce}")
        return bool(created)

    async def cleanup_expired(self) -> int:
        """Keys expire through their TTL; nothing to sweep."""
        return 0

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception:
            return False
