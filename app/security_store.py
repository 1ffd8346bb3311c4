"""
Shared key/value store for security state
Lockout counters, token blacklist, magic-link single-use markers and rate limits
live behind one small interface: in-process memory for tests and single-worker
runs, Redis when REDIS_URL is set.
"""

import logging
import time
from threading import Lock
from typing import Optional

import redis

from .config import REDIS_URL

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Minimal store interface (string values, optional expiry in seconds)"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        """Atomically set ``key`` unless it exists; True when this call set it"""
        raise NotImplementedError

    def incr(self, key: str, ex: Optional[int] = None) -> int:
        """Increment a counter; ``ex`` is applied when the counter is created"""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ttl(self, key: str) -> int:
        """Seconds left, -1 without expiry, -2 when missing (Redis semantics)"""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryStore(KeyValueStore):
    """Process-local store; expiry is checked lazily on access"""

    def __init__(self):
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = Lock()

    def _live(self, key: str) -> Optional[tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return entry

    @staticmethod
    def _expiry(ex: Optional[int]) -> Optional[float]:
        return time.monotonic() + ex if ex else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (str(value), self._expiry(ex))

    def set_if_absent(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (str(value), self._expiry(ex))
            return True

    def incr(self, key: str, ex: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._expiry(ex))
                return 1
            count = int(entry[0]) + 1
            self._data[key] = (str(count), entry[1])
            return count

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(entry[1] - time.monotonic()))

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisStore(KeyValueStore):
    """Store backed by a shared Redis (works with Upstash URLs too)"""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        masked_url = f"{url.split('@')[0].split(':')[0]}:****@{url.split('@')[1]}" if "@" in url else "****"
        logger.info(f"📡 Using Redis URL connection: {masked_url}")
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )
        client.ping()
        logger.info("Redis connected successfully via URL")
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self.client.set(key, value, ex=ex)

    def set_if_absent(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return bool(self.client.set(key, value, ex=ex, nx=True))

    def incr(self, key: str, ex: Optional[int] = None) -> int:
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        if ex and ttl == -1:
            self.client.expire(key, ex)
        return int(count)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))


_store: Optional[KeyValueStore] = None


def get_store() -> KeyValueStore:
    """Process-wide store, created on first use from REDIS_URL"""
    global _store
    if _store is None:
        if REDIS_URL:
            logger.info("🔄 Initializing Redis connection for security store...")
            try:
                _store = RedisStore.from_url(REDIS_URL)
            except redis.RedisError as e:
                logger.error(f"❌ Failed to connect to Redis via URL: {str(e)}")
                raise
        else:
            logger.info("🧠 REDIS_URL not set - using in-memory security store")
            _store = InMemoryStore()
    return _store


def set_store(store: Optional[KeyValueStore]) -> None:
    """Swap the store (tests inject a fresh InMemoryStore)"""
    global _store
    _store = store
