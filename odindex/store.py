import logging
import threading
import time
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class Store:
    """Namespaced string key-value store.

    Every key is prefixed with ``prefix`` so several sites can share one
    backend. Implementations provide atomic get/set/delete/expire per key and
    nothing more.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def connect(self):
        pass

    def close(self):
        pass

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        """Store ``value``; with ``nx`` only when the key is absent. True if written."""
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def expire(self, key: str, seconds: int):
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class RedisStore(Store):
    def __init__(self, url: str, prefix: str = "", timeout: int = 5):
        super().__init__(prefix)
        self.url = url
        self.timeout = timeout
        self._redis = None

    def connect(self):
        self._redis = redis.Redis.from_url(
            self.url,
            decode_responses=True,
            socket_timeout=self.timeout,
            socket_connect_timeout=self.timeout,
        )
        # Fail fast on a bad URL or unreachable server
        self._redis.ping()
        return self

    def close(self):
        if self._redis is not None:
            self._redis.close()
            self._redis = None

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            self.connect()
        return self._redis

    def get(self, key):
        return self.client.get(self.key(key))

    def set(self, key, value, ex=None, nx=False):
        return bool(self.client.set(self.key(key), value, ex=ex, nx=nx))

    def delete(self, key):
        self.client.delete(self.key(key))

    def expire(self, key, seconds):
        self.client.expire(self.key(key), seconds)

    def exists(self, key):
        return self.client.exists(self.key(key)) > 0


class MemoryStore(Store):
    """In-process store, used when no Redis URL is configured."""

    def __init__(self, prefix: str = "", clock=time.monotonic):
        super().__init__(prefix)
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key):
        with self._lock:
            entry = self._live(self.key(key))
            return entry[0] if entry else None

    def set(self, key, value, ex=None, nx=False):
        expires_at = self._clock() + ex if ex else None
        with self._lock:
            full_key = self.key(key)
            if nx and self._live(full_key) is not None:
                return False
            self._data[full_key] = (str(value), expires_at)
            return True

    def delete(self, key):
        with self._lock:
            self._data.pop(self.key(key), None)

    def expire(self, key, seconds):
        with self._lock:
            full_key = self.key(key)
            entry = self._live(full_key)
            if entry is not None:
                self._data[full_key] = (entry[0], self._clock() + seconds)

    def exists(self, key):
        with self._lock:
            return self._live(self.key(key)) is not None

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(self.key(key))
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()


class Cache:
    """The ``_cache:`` sub-namespace of a store."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, key: str) -> Optional[str]:
        return self.store.get(f"_cache:{key}")

    def set(self, key: str, value: str, ex: int = 300, nx: bool = False) -> bool:
        return self.store.set(f"_cache:{key}", value, ex=ex, nx=nx)

    def exists(self, key: str) -> bool:
        return self.store.exists(f"_cache:{key}")

    def delete(self, key: str):
        self.store.delete(f"_cache:{key}")


def open_store(url: Optional[str], prefix: str = "") -> Store:
    if not url:
        logger.warning("REDIS_URL not set, using an in-process store. Sessions will not survive a restart.")
        return MemoryStore(prefix)

    store = RedisStore(url, prefix)
    store.connect()
    logger.info("Connected to Redis.")
    return store
