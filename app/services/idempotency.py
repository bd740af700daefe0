"""Short-lived claims and locks on a key-value store.

Webhook deliveries are deduplicated by claiming `payos:webhook:<orderCode>`; concurrent
payment-option creation for one booking is serialized with a token lock. The store is
passed in explicitly so several API instances can share Redis, while tests and single
process dev runs use `InMemoryStore`.
"""
import logging
import secrets
import threading
import time
from contextlib import contextmanager

import redis

from app.core.config import settings
from app.core.errors import ConflictError, ServiceUnavailableError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "app:lock:"

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class KeyValueStore:
    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        raise NotImplementedError


class RedisStore(KeyValueStore):
    def __init__(self, client: redis.Redis):
        self.client = client
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2))

    def set_if_absent(self, key, value, ttl_seconds):
        return bool(self.client.set(key, value, nx=True, ex=ttl_seconds))

    def get(self, key):
        return self.client.get(key)

    def delete(self, key):
        return self.client.delete(key) == 1

    def delete_if_equals(self, key, value):
        return self._compare_and_delete(keys=[key], args=[value]) == 1


class InMemoryStore(KeyValueStore):
    """Process-local store; expired keys are dropped lazily on access."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def set_if_absent(self, key, value, ttl_seconds):
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_seconds)
            return True

    def get(self, key):
        with self._lock:
            return self._live(key)

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_if_equals(self, key, value):
        with self._lock:
            if self._live(key) == value:
                del self._data[key]
                return True
            return False

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
            return len(expired)


_store: KeyValueStore | None = None


def build_store(url: str | None = None) -> KeyValueStore:
    url = url or settings.REDIS_URL
    try:
        store = RedisStore.from_url(url)
        store.client.ping()
        return store
    except redis.RedisError as e:
        logger.warning("Redis unavailable (%s); falling back to in-memory idempotency store", e)
        return InMemoryStore()


def get_store() -> KeyValueStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def set_store(store: KeyValueStore | None) -> None:
    global _store
    _store = store


def claim_idempotency_key(store: KeyValueStore, key: str, ttl_seconds: int = 30) -> bool | None:
    """True when claimed, False for a duplicate, None when the store could not answer."""
    try:
        claimed = store.set_if_absent(key, str(int(time.time())), ttl_seconds)
    except redis.RedisError as e:
        logger.warning("Could not claim idempotency key %s: %s", key, e)
        return None
    if not claimed:
        logger.debug("Idempotency key already claimed: %s", key)
    return claimed


def release_idempotency_key(store: KeyValueStore, key: str) -> bool:
    try:
        return store.delete(key)
    except redis.RedisError as e:
        logger.warning("Could not release idempotency key %s: %s", key, e)
        return False


def acquire_lock(store: KeyValueStore, key: str, ttl_seconds: int | None = None) -> str | None:
    """Return a lock token, or None if someone else holds the lock.

    Raises ServiceUnavailableError when the store cannot be reached.
    """
    token = f"{int(time.time() * 1000):x}-{secrets.token_hex(4)}"
    try:
        acquired = store.set_if_absent(LOCK_PREFIX + key, token, ttl_seconds or settings.LOCK_TTL_SECONDS)
    except redis.RedisError as e:
        logger.error("acquire_lock error for %s: %s", key, e)
        raise ServiceUnavailableError("Lock service unavailable, please retry shortly") from e
    return token if acquired else None


def release_lock(store: KeyValueStore, key: str, token: str) -> bool:
    try:
        return store.delete_if_equals(LOCK_PREFIX + key, token)
    except redis.RedisError as e:
        logger.warning("release_lock error for %s: %s", key, e)
        return False


@contextmanager
def hold_lock(store: KeyValueStore, key: str, ttl_seconds: int | None = None):
    token = acquire_lock(store, key, ttl_seconds)
    if token is None:
        raise ConflictError("Another request is already processing this booking, please retry")
    try:
        yield token
    finally:
        release_lock(store, key, token)
