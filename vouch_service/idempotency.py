"""
Idempotency records for vouch requests.

A caller-supplied key is claimed before the transaction runs and replaced by
the committed result afterwards. Keys are scoped to the voucher and expire
after a bounded window.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from common.redis_client import RedisClient
from common.settings import Settings
from vouch_service.errors import StorageError

logger = logging.getLogger(__name__)

_PENDING = object()

class MemoryIdempotencyStore:
    """Process-local store for single-worker deployments and tests"""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        # insertion order is expiry order: every write re-inserts at the end
        self._entries: Dict[Tuple[str, str], Tuple[Any, float]] = {}
        self._guard = threading.Lock()

    def _live(self, name) -> Optional[Any]:
        entry = self._entries.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[name]
            return None
        return value

    def _put(self, name, value) -> None:
        self._entries.pop(name, None)
        self._entries[name] = (value, self.clock() + self.ttl_seconds)

    def _purge_expired(self) -> None:
        now = self.clock()
        while self._entries:
            name = next(iter(self._entries))
            if self._entries[name][1] > now:
                break
            del self._entries[name]

    def claim(self, scope: str, key: str) -> bool:
        with self._guard:
            self._purge_expired()
            if self._live((scope, key)) is not None:
                return False
            self._put((scope, key), _PENDING)
            return True

    def get_result(self, scope: str, key: str) -> Optional[Dict[str, Any]]:
        with self._guard:
            value = self._live((scope, key))
            return None if value is None or value is _PENDING else value

    def is_pending(self, scope: str, key: str) -> bool:
        with self._guard:
            return self._live((scope, key)) is _PENDING

    def store_result(self, scope: str, key: str, result: Dict[str, Any]) -> None:
        with self._guard:
            self._purge_expired()
            self._put((scope, key), result)

    def release(self, scope: str, key: str) -> None:
        with self._guard:
            if self._live((scope, key)) is _PENDING:
                del self._entries[(scope, key)]

    def stats(self) -> Dict[str, Any]:
        with self._guard:
            return {"backend": "memory", "entries": len(self._entries)}

class RedisIdempotencyStore:
    """Shared store so retries landing on another worker are still deduplicated"""

    def __init__(self, client: RedisClient, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @contextmanager
    def _unavailable_as_storage_error(self):
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"❌ Idempotency store error: {e}")
            raise StorageError("Idempotency store unavailable", original_error=e) from e

    def claim(self, scope: str, key: str) -> bool:
        with self._unavailable_as_storage_error():
            return self.client.claim(scope, key, self.ttl_seconds)

    def get_result(self, scope: str, key: str) -> Optional[Dict[str, Any]]:
        with self._unavailable_as_storage_error():
            return self.client.get_result(scope, key)

    def is_pending(self, scope: str, key: str) -> bool:
        with self._unavailable_as_storage_error():
            return self.client.is_pending(scope, key)

    def store_result(self, scope: str, key: str, result: Dict[str, Any]) -> None:
        with self._unavailable_as_storage_error():
            self.client.store_result(scope, key, result, self.ttl_seconds)

    def release(self, scope: str, key: str) -> None:
        with self._unavailable_as_storage_error():
            self.client.release(scope, key)

    def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", **self.client.get_cache_stats()}

def build_idempotency_store(settings: Settings):
    if settings.redis_url:
        client = RedisClient(settings.redis_url)
        if not client.ping():
            logger.warning("Redis unreachable at startup; idempotent vouches will fail until it recovers")
        return RedisIdempotencyStore(client, settings.idempotency_ttl_seconds)
    return MemoryIdempotencyStore(settings.idempotency_ttl_seconds)
