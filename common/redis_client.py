"""
Redis client wrapper for vouch idempotency records
"""
import json
import logging
import redis
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

PENDING = "__pending__"

class RedisClient:
    """Thin wrapper with the key layout used by the vouch service"""

    def __init__(self, url: str = None, client: "redis.Redis" = None):
        if client is None and not url:
            raise ValueError("RedisClient needs a url or a client")
        self.client = client or redis.Redis.from_url(url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    @staticmethod
    def idempotency_key(scope: str, key: str) -> str:
        return f"vouch:idem:{scope}:{key}"

    def claim(self, scope: str, key: str, ttl_seconds: int) -> bool:
        """Reserve a key; False if another attempt already holds or completed it"""
        return bool(self.client.set(self.idempotency_key(scope, key), PENDING, nx=True, ex=ttl_seconds))

    def get_result(self, scope: str, key: str) -> Optional[Dict[str, Any]]:
        """Committed result for a key, None when unknown or still pending"""
        value = self.client.get(self.idempotency_key(scope, key))
        if value is None or value == PENDING:
            return None
        return json.loads(value)

    def is_pending(self, scope: str, key: str) -> bool:
        return self.client.get(self.idempotency_key(scope, key)) == PENDING

    def store_result(self, scope: str, key: str, result: Dict[str, Any], ttl_seconds: int) -> None:
        self.client.set(self.idempotency_key(scope, key), json.dumps(result), ex=ttl_seconds)

    def release(self, scope: str, key: str) -> None:
        """Drop a pending claim after a failed attempt"""
        name = self.idempotency_key(scope, key)
        if self.client.get(name) == PENDING:
            self.client.delete(name)

    def get_cache_stats(self) -> Dict[str, Any]:
        try:
            info = self.client.info()
            return {
                "connected": True,
                "used_memory": info.get("used_memory_human", "0B"),
                "connected_clients": info.get("connected_clients", 0),
            }
        except redis.RedisError as e:
            return {"connected": False, "error": str(e)}
