"""
Pairing lease: at most one live poller per connection across API workers.
Redis key wa:pairing:{connection_id} (SET NX EX) with in-memory fallback when Redis is
unavailable. The TTL bounds how long a crashed worker can hold a connection.
"""
import threading
import time
from typing import Optional

import redis

from apps.shared.config import REDIS_URL_DEFAULT
from apps.shared.secrets import get_secret
from apps.observability import get_logger

logger = get_logger(__name__)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _get_redis():
    """Redis client from REDIS_URL, or None when unset/unreachable."""
    try:
        url = get_secret("REDIS_URL", REDIS_URL_DEFAULT)
        if not url or not url.strip().startswith(("redis://", "rediss://")):
            return None
        client = redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)
        client.ping()
        return client
    except (redis.RedisError, ValueError) as e:
        logger.info("pairing_lease_memory_fallback", reason=type(e).__name__)
        return None


class PairingLease:
    def __init__(self, redis_client: Optional[object] = None, ttl_seconds: float = 150.0, use_redis: bool = True):
        self.ttl_seconds = ttl_seconds
        self._redis = redis_client if redis_client is not None else (_get_redis() if use_redis else None)
        self._memory: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(connection_id: str) -> str:
        return f"wa:pairing:{connection_id}"

    def acquire(self, connection_id: str, owner: str) -> bool:
        """True if owner now holds the lease (or already held it)."""
        if self._redis is not None:
            try:
                key = self._key(connection_id)
                if self._redis.set(key, owner, nx=True, ex=int(self.ttl_seconds)):
                    return True
                current = self._redis.get(key)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                return current == owner
            except redis.RedisError as e:
                logger.warning("pairing_lease_redis_error", op="acquire", error=type(e).__name__)
        return self._acquire_memory(connection_id, owner)

    def release(self, connection_id: str, owner: str) -> None:
        if self._redis is not None:
            try:
                self._redis.eval(_RELEASE_SCRIPT, 1, self._key(connection_id), owner)
            except redis.RedisError as e:
                logger.warning("pairing_lease_redis_error", op="release", error=type(e).__name__)
        with self._lock:
            held = self._memory.get(connection_id)
            if held and held[0] == owner:
                del self._memory[connection_id]

    def _acquire_memory(self, connection_id: str, owner: str) -> bool:
        now = time.monotonic()
        with self._lock:
            held = self._memory.get(connection_id)
            if held and held[1] > now and held[0] != owner:
                return False
            self._memory[connection_id] = (owner, now + self.ttl_seconds)
            return True
