import json
import logging
import redis
from typing import Optional, Any

from pyqvault.config import Config

logger = logging.getLogger(__name__)


class ListingCache:
    """
    Redis cache for public listing responses. Every helper degrades to a
    cache miss when Redis is disabled or unreachable.
    """

    def __init__(self, config: Config, client: Optional[redis.Redis] = None):
        self.config = config
        self._client = client
        self._connect_failed = False

    def get_client(self) -> Optional[redis.Redis]:
        """Get or create the Redis client"""
        if not self.config.REDIS_ENABLED or self._connect_failed:
            return None

        if self._client is None:
            try:
                client = redis.Redis(
                    host=self.config.REDIS_HOST,
                    port=self.config.REDIS_PORT,
                    password=self.config.REDIS_PASSWORD,
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2
                )
                client.ping()
                logger.info("Connected to Redis at %s:%s", self.config.REDIS_HOST, self.config.REDIS_PORT)
                self._client = client
            except redis.RedisError as e:
                logger.warning("Failed to connect to Redis, listing cache disabled: %s", e)
                self._connect_failed = True
                return None

        return self._client

    def cache_get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        try:
            client = self.get_client()
            if not client:
                return None

            value = client.get(key)
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning("Cache get error: %s", e)
            return None

    def cache_set(self, key: str, value: Any, ttl: int = None) -> bool:
        """Set value in cache with optional TTL"""
        try:
            client = self.get_client()
            if not client:
                return False

            if ttl is None:
                ttl = self.config.CACHE_TTL

            client.setex(key, ttl, json.dumps(value))
            return True
        except (redis.RedisError, TypeError) as e:
            logger.warning("Cache set error: %s", e)
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern"""
        try:
            client = self.get_client()
            if not client:
                return 0

            keys = list(client.scan_iter(match=pattern))
            if keys:
                return client.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning("Cache invalidate error: %s", e)
            return 0
