"""Redis client and the shared local-storage layer.

Redis plays the part the browser's ``localStorage`` plays for the
dashboard: a JSON key/value area shared by every tab (client) of the same
profile. All tabs may write concurrently; last write wins.
"""
import json
import redis
from typing import Any, Optional
from datetime import timedelta

from codementor.core.logging import get_logger
from codementor.core.config import settings

logger = get_logger(__name__)

# Redis connection pool (lazy initialization)
_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
    decode_responses: bool = True
) -> Optional[redis.Redis]:
    """Get or create Redis client with connection pooling.

    Uses settings from environment variables if not explicitly provided.
    Returns None if Redis is not available (graceful fallback).

    Args:
        host: Redis host (default from REDIS_HOST env)
        port: Redis port (default from REDIS_PORT env)
        db: Redis database number (default from REDIS_DB env)
        password: Redis password (default from REDIS_PASSWORD env)
        decode_responses: Whether to decode responses to strings

    Returns:
        Redis client instance or None if unavailable
    """
    global _redis_pool, _redis_client

    host = host or settings.redis_host
    port = port or settings.redis_port
    db = db if db is not None else settings.redis_db
    password = password or settings.redis_password

    if _redis_client is None:
        logger.info(f"Initializing Redis connection pool: {host}:{port}")

        try:
            _redis_pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=decode_responses,
                max_connections=50,
                socket_connect_timeout=5,
                socket_timeout=5,
            )

            _redis_client = redis.Redis(connection_pool=_redis_pool)

            _redis_client.ping()
            logger.info("Redis connection established successfully")

        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            _redis_client = None
            return None
        except Exception as e:
            logger.error(f"Redis initialization error: {e}", exc_info=True)
            _redis_client = None
            return None

    return _redis_client


class LocalStorage:
    """JSON key/value storage shared by all tabs of a profile.

    Reads always go to Redis; nothing is cached in memory, since another tab
    may have written the key since the last read. Corrupt entries are
    logged and reported as missing.

    Example:
        >>> storage = LocalStorage()
        >>> storage.set_json("session_metadata_42", {"last_tab": "chat"})
        >>> storage.get_json("session_metadata_42")
        {'last_tab': 'chat'}
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: str = "codementor:",
        ttl_days: Optional[int] = None,
    ):
        """Initialize storage.

        Args:
            redis_client: Redis client (creates new if None)
            key_prefix: Prefix for every key
            ttl_days: Optional expiry; browser storage has none, so default None
        """
        self.redis = redis_client or get_redis_client()
        self.key_prefix = key_prefix
        self.ttl = timedelta(days=ttl_days) if ttl_days else None

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get_json(self, key: str, default: Any = None) -> Any:
        """Read and parse a key.

        Returns:
            Parsed value, or ``default`` if missing, unreadable or corrupt
        """
        try:
            data = self.redis.get(self._make_key(key))
        except Exception as e:
            logger.error(f"Error reading storage key {key}: {e}", exc_info=True)
            return default

        if data is None:
            return default

        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Corrupt storage entry {key} dropped: {e}")
            self.remove(key)
            return default

    def set_json(self, key: str, value: Any) -> bool:
        """Serialize and write a key.

        Returns:
            True if successful
        """
        try:
            serialized = json.dumps(value, default=str)
            if self.ttl:
                self.redis.setex(self._make_key(key), self.ttl, serialized)
            else:
                self.redis.set(self._make_key(key), serialized)
            logger.debug(f"Storage key written: {key}")
            return True
        except Exception as e:
            logger.error(f"Error writing storage key {key}: {e}", exc_info=True)
            return False

    def remove(self, key: str) -> bool:
        """Delete a key.

        Returns:
            True if a key was deleted
        """
        try:
            return bool(self.redis.delete(self._make_key(key)))
        except Exception as e:
            logger.error(f"Error deleting storage key {key}: {e}", exc_info=True)
            return False
