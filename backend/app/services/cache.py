"""
Redis Cache Service

Caches the rendered view of a query with TTL expiration.
Falls back gracefully when Redis is unavailable. The relational store
stays authoritative: every failure here is logged and treated as a miss.
"""
import time
from typing import Dict, Optional, Tuple

import redis

from app.core.exceptions import CacheConnectionError
from app.core.logging import get_logger
from app.schemas.query import QueryView

logger = get_logger(__name__)


class ResultCache:
    """Redis-based cache for query views with TTL."""

    DEFAULT_TTL_SECONDS = 300

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        connect: bool = True
    ):
        self.host = host
        self.port = port
        self.default_ttl = default_ttl
        self._client: Optional[redis.Redis] = None
        self._connected = False
        # key -> (expires_at monotonic seconds, serialized view)
        self._fallback_cache: Dict[str, Tuple[float, str]] = {}
        if connect:
            self._connect()

    def _connect(self):
        """Attempt to connect to Redis."""
        try:
            client = redis.Redis(
                host=self.host,
                port=self.port,
                db=0,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2
            )
            client.ping()
            self._client = client
            self._connected = True
            logger.info("Connected to Redis cache")
        except (redis.ConnectionError, redis.TimeoutError) as e:
            error = CacheConnectionError(self.host, self.port, str(e))
            logger.warning(f"Redis not available, using in-memory fallback: {error}")
            self._client = None
            self._connected = False

    def _get_key(self, query_id: str) -> str:
        """Generate Redis key for a query view."""
        return f"query_view:{query_id}"

    def put(self, query_id: str, view: QueryView, ttl: Optional[int] = None) -> bool:
        """
        Store a query view in cache.

        Args:
            query_id: The query the view belongs to
            view: The view to cache
            ttl: Time-to-live in seconds (default: 300)

        Returns:
            True if successful, False otherwise
        """
        ttl = ttl or self.default_ttl
        key = self._get_key(query_id)

        try:
            payload = view.model_dump_json()
            if self._connected and self._client:
                self._client.setex(key, ttl, payload)
            else:
                self._fallback_cache[key] = (time.monotonic() + ttl, payload)
            return True
        except Exception as e:
            logger.error(f"Cache set error: {e}")
            return False

    def get(self, query_id: str) -> Optional[QueryView]:
        """
        Retrieve a query view from cache.

        Returns:
            QueryView if found and not expired, None otherwise
        """
        key = self._get_key(query_id)

        try:
            if self._connected and self._client:
                data = self._client.get(key)
            else:
                data = self._get_fallback(key)

            if data:
                return QueryView.model_validate_json(data)
            return None
        except Exception as e:
            logger.error(f"Cache get error: {e}")
            return None

    def invalidate(self, query_id: str) -> bool:
        """Delete a query view from cache."""
        key = self._get_key(query_id)

        try:
            if self._connected and self._client:
                return bool(self._client.delete(key))
            return self._fallback_cache.pop(key, None) is not None
        except Exception as e:
            logger.error(f"Cache delete error: {e}")
            return False

    def _get_fallback(self, key: str) -> Optional[str]:
        entry = self._fallback_cache.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if time.monotonic() >= expires_at:
            self._fallback_cache.pop(key, None)
            return None
        return payload

    @property
    def is_connected(self) -> bool:
        """Check if Redis is connected."""
        return self._connected
