"""
Redis cache for backend lookups and double-submit guards.

Two kinds of entries live here:
- short-lived copies of backend reads, such as a customer's wholesale
  request status or the admin's wholesale customer list;
- in-flight markers that stop a second submit or decision for the same
  action while the first one is still talking to the backend.

Entries are isolated by scope ('user:<id>' per customer, 'admin' for the
review panel). When Redis is disabled or unreachable every read misses and
every guard is granted, so the storefront keeps working without it.
"""

import logging
import json
from typing import Any, Optional, Callable

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask, current_app

logger = logging.getLogger(__name__)

ADMIN_SCOPE = 'admin'


def user_scope(user_id: Any) -> str:
    return f"user:{user_id}"


class CacheService:
    """
    Scope-isolated cache.

    Keys pattern: {prefix}:{scope}:{module}:{key}
    e.g. storefront:user:42:wholesale:status
    """

    def __init__(self, app: Optional[Flask] = None):
        self.client: Optional[redis.Redis] = None
        self._enabled: bool = False
        self._prefix: str = ""

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Connect to REDIS_URL unless CACHE_ENABLED is off; a failed ping disables the cache."""
        self._enabled = app.config.get('CACHE_ENABLED', True)
        self._prefix = app.config.get('CACHE_KEY_PREFIX', 'storefront')
        redis_url = app.config.get('REDIS_URL', 'redis://redis:6379/0')

        if not self._enabled:
            logger.info("[CACHE] Cache is DISABLED via config")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[CACHE] Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[CACHE] Redis connection failed: {e}. Cache DISABLED.")
            self._enabled = False
            self.client = None

    def is_available(self) -> bool:
        if not self._enabled or not self.client:
            return False
        try:
            self.client.ping()
            return True
        except (ConnectionError, RedisError):
            return False

    def _build_key(self, scope: str, module: str, key: str) -> str:
        return f"{self._prefix}:{scope}:{module}:{key}"

    def get(self, scope: str, module: str, key: str) -> Optional[Any]:
        """Cached backend payload, or None on a miss or any Redis failure."""
        if not self.is_available():
            return None
        try:
            value = self.client.get(self._build_key(scope, module, key))
            if value is None:
                return None
            return json.loads(value)
        except (RedisError, ValueError) as e:
            logger.warning(f"[CACHE] Get error: {e}")
            return None

    def set(self, scope: str, module: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.is_available():
            return False
        try:
            if ttl is None:
                ttl = current_app.config.get('CACHE_DEFAULT_TTL', 60)
            self.client.setex(self._build_key(scope, module, key), ttl, json.dumps(value))
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] Set error: {e}")
            return False

    def delete(self, scope: str, module: str, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(self._build_key(scope, module, key))
            return True
        except RedisError as e:
            logger.warning(f"[CACHE] Delete error: {e}")
            return False

    def memoize(self, scope: str, module: str, key: str, loader_fn: Callable[[], Any],
                ttl: Optional[int] = None) -> Any:
        """Return the cached value, or call loader_fn and cache what it returns."""
        cached = self.get(scope, module, key)
        if cached is not None:
            return cached
        value = loader_fn()
        self.set(scope, module, key, value, ttl)
        return value

    def acquire_in_flight(self, scope: str, action: str, ttl: int) -> bool:
        """
        Mark an action as in flight. Returns False if it already is.

        The marker expires after ttl seconds so a crashed request cannot
        block the action for good. Without Redis every call is allowed.
        """
        if not self.is_available():
            return True
        try:
            acquired = self.client.set(self._build_key(scope, 'inflight', action), '1', nx=True, ex=ttl)
            return bool(acquired)
        except RedisError as e:
            logger.warning(f"[CACHE] In-flight guard error: {e}")
            return True

    def release_in_flight(self, scope: str, action: str) -> None:
        self.delete(scope, 'inflight', action)


_cache_service: Optional[CacheService] = None


def init_cache(app: Flask) -> None:
    global _cache_service
    _cache_service = CacheService(app)
    app.extensions['cache'] = _cache_service


def get_cache() -> CacheService:
    if _cache_service is None:
        raise RuntimeError("Cache not initialized.")
    return _cache_service
