# tenderly/session_store.py
"""TTL-bound key-value cache for drafts, payment records and advisory locks."""
import json
import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from .config import get_settings

logger = logging.getLogger(__name__)

# Deletes the lock only while it still holds the caller's token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def new_lock_token() -> str:
    return secrets.token_hex(16)


class LockService:
    """Advisory mutual exclusion: acquire-with-ttl / release.

    ``acquire_lock`` returns an owner token, or ``None`` when the lock is
    held. ``release_lock`` only frees the lock while that token still owns
    it, so a holder whose lock lapsed cannot free a later holder's lock.
    """

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        raise NotImplementedError

    def release_lock(self, key: str, token: str) -> bool:
        raise NotImplementedError


class SessionStore(LockService):
    """JSON values with a per-key TTL."""

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class RedisSessionStore(SessionStore):
    """Redis backend. Lock = ``SET key <token> NX EX ttl``, released by compare-and-delete."""

    def __init__(self, client: redis.Redis, key_prefix: str = "tenderly:"):
        self.client = client
        self.key_prefix = key_prefix
        self._release = client.register_script(RELEASE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.client.setex(self._key(key), ttl_seconds, json.dumps(value, default=str))

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding non-JSON cache value at {key}")
            return None

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = new_lock_token()
        if self.client.set(self._key(f"lock:{key}"), token, nx=True, ex=ttl_seconds):
            return token
        return None

    def release_lock(self, key: str, token: str) -> bool:
        released = bool(self._release(keys=[self._key(f"lock:{key}")], args=[token]))
        if not released:
            logger.warning(f"Lock {key} lapsed before release")
        return released

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False


class InMemorySessionStore(SessionStore):
    """Process-local fallback used when Redis is not configured.

    ``clock`` returns the current aware datetime and may be replaced to
    simulate TTL expiry.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._mutex = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires = entry
        if expires <= self.clock():
            del self._entries[key]
            return None
        return raw

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._mutex:
            self._entries[key] = (json.dumps(value, default=str), self.clock() + timedelta(seconds=ttl_seconds))

    def get(self, key: str) -> Optional[Any]:
        with self._mutex:
            raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key: str) -> None:
        with self._mutex:
            self._entries.pop(key, None)

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        lock_key = f"lock:{key}"
        with self._mutex:
            if self._live(lock_key) is not None:
                return None
            token = new_lock_token()
            self._entries[lock_key] = (json.dumps(token), self.clock() + timedelta(seconds=ttl_seconds))
            return token

    def release_lock(self, key: str, token: str) -> bool:
        lock_key = f"lock:{key}"
        with self._mutex:
            raw = self._live(lock_key)
            if raw is None or json.loads(raw) != token:
                logger.warning(f"Lock {key} lapsed before release")
                return False
            del self._entries[lock_key]
            return True


@lru_cache()
def get_session_store() -> SessionStore:
    """Shared store; Redis when REDIS_URL is set, otherwise in-memory."""
    settings = get_settings()
    if settings.redis_enabled:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisSessionStore(client, key_prefix=settings.redis_key_prefix)
    logger.warning("REDIS_URL not set, using in-memory session store")
    return InMemorySessionStore()
