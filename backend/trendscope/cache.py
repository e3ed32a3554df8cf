"""
Trendscope — Scan Result Caches

Explicit cache objects handed to the scan orchestrator. Expiry is a
constructor parameter; there is no process-wide singleton.

  TTLCache    in-memory, injectable clock, for single-process use and tests
  RedisCache  JSON in Redis; degrades to cache misses when Redis is down

Values must be JSON-serializable (the orchestrator stores model dumps).
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Callable, Optional, Protocol

import structlog

from trendscope.config import get_settings

log = structlog.get_logger(__name__)

KEY_PREFIX = "ts"


class ResultCache(Protocol):
    """Anything the orchestrator can read and write scan results through."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> bool: ...


def make_cache_key(namespace: str, *parts: Any) -> str:
    """Deterministic key such as ``ts:patterns:AAPL:1h``; long keys are hashed."""
    raw = ":".join([namespace] + [str(p) for p in parts])
    if len(raw) > 128:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return f"{KEY_PREFIX}:{raw}"


# ──────────────────────────────────────────────
# In-Memory TTL Cache
# ──────────────────────────────────────────────

class TTLCache:
    """Dictionary cache whose entries expire ``ttl_seconds`` after being set."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().cache_ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any) -> bool:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def stats(self) -> dict:
        with self._lock:
            return {
                "available": True,
                "hits": self._hits,
                "misses": self._misses,
                "keys": len(self._entries),
            }


# ──────────────────────────────────────────────
# Redis Cache
# ──────────────────────────────────────────────

class RedisCache:
    """Thin Redis wrapper with JSON serialization and graceful degradation."""

    def __init__(self, url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        settings = get_settings()
        self._url = url or settings.redis_url
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds)
        self._client = None
        self._available = False
        self._connect()

    def _connect(self):
        try:
            import redis as redis_lib
            self._client = redis_lib.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
            self._client.ping()
            self._available = True
            log.info("cache.connected", url=self._url)
        except Exception as exc:
            log.warning("cache.unavailable", url=self._url, error=str(exc))
            self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss or any Redis error."""
        if not self._available:
            return None
        try:
            raw = self._client.get(key)
        except Exception as exc:
            log.warning("cache.get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> bool:
        if not self._available:
            return False
        try:
            self._client.setex(key, self.ttl_seconds, json.dumps(value, default=str))
            return True
        except Exception as exc:
            log.warning("cache.set_failed", key=key, error=str(exc))
            return False

    def delete(self, key: str) -> bool:
        if not self._available:
            return False
        try:
            self._client.delete(key)
            return True
        except Exception as exc:
            log.warning("cache.delete_failed", key=key, error=str(exc))
            return False

    def clear(self) -> int:
        """Delete every Trendscope key. Returns count deleted."""
        if not self._available:
            return 0
        try:
            keys = list(self._client.scan_iter(match=f"{KEY_PREFIX}:*"))
            return self._client.delete(*keys) if keys else 0
        except Exception as exc:
            log.warning("cache.clear_failed", error=str(exc))
            return 0

    def stats(self) -> dict:
        if not self._available:
            return {"available": False}
        try:
            info = self._client.info("stats")
            return {
                "available": True,
                "hits": info.get("keyspace_hits", 0),
                "misses": info.get("keyspace_misses", 0),
                "keys": self._client.dbsize(),
            }
        except Exception:
            return {"available": False}
