"""
Crawl result caches.
Swappable implementations of CrawlCache; nothing here is a module-level
singleton so tests can pass NullCrawlCache.
"""

import json
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Optional, Tuple

from .backends import CrawlCache
from .config import settings
from .schemas import Source

logger = logging.getLogger(__name__)


class NullCrawlCache(CrawlCache):
    """Never caches anything."""

    def get(self, url: str) -> Optional[Source]:
        return None

    def set(self, url: str, value: Source) -> None:
        return None


class InMemoryCrawlCache(CrawlCache):
    """
    In-memory LRU cache with TTL.
    Use for development or single-instance deployments.
    """

    def __init__(self, max_entries: int = None, default_ttl: int = None):
        self.max_entries = max_entries or settings.CRAWL_CACHE_MAX_ENTRIES
        self.default_ttl = default_ttl or settings.CRAWL_CACHE_TTL
        self._cache: "OrderedDict[str, Tuple[float, Source]]" = OrderedDict()

    def _is_expired(self, timestamp: float) -> bool:
        return (datetime.now().timestamp() - timestamp) > self.default_ttl

    def get(self, url: str) -> Optional[Source]:
        entry = self._cache.get(url)
        if entry is None:
            return None

        timestamp, value = entry
        if self._is_expired(timestamp):
            del self._cache[url]
            return None

        self._cache.move_to_end(url)
        logger.debug(f"Crawl cache hit: {url}")
        return value

    def set(self, url: str, value: Source) -> None:
        self._cache[url] = (datetime.now().timestamp(), value)
        self._cache.move_to_end(url)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> dict:
        valid_count = sum(1 for ts, _ in self._cache.values() if not self._is_expired(ts))
        return {
            "total_keys": len(self._cache),
            "valid_keys": valid_count,
            "expired_keys": len(self._cache) - valid_count,
        }


class RedisCrawlCache(CrawlCache):
    """
    Redis-backed crawl cache for distributed deployments.
    Degrades to a miss on any Redis error.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        default_ttl: int = None,
        prefix: str = "crawl:",
    ):
        self.redis_url = redis_url
        self.default_ttl = default_ttl or settings.CRAWL_CACHE_TTL
        self.prefix = prefix
        self._client = None

    @property
    def client(self):
        """Lazy load Redis client."""
        if self._client is None:
            try:
                import redis

                self._client = redis.from_url(self.redis_url)
                self._client.ping()
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}. Crawl cache disabled.")
                return None
        return self._client

    def _make_key(self, url: str) -> str:
        return f"{self.prefix}{url}"

    def get(self, url: str) -> Optional[Source]:
        if self.client is None:
            return None

        try:
            value = self.client.get(self._make_key(url))
            if value:
                logger.debug(f"Crawl cache hit: {url}")
                return Source(**json.loads(value))
        except Exception as e:
            logger.error(f"Redis get error: {e}")

        return None

    def set(self, url: str, value: Source) -> None:
        if self.client is None:
            return

        try:
            self.client.set(
                self._make_key(url), value.model_dump_json(), ex=self.default_ttl
            )
        except Exception as e:
            logger.error(f"Redis set error: {e}")
