"""
Simple in-memory caching for the Daily Set service.
Daily boards are expensive to generate (bounded retry loop) and immutable per
date, so they are cached for a day; leaderboards for a few minutes.
"""

import threading
import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Optional

from .logging_utils import get_logger

logger = get_logger("daily_set.cache")


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None

            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        """Set a value in cache with TTL in seconds"""
        with self._lock:
            now = time.time()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            evicted = len(self._cache)
            self._cache.clear()
            self._stats['evictions'] += evicted

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = time.time()
            expired_keys = [key for key, entry in self._cache.items() if now > entry.expires_at]
            for key in expired_keys:
                del self._cache[key]
            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0
            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


# Global cache instance
_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def _board_key(date_str: str, target_sets: int, size: int) -> str:
    return f"daily_board:{date_str}:{target_sets}:{size}"


def cache_daily_board(date_str: str, target_sets: int, size: int, result, ttl_hours: int = 24) -> None:
    """Cache a generated daily board result for the given date and parameters"""
    _cache.set(_board_key(date_str, target_sets, size), result, ttl_hours * 3600)


def get_cached_daily_board(date_str: str, target_sets: int, size: int):
    return _cache.get(_board_key(date_str, target_sets, size))


def get_daily_board(date_str: str):
    """Return the daily BoardResult for a date, generating and caching on a miss."""
    from . import game

    target = game.daily_target_sets()
    size = game.daily_board_size()
    result = get_cached_daily_board(date_str, target, size)
    if result is None:
        result = game.daily_board(date_str, target_sets=target, size=size)
        cache_daily_board(date_str, target, size, result)
    return result


def cache_leaderboard(date_str: str, leaderboard: list, ttl_minutes: int = 5) -> None:
    """Cache leaderboard data with shorter TTL since it changes frequently"""
    _cache.set(f"leaderboard:{date_str}", leaderboard, ttl_minutes * 60)


def get_cached_leaderboard(date_str: str) -> Optional[list]:
    return _cache.get(f"leaderboard:{date_str}")


def invalidate_leaderboard_cache(date_str: str) -> None:
    """Invalidate leaderboard cache when a completion for the date is recorded"""
    _cache.delete(f"leaderboard:{date_str}")


def cleanup_cache_periodically() -> int:
    expired_count = _cache.cleanup_expired()
    if expired_count > 0:
        logger.info("cache_cleanup", extra={"evicted": expired_count})
    return expired_count


def warm_daily_board_cache(dates: list[str]) -> None:
    """Pre-populate cache with daily boards for given dates"""
    for d in dates:
        get_daily_board(d)


def warm_cache_for_today_and_recent(days_ahead: int = 1, days_back: int = 1) -> None:
    """Warm cache with today's board and its neighbours"""
    from .rng import today_str

    today = date.fromisoformat(today_str())
    dates_to_warm = [
        (today + timedelta(days=offset)).isoformat()
        for offset in range(-days_back, days_ahead + 1)
    ]
    warm_daily_board_cache(dates_to_warm)
