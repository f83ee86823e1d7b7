"""Short-lived cache for per-date absentee counts.

Entries are grouped by service date; within a date each distinct level set
gets its own entry. Every write to a date's documents drops the whole date.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from chapel.config import settings
from chapel.core.time_provider import default_time_provider
from chapel.metrics import record_event


logger = logging.getLogger(__name__)

ABSENTEE_COUNTS_PREFIX = 'absentee_counts'
DATES_INDEX_KEY = f'{ABSENTEE_COUNTS_PREFIX}:dates'


def _utc_now() -> datetime:
    return default_time_provider.utc_naive()


def _date_str(service_date: date | str) -> str:
    return service_date.isoformat() if isinstance(service_date, date) else str(service_date)


def level_set_label(levels: Sequence[str]) -> str:
    return ','.join(sorted({str(level) for level in levels}, key=lambda code: (len(code), code)))


class CountsBackend:
    def get(self, service_date: str, level_set: str) -> Any | None:
        raise NotImplementedError

    def set(self, service_date: str, level_set: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def drop_date(self, service_date: str) -> None:
        raise NotImplementedError

    def drop_all(self) -> None:
        raise NotImplementedError


class MemoryCountsBackend(CountsBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dates: dict[str, dict[str, tuple[datetime, Any]]] = {}

    def get(self, service_date: str, level_set: str) -> Any | None:
        with self._lock:
            entries = self._dates.get(service_date) or {}
            item = entries.get(level_set)
            if not item:
                return None
            expires_at, value = item
            if _utc_now() >= expires_at:
                entries.pop(level_set, None)
                return None
            return value

    def set(self, service_date: str, level_set: str, value: Any, ttl: int) -> None:
        expires_at = _utc_now() + timedelta(seconds=max(1, int(ttl)))
        with self._lock:
            self._dates.setdefault(service_date, {})[level_set] = (expires_at, value)

    def drop_date(self, service_date: str) -> None:
        with self._lock:
            self._dates.pop(service_date, None)

    def drop_all(self) -> None:
        with self._lock:
            self._dates.clear()


class RedisCountsBackend(CountsBackend):
    """One hash per date (field = level set); a set indexes the cached dates."""

    def __init__(self, redis_url: str) -> None:
        import redis  # type: ignore

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    @staticmethod
    def _key(service_date: str) -> str:
        return f'{ABSENTEE_COUNTS_PREFIX}:{service_date}'

    def get(self, service_date: str, level_set: str) -> Any | None:
        raw = self._client.hget(self._key(service_date), level_set)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning('absentee_counts_cache_corrupt', extra={'service_date': service_date})
            return None

    def set(self, service_date: str, level_set: str, value: Any, ttl: int) -> None:
        key = self._key(service_date)
        pipe = self._client.pipeline()
        pipe.hset(key, level_set, json.dumps(value, default=str))
        pipe.expire(key, max(1, int(ttl)))
        pipe.sadd(DATES_INDEX_KEY, service_date)
        pipe.execute()

    def drop_date(self, service_date: str) -> None:
        self._client.delete(self._key(service_date))
        self._client.srem(DATES_INDEX_KEY, service_date)

    def drop_all(self) -> None:
        dates = self._client.smembers(DATES_INDEX_KEY)
        if dates:
            self._client.delete(*[self._key(service_date) for service_date in dates])
        self._client.delete(DATES_INDEX_KEY)


@dataclass
class AbsenteeCountsCache:
    backend: CountsBackend

    def get(self, service_date: date | str, levels: Sequence[str]) -> Any | None:
        day, level_set = _date_str(service_date), level_set_label(levels)
        value = self.backend.get(day, level_set)
        record_event('cache_hit' if value is not None else 'cache_miss')
        logger.debug('absentee counts cache %s: %s [%s]', 'hit' if value is not None else 'miss', day, level_set)
        return value

    def put(self, service_date: date | str, levels: Sequence[str], value: Any, ttl: int | None = None) -> None:
        ttl_value = ttl if ttl is not None else settings.default_cache_ttl
        self.backend.set(_date_str(service_date), level_set_label(levels), value, ttl_value)

    def invalidate(self, service_date: date | str | None = None) -> None:
        if service_date:
            self.backend.drop_date(_date_str(service_date))
        else:
            self.backend.drop_all()
        record_event('cache_invalidate')
        logger.debug('absentee counts cache invalidate: %s', service_date or '*')


def _build_backend() -> CountsBackend:
    if settings.cache_backend == 'redis' and settings.cache_redis_url:
        try:
            return RedisCountsBackend(settings.cache_redis_url)
        except Exception:
            logger.exception('redis_cache_init_failed_falling_back_to_memory')
    return MemoryCountsBackend()


counts_cache = AbsenteeCountsCache(backend=_build_backend())


def invalidate_absentee_counts(service_date: date | str | None = None) -> None:
    counts_cache.invalidate(service_date)
