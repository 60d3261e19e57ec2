"""
Best-effort engine metrics kept in Redis.

Counters live in one hash; each timed operation gets its own hash of
count/total/max/last milliseconds, and the timed names are tracked in a set
so snapshots never scan the keyspace. Every call is a no-op without Redis and
none of them raise.
"""
from __future__ import annotations
import logging
import time
from typing import Any, Dict

from narrowdown.core.config import settings
from narrowdown.core.redis_client import get_redis

logger = logging.getLogger(__name__)


def _key(*parts: str) -> str:
    return ":".join((settings.cache_key_prefix, "metrics") + parts)


async def increment(name: str, amount: int = 1) -> None:
    r = get_redis()
    if r is None:
        return
    try:
        await r.hincrby(_key("counters"), name, amount)
    except Exception as e:
        logger.debug(f"metrics increment {name} skipped: {e}")


async def record_latency(name: str, milliseconds: float) -> None:
    r = get_redis()
    if r is None:
        return
    ms = round(float(milliseconds), 3)
    key = _key("latency", name)
    try:
        pipe = r.pipeline()
        pipe.sadd(_key("latency_names"), name)
        pipe.hincrby(key, "count", 1)
        pipe.hincrbyfloat(key, "total_ms", ms)
        pipe.hset(key, "last_ms", ms)
        pipe.hget(key, "max_ms")
        results = await pipe.execute()
        if results[-1] is None or ms > float(results[-1]):
            await r.hset(key, "max_ms", ms)
    except Exception as e:
        logger.debug(f"metrics latency {name} skipped: {e}")


class Timer:
    """Async context manager recording the elapsed milliseconds of its block."""

    def __init__(self, name: str):
        self.name = name
        self._start = None

    async def __aenter__(self):
        self._start = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._start is not None:
            await record_latency(self.name, (time.perf_counter() - self._start) * 1000.0)
        return False


async def counters_snapshot() -> Dict[str, int]:
    r = get_redis()
    if r is None:
        return {}
    try:
        raw = await r.hgetall(_key("counters")) or {}
    except Exception as e:
        logger.debug(f"metrics counters unavailable: {e}")
        return {}
    return {str(name): int(float(value or 0)) for name, value in raw.items()}


async def latency_snapshot() -> Dict[str, Dict[str, Any]]:
    r = get_redis()
    if r is None:
        return {}
    try:
        names = sorted(await r.smembers(_key("latency_names")) or [])
        pipe = r.pipeline()
        for name in names:
            pipe.hgetall(_key("latency", name))
        rows = await pipe.execute()
    except Exception as e:
        logger.debug(f"metrics latency unavailable: {e}")
        return {}
    out: Dict[str, Dict[str, Any]] = {}
    for name, row in zip(names, rows):
        row = row or {}
        count = int(float(row.get("count") or 0))
        total = float(row.get("total_ms") or 0.0)
        out[name] = {
            "count": count,
            "avg_ms": round(total / count, 3) if count else 0.0,
            "max_ms": float(row.get("max_ms") or 0.0),
            "last_ms": float(row.get("last_ms") or 0.0),
        }
    return out
