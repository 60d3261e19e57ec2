"""
response_cache.py

Tiered response cache: the durable document store is the primary tier and a
bounded in-process map acts both as the fallback when the store is
unreachable and as a copy of every entry successfully read from or written
to the store. Caching is best effort; nothing here raises into callers.
"""
import hashlib
import json
import logging
from collections import OrderedDict
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from narrowdown.core import metrics
from narrowdown.core.errors import CacheBackendUnavailable
from narrowdown.schemas import CacheEntry
from narrowdown.utils.timezone import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Query/credential fields that must never influence a cache id
EXCLUDED_KEY_FIELDS = frozenset({"api_key", "apikey"})


def _param_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_param_list(part: Any) -> bool:
    return (
        isinstance(part, (list, tuple))
        and len(part) > 0
        and all(isinstance(p, (list, tuple)) and len(p) == 2 and isinstance(p[0], str) for p in part)
    )


def canonicalize_part(part: Any) -> Any:
    """Reduce a key part to a JSON value that does not depend on incidental ordering.

    Mappings are sorted by key, query-parameter collections (httpx.QueryParams or
    a list of (name, value) pairs) become a sorted list of string pairs, sets are
    sorted, plain lists keep their order. Credential fields are dropped.
    """
    if part is None or isinstance(part, (str, bool, int, float)):
        return part
    if isinstance(part, datetime):
        return part.isoformat()
    if isinstance(part, httpx.QueryParams):
        pairs = part.multi_items()
        return sorted(
            [k, _param_value(v)] for k, v in pairs if k.lower() not in EXCLUDED_KEY_FIELDS
        )
    if _is_param_list(part):
        return sorted(
            [k, _param_value(v)] for k, v in part if k.lower() not in EXCLUDED_KEY_FIELDS
        )
    if isinstance(part, Mapping):
        return {
            str(k): canonicalize_part(v)
            for k, v in sorted(part.items(), key=lambda kv: str(kv[0]))
            if str(k).lower() not in EXCLUDED_KEY_FIELDS
        }
    if isinstance(part, (set, frozenset)):
        return sorted((canonicalize_part(p) for p in part), key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(part, (list, tuple)):
        return [canonicalize_part(p) for p in part]
    return str(part)


def normalize_key_parts(parts: Any) -> List[Any]:
    if isinstance(parts, (list, tuple)) and not _is_param_list(parts):
        return [canonicalize_part(p) for p in parts]
    return [canonicalize_part(parts)]


def build_cache_id(parts: Any) -> str:
    """Deterministic fixed-length id (sha256 hex) for a list of key parts."""
    raw = json.dumps(normalize_key_parts(parts), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _has_body(body: Any) -> bool:
    return isinstance(body, str) and len(body) > 0


class TieredResponseCache:
    def __init__(
        self,
        store=None,
        require_durable: bool = False,
        max_memory_entries: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.require_durable = require_durable
        self.max_memory_entries = max(1, int(max_memory_entries))
        self._clock = clock or utc_now
        self._memory: "OrderedDict[Tuple[str, str], CacheEntry]" = OrderedDict()
        self.last_error: Optional[str] = None

    # -- in-process tier -------------------------------------------------
    def _remember(self, collection: str, doc_id: str, entry: CacheEntry) -> None:
        if self.require_durable or not _has_body(entry.body):
            return
        key = (collection, doc_id)
        # Overwrites are new insertions for eviction purposes
        self._memory.pop(key, None)
        self._memory[key] = entry
        while len(self._memory) > self.max_memory_entries:
            self._memory.popitem(last=False)

    def _expired(self, fetched_at: Optional[datetime], ttl_seconds: Optional[float]) -> bool:
        if not ttl_seconds or ttl_seconds <= 0 or fetched_at is None:
            return False
        return (self._clock() - fetched_at).total_seconds() > ttl_seconds

    def _read_memory(self, collection: str, doc_id: str, ttl_seconds: Optional[float]) -> Optional[CacheEntry]:
        if self.require_durable:
            return None
        key = (collection, doc_id)
        entry = self._memory.get(key)
        if entry is None:
            return None
        if self._expired(entry.fetched_at, ttl_seconds):
            self._memory.pop(key, None)
            return None
        return entry.model_copy(deep=True)

    def _fallback(self, collection: str, doc_id: str, ttl_seconds: Optional[float]) -> Optional[CacheEntry]:
        entry = self._read_memory(collection, doc_id, ttl_seconds)
        if entry is not None:
            logger.debug(f"Cache fallback hit {collection}/{doc_id[:12]}")
        return entry

    # -- public API ------------------------------------------------------
    async def read(self, collection: str, key_parts: Any, ttl_seconds: Optional[float] = None) -> Optional[CacheEntry]:
        doc_id = build_cache_id(key_parts)
        if self.store is None:
            entry = self._fallback(collection, doc_id, ttl_seconds)
            await metrics.increment("cache_fallback_hits" if entry else "cache_misses")
            return entry

        try:
            data = await self.store.get(collection, doc_id)
        except CacheBackendUnavailable as e:
            self.last_error = str(e)
            logger.warning(f"Cache read failed for {collection}/{doc_id[:12]}: {e}")
            entry = self._fallback(collection, doc_id, ttl_seconds)
            await metrics.increment("cache_fallback_hits" if entry else "cache_misses")
            return entry

        if not data or not _has_body(data.get("body")):
            entry = self._fallback(collection, doc_id, ttl_seconds)
            await metrics.increment("cache_fallback_hits" if entry else "cache_misses")
            return entry

        status = data.get("status")
        content_type = data.get("content_type")
        metadata = data.get("metadata")
        entry = CacheEntry(
            status=status if isinstance(status, int) and not isinstance(status, bool) else 200,
            content_type=content_type if isinstance(content_type, str) and content_type else "application/json",
            body=data["body"],
            metadata=metadata if isinstance(metadata, dict) else {},
            fetched_at=parse_timestamp(data.get("fetched_at")),
        )

        if entry.fetched_at is None:
            if ttl_seconds and ttl_seconds > 0:
                # Freshness unknown; only a timestamped local copy may answer
                return self._fallback(collection, doc_id, ttl_seconds)
            entry.fetched_at = self._clock()
            self._remember(collection, doc_id, entry)
            await metrics.increment("cache_hits")
            return entry

        if self._expired(entry.fetched_at, ttl_seconds):
            self._memory.pop((collection, doc_id), None)
            logger.debug(f"Cache entry expired {collection}/{doc_id[:12]}")
            await metrics.increment("cache_misses")
            return None

        self._remember(collection, doc_id, entry)
        await metrics.increment("cache_hits")
        return entry

    async def write(self, collection: str, key_parts: Any, entry: CacheEntry) -> None:
        if not _has_body(entry.body):
            return
        if entry.status >= 400:
            return
        doc_id = build_cache_id(key_parts)
        stored = entry.model_copy(deep=True)
        stored.fetched_at = self._clock()
        self._remember(collection, doc_id, stored)
        if self.store is None:
            return
        document = {
            "status": stored.status,
            "content_type": stored.content_type,
            "body": stored.body,
            "metadata": stored.metadata,
            "fetched_at": stored.fetched_at.isoformat(),
            "key_parts": normalize_key_parts(key_parts),
        }
        try:
            await self.store.set(collection, doc_id, document)
        except CacheBackendUnavailable as e:
            self.last_error = str(e)
            logger.warning(f"Cache write failed for {collection}/{doc_id[:12]}: {e}")

    async def read_json(self, collection: str, key_parts: Any, ttl_seconds: Optional[float] = None) -> Optional[Any]:
        entry = await self.read(collection, key_parts, ttl_seconds)
        if entry is None:
            return None
        try:
            return json.loads(entry.body)
        except ValueError:
            logger.warning(f"Discarding non-JSON cache entry in {collection}")
            return None

    async def write_json(
        self,
        collection: str,
        key_parts: Any,
        value: Any,
        status: int = 200,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if value is None:
            return
        body = json.dumps(value, default=str, ensure_ascii=False)
        await self.write(collection, key_parts, CacheEntry(status=status, body=body, metadata=metadata or {}))

    def status(self) -> Dict[str, Any]:
        return {
            "durable_configured": self.store is not None,
            "require_durable": self.require_durable,
            "memory_entries": len(self._memory),
            "memory_max_entries": self.max_memory_entries,
            "last_error": self.last_error,
        }

    async def probe(self) -> Dict[str, Any]:
        """Check that the durable tier accepts writes."""
        result = self.status()
        if self.store is None:
            result["durable_ok"] = False
            return result
        try:
            result["durable_ok"] = await self.store.probe()
        except CacheBackendUnavailable as e:
            self.last_error = str(e)
            result["durable_ok"] = False
            result["last_error"] = str(e)
        return result
