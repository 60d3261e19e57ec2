"""
document_store.py

Durable JSON document store on Redis. Documents are addressed by
(collection, doc_id) and stored as one hash per document whose fields hold
JSON-encoded values, which lets callers merge top-level fields without
clobbering the rest of the document.
"""
import json
import logging
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from narrowdown.core.config import Settings
from narrowdown.core.errors import CacheBackendUnavailable
from narrowdown.core.redis_client import get_redis

logger = logging.getLogger(__name__)

HEALTH_COLLECTION = "_health"


def _encode(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _decode(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class RedisDocumentStore:
    def __init__(self, client=None, prefix: str = "narrowdown", url: Optional[str] = None):
        self._client = client
        self._url = url
        self.prefix = prefix

    @property
    def client(self):
        # Resolved lazily so each event loop gets its own connection pool
        if self._client is not None:
            return self._client
        client = get_redis(self._url)
        if client is None:
            raise CacheBackendUnavailable("Redis is not configured")
        return client

    def key_for(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:{collection}:{doc_id}"

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.hgetall(self.key_for(collection, doc_id))
        except (RedisError, OSError) as e:
            raise CacheBackendUnavailable(f"read {collection}/{doc_id} failed: {e}") from e
        if not raw:
            return None
        return {
            (k.decode("utf-8") if isinstance(k, bytes) else str(k)): _decode(v)
            for k, v in raw.items()
        }

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Overwrite the whole document."""
        key = self.key_for(collection, doc_id)
        mapping = {field: _encode(value) for field, value in (data or {}).items()}
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            if mapping:
                pipe.hset(key, mapping=mapping)
            await pipe.execute()
        except (RedisError, OSError) as e:
            raise CacheBackendUnavailable(f"write {collection}/{doc_id} failed: {e}") from e

    async def merge(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Write only the given top-level fields; other fields of the document are untouched."""
        if not fields:
            return
        mapping = {field: _encode(value) for field, value in fields.items()}
        try:
            await self.client.hset(self.key_for(collection, doc_id), mapping=mapping)
        except (RedisError, OSError) as e:
            raise CacheBackendUnavailable(f"merge {collection}/{doc_id} failed: {e}") from e

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self.client.delete(self.key_for(collection, doc_id))
        except (RedisError, OSError) as e:
            raise CacheBackendUnavailable(f"delete {collection}/{doc_id} failed: {e}") from e

    async def probe(self) -> bool:
        """Round-trip a throwaway document to prove the store accepts writes."""
        await self.set(HEALTH_COLLECTION, "probe", {"ok": True})
        await self.delete(HEALTH_COLLECTION, "probe")
        return True


def build_document_store(settings: Settings) -> Optional[RedisDocumentStore]:
    if not settings.redis_url:
        logger.info("REDIS_URL is empty; running without a durable document store")
        return None
    return RedisDocumentStore(prefix=settings.cache_key_prefix, url=settings.redis_url)
