"""
TMDB client for NarrowDown.
- Async httpx client; every GET passes through the tiered response cache.
- Credential is sent as a query parameter but never part of a cache key.
- Handles 429 with exponential backoff and Retry-After.
- Only successful responses whose payload passes the caller's shape check are cached.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from narrowdown.core import metrics
from narrowdown.core.config import settings as default_settings
from narrowdown.core.errors import InvalidResponseShape, UpstreamRateLimited, UpstreamUnavailable
from narrowdown.schemas import CacheEntry, DiscoverPage
from narrowdown.services.item_normalizer import normalize_items
from narrowdown.services.rate_limit import with_backoff
from narrowdown.utils.payload import to_float, to_int

logger = logging.getLogger(__name__)

TMDB_CACHE_COLLECTION = "tmdbCache"
SERVICE = "tmdb_api"


def _retry_after(resp: httpx.Response) -> Optional[float]:
    return to_float(resp.headers.get("Retry-After"))


def check_page(data: Dict[str, Any]) -> None:
    if not isinstance(data.get("results"), list):
        raise InvalidResponseShape("TMDB page is missing a results list", service=SERVICE)


def check_credits(data: Dict[str, Any]) -> None:
    if not isinstance(data.get("cast", []), list) or not isinstance(data.get("crew", []), list):
        raise InvalidResponseShape("TMDB credits are malformed", service=SERVICE)


def check_genres(data: Dict[str, Any]) -> None:
    if not isinstance(data.get("genres"), list):
        raise InvalidResponseShape("TMDB genre list is malformed", service=SERVICE)


class TmdbClient:
    def __init__(self, cache=None, ledger=None, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None,
                 backoff_base_delay: float = 1.0):
        self.settings = settings or default_settings
        self.cache = cache
        self.ledger = ledger
        self.transport = transport
        self.backoff_base_delay = backoff_base_delay

    @property
    def configured(self) -> bool:
        return bool(self.settings.tmdb_api_key)

    def _url(self, path: str) -> str:
        return f"{self.settings.tmdb_base_url.rstrip('/')}/3/{path.lstrip('/')}"

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        bypass_cache: bool = False,
        validate: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """GET a TMDB path, serving from cache when fresh. Raises UpstreamError subclasses.

        `validate` raises InvalidResponseShape for payloads that must not be
        cached; a cached payload failing it is treated as a miss.
        """
        if not self.configured:
            raise UpstreamUnavailable("TMDB API key not configured", service=SERVICE)

        query = httpx.QueryParams({k: v for k, v in (params or {}).items() if v is not None})
        key_parts = ["tmdb", path, query]
        if self.cache is not None and not bypass_cache:
            cached = await self.cache.read_json(TMDB_CACHE_COLLECTION, key_parts, self.settings.tmdb_cache_ttl_seconds)
            if isinstance(cached, dict):
                try:
                    if validate is not None:
                        validate(cached)
                except InvalidResponseShape as e:
                    logger.warning(f"Ignoring malformed cached TMDB payload for {path}: {e}")
                else:
                    logger.debug(f"TMDB cache hit {path} {query}")
                    return cached

        if self.ledger is not None:
            blocked_until = await self.ledger.next_eligible_at(SERVICE)
            if blocked_until is not None:
                raise UpstreamRateLimited(f"TMDB backing off until {blocked_until.isoformat()}", service=SERVICE)

        url = self._url(path)
        request_params = query.set("api_key", self.settings.tmdb_api_key)

        async def make_request():
            async with httpx.AsyncClient(timeout=self.settings.tmdb_timeout_seconds, transport=self.transport) as client:
                try:
                    resp = await client.get(url, params=request_params)
                except httpx.HTTPError as e:
                    raise UpstreamUnavailable(f"TMDB request failed for {path}: {e}", service=SERVICE) from e
            if resp.status_code == 429:
                raise UpstreamRateLimited("TMDB rate limit (429)", service=SERVICE, retry_after=_retry_after(resp))
            if resp.status_code >= 400:
                raise UpstreamUnavailable(f"TMDB {path} returned {resp.status_code}", service=SERVICE, status=resp.status_code)
            return resp

        async with metrics.Timer("tmdb_request"):
            resp = await with_backoff(
                make_request,
                max_retries=self.settings.tmdb_max_retries,
                service=SERVICE,
                ledger=self.ledger,
                base_delay=self.backoff_base_delay,
            )
        await metrics.increment("tmdb_requests")

        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponseShape(f"TMDB {path} returned non-JSON body", service=SERVICE, status=resp.status_code) from e
        if not isinstance(data, dict):
            raise InvalidResponseShape(f"TMDB {path} returned {type(data).__name__}, expected object", service=SERVICE)
        if validate is not None:
            validate(data)

        if self.cache is not None:
            await self.cache.write(
                TMDB_CACHE_COLLECTION,
                key_parts,
                CacheEntry(
                    status=resp.status_code,
                    content_type=resp.headers.get("content-type", "application/json"),
                    body=json.dumps(data, ensure_ascii=False),
                    metadata={"path": path},
                ),
            )
        return data

    @staticmethod
    def _page(data: Dict[str, Any], page: int) -> DiscoverPage:
        check_page(data)
        total = to_int(data.get("total_pages"))
        return DiscoverPage(
            page=to_int(data.get("page")) or page,
            results=normalize_items(data["results"]),
            total_pages=total if total is not None and total >= 0 else None,
        )

    async def discover_page(self, params: Dict[str, Any], page: int = 1, bypass_cache: bool = False) -> DiscoverPage:
        query = dict(params or {})
        query["page"] = page
        data = await self.get_json("discover/movie", query, bypass_cache=bypass_cache, validate=check_page)
        return self._page(data, page)

    async def search_movies(self, query: str, page: int = 1) -> DiscoverPage:
        data = await self.get_json(
            "search/movie",
            {"query": query, "page": page, "include_adult": "false", "language": "en-US"},
            validate=check_page,
        )
        return self._page(data, page)

    async def fetch_credits(self, movie_id: int) -> Dict[str, Any]:
        return await self.get_json(f"movie/{int(movie_id)}/credits", validate=check_credits)

    async def fetch_genres(self) -> List[Dict[str, Any]]:
        data = await self.get_json("genre/movie/list", {"language": "en-US"}, validate=check_genres)
        return [g for g in data["genres"] if isinstance(g, dict) and to_int(g.get("id")) is not None]
