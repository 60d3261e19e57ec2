"""
catalog_store.py

Local snapshot of the full curated movie catalog. The snapshot is refreshed
from TMDB discover pages on a schedule or on demand, persisted through the
tiered response cache, and serves search and stats queries without an
upstream call per request.
"""
import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from narrowdown.core.config import settings as default_settings
from narrowdown.core.errors import UpstreamError
from narrowdown.schemas import CatalogItem, CatalogMetadata, CatalogState, SearchResult
from narrowdown.services.item_normalizer import normalize_items
from narrowdown.services.ranking import merge_by_id
from narrowdown.utils.timezone import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

CATALOG_COLLECTION = "movieCatalog"
CATALOG_KEY = ["snapshot", "v1"]
DEFAULT_MOVIE_LIMIT = 20

MOVIE_STATS_BUCKETS = [
    ("9-10", 9.0, math.inf),
    ("8-8.9", 8.0, 9.0),
    ("7-7.9", 7.0, 8.0),
    ("6-6.9", 6.0, 7.0),
    ("< 6", -math.inf, 6.0),
]


def rating_precision_distribution(items: Iterable[CatalogItem], precision: float, limit: int = 5) -> List[Dict[str, Any]]:
    """Count items per rating bucket of width `precision`, highest buckets first."""
    try:
        precision = float(precision)
    except (TypeError, ValueError):
        return []
    if not math.isfinite(precision) or precision <= 0:
        return []
    text = repr(precision).rstrip("0")
    decimals = len(text.split(".", 1)[1]) if "." in text else 0

    counts: Dict[float, int] = {}
    for item in items:
        if item.rating is None:
            continue
        score = max(0.0, min(10.0, item.rating))
        bucket = math.floor((score + precision * 1e-8) / precision) * precision
        bucket = round(min(bucket, 10.0), decimals)
        counts[bucket] = counts.get(bucket, 0) + 1

    top = sorted(counts.items(), key=lambda kv: -kv[0])[: max(1, int(limit or 1))]
    return [{"label": f"{value:.{decimals}f}", "count": count} for value, count in top]


def _matches_query(item: CatalogItem, needle: str) -> bool:
    if not needle:
        return True
    haystacks = [item.title or "", item.original_title or ""]
    return any(needle in h.casefold() for h in haystacks)


class CatalogSnapshotStore:
    def __init__(self, tmdb, cache=None, settings=None, clock: Optional[Callable[[], datetime]] = None):
        self.tmdb = tmdb
        self.cache = cache
        self.settings = settings or default_settings
        self._clock = clock or utc_now
        self.state: Optional[CatalogState] = None
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None

    def has_credentials(self) -> bool:
        return bool(getattr(self.tmdb, "configured", False))

    @property
    def min_score(self) -> float:
        return self.settings.catalog_min_score

    # -- snapshot lifecycle ---------------------------------------------
    async def _load_persisted(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            self._loaded = True
            if self.cache is None:
                return
            data = await self.cache.read_json(CATALOG_COLLECTION, CATALOG_KEY)
            if not isinstance(data, dict):
                return
            items = normalize_items(data.get("items") or [])
            metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
            if self.state is None and items:
                self.state = CatalogState(
                    items=items,
                    metadata=CatalogMetadata(
                        total=len(items),
                        updated_at=parse_timestamp(metadata.get("updated_at")),
                        source=metadata.get("source") or "cache",
                    ),
                )
                logger.info(f"Loaded catalog snapshot with {len(items)} movies from cache")

    def _is_expired(self, state: CatalogState) -> bool:
        updated_at = state.metadata.updated_at
        if updated_at is None:
            return True
        ttl = self.settings.catalog_ttl_seconds
        return ttl > 0 and (self._clock() - updated_at).total_seconds() > ttl

    def _empty_state(self, error: Optional[str] = None) -> CatalogState:
        return CatalogState(metadata=CatalogMetadata(total=0, last_error=error))

    def _with_flags(self, state: CatalogState, stale: bool) -> CatalogState:
        metadata = state.metadata.model_copy(update={"stale": stale, "last_error": self.last_error})
        return CatalogState(items=state.items, metadata=metadata)

    async def ensure_catalog(
        self,
        force_refresh: bool = False,
        allow_stale: bool = True,
        cache_only: bool = False,
        bypass_range_cache: bool = False,
    ) -> CatalogState:
        await self._load_persisted()

        if cache_only:
            if self.state is None:
                return self._empty_state(self.last_error)
            return self._with_flags(self.state, self._is_expired(self.state))

        if force_refresh:
            return await self._shared_refresh(bypass_range_cache)

        if self.state is not None and not self._is_expired(self.state):
            return self._with_flags(self.state, False)

        if self.state is not None and allow_stale:
            self._start_background_refresh(bypass_range_cache)
            return self._with_flags(self.state, True)

        return await self._shared_refresh(bypass_range_cache)

    def _start_background_refresh(self, bypass_cache: bool) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh(bypass_cache))

    async def _shared_refresh(self, bypass_cache: bool) -> CatalogState:
        # Concurrent callers wait on the same refresh
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh(bypass_cache))
        return await asyncio.shield(self._refresh_task)

    async def wait_for_refresh(self) -> None:
        if self._refresh_task is not None:
            await asyncio.shield(self._refresh_task)

    async def _fetch_pages(self, bypass_cache: bool) -> List[CatalogItem]:
        params = {
            "sort_by": "vote_average.desc",
            "vote_count.gte": self.settings.catalog_min_votes,
            "include_adult": "false",
            "include_video": "false",
            "language": "en-US",
        }
        collected: List[CatalogItem] = []
        total_pages: Optional[int] = None
        for page in range(1, max(1, self.settings.catalog_refresh_pages) + 1):
            if total_pages is not None and page > total_pages:
                break
            try:
                result = await self.tmdb.discover_page(params, page, bypass_cache=bypass_cache)
            except UpstreamError as e:
                if page == 1:
                    raise
                logger.warning(f"Catalog refresh stopped at page {page}: {e}")
                break
            total_pages = result.total_pages
            if not result.results:
                break
            collected.extend(result.results)
        return collected

    async def _refresh(self, bypass_cache: bool = False) -> CatalogState:
        if not self.has_credentials():
            self.last_error = "credentials missing"
            logger.warning("Catalog refresh skipped: TMDB credentials missing")
            return self._current_or_empty()
        try:
            fetched = await self._fetch_pages(bypass_cache)
        except UpstreamError as e:
            self.last_error = str(e)
            logger.warning(f"Catalog refresh failed: {e}")
            return self._current_or_empty()

        items = merge_by_id(fetched)
        if not items:
            self.last_error = "upstream returned no movies"
            logger.warning("Catalog refresh returned no movies; keeping previous snapshot")
            return self._current_or_empty()

        items.sort(key=lambda m: (-(m.rating or 0.0), -(m.vote_count or 0)))
        updated_at = self._clock()
        self.last_error = None
        self.state = CatalogState(
            items=items,
            metadata=CatalogMetadata(total=len(items), updated_at=updated_at, source="tmdb"),
        )
        if self.cache is not None:
            await self.cache.write_json(
                CATALOG_COLLECTION,
                CATALOG_KEY,
                {
                    "items": [item.model_dump(mode="json") for item in items],
                    "metadata": {"total": len(items), "updated_at": updated_at.isoformat(), "source": "tmdb"},
                },
            )
        logger.info(f"Catalog refreshed with {len(items)} movies")
        return self._with_flags(self.state, False)

    def _current_or_empty(self) -> CatalogState:
        if self.state is None:
            return self._empty_state(self.last_error)
        return self._with_flags(self.state, self._is_expired(self.state))

    # -- queries ---------------------------------------------------------
    def search(self, query: str = "", limit: int = DEFAULT_MOVIE_LIMIT, min_score: Optional[float] = None,
               exclude_ids: Optional[Set[int]] = None) -> SearchResult:
        items = self.state.items if self.state else []
        floor = self.min_score if min_score is None else min_score
        excluded = exclude_ids or set()
        needle = (query or "").strip().casefold()
        matches = [
            item for item in items
            if item.id not in excluded
            and item.rating is not None and item.rating >= floor
            and _matches_query(item, needle)
        ]
        return SearchResult(results=matches[: max(1, int(limit or 1))], total_matches=len(matches))

    async def fetch_new_releases(self, query: str = "", limit: int = 10,
                                 exclude_ids: Optional[Iterable[int]] = None) -> List[CatalogItem]:
        """Recent (or query-matching) titles fetched live from upstream. Raises UpstreamError."""
        excluded = set(exclude_ids or [])
        limit = max(1, int(limit or 1))
        collected: List[CatalogItem] = []
        seen: Set[int] = set()
        today = self._clock().date()
        window_start = today - timedelta(days=self.settings.new_release_window_days)
        params = {
            "sort_by": "popularity.desc",
            "include_adult": "false",
            "include_video": "false",
            "language": "en-US",
            "primary_release_date.gte": window_start.isoformat(),
            "primary_release_date.lte": today.isoformat(),
        }
        for page in range(1, max(1, self.settings.new_release_max_pages) + 1):
            if query:
                result = await self.tmdb.search_movies(query, page)
            else:
                result = await self.tmdb.discover_page(params, page)
            for item in result.results:
                if item.id in excluded or item.id in seen:
                    continue
                seen.add(item.id)
                collected.append(item)
            if len(collected) >= limit or not result.results:
                break
            if result.total_pages is not None and page >= result.total_pages:
                break
        return collected[:limit]

    def stats(self, exclude_ids: Optional[Set[int]] = None, rating_precision: Optional[float] = None,
              rating_top: int = 5) -> Dict[str, Any]:
        excluded = exclude_ids or set()
        items = [item for item in (self.state.items if self.state else []) if item.id not in excluded]
        buckets = []
        for label, low, high in MOVIE_STATS_BUCKETS:
            count = sum(1 for item in items if item.rating is not None and low <= item.rating < high)
            buckets.append({"label": label, "count": count})
        rated = [item.rating for item in items if item.rating is not None]
        result = {
            "total": len(items),
            "excluded": len(excluded),
            "average_rating": round(sum(rated) / len(rated), 2) if rated else None,
            "buckets": buckets,
            "updated_at": self.state.metadata.updated_at.isoformat()
            if self.state and self.state.metadata.updated_at else None,
        }
        if rating_precision:
            result["rating_distribution"] = rating_precision_distribution(items, rating_precision, rating_top)
        return result

    async def query_movies(
        self,
        query: str = "",
        limit: Optional[int] = None,
        fresh_limit: Optional[int] = None,
        min_score: Optional[float] = None,
        exclude_ids: Optional[Set[int]] = None,
        cache_only: bool = False,
        include_fresh: bool = False,
        fresh_only: bool = False,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """Curated snapshot search combined with optional live results."""
        if cache_only:
            include_fresh = False
            fresh_only = False
        excluded = set(exclude_ids or [])
        curated_limit = max(1, int(limit or DEFAULT_MOVIE_LIMIT))
        effective_fresh_limit = max(1, int(fresh_limit or min(curated_limit, 10)))

        state = await self.ensure_catalog(force_refresh=False if cache_only else force_refresh,
                                          allow_stale=True, cache_only=cache_only)
        curated_search = self.search(query, limit=curated_limit, min_score=min_score, exclude_ids=excluded)
        curated = [] if fresh_only else curated_search.results

        fresh: List[CatalogItem] = []
        fresh_error: Optional[str] = None
        should_fetch_fresh = not cache_only and (fresh_only or include_fresh or (not curated and bool(query)))
        if should_fetch_fresh:
            if self.has_credentials():
                try:
                    fresh = await self.fetch_new_releases(
                        query=query,
                        limit=curated_limit if fresh_only else effective_fresh_limit,
                        exclude_ids=[m.id for m in curated] + list(excluded),
                    )
                except UpstreamError as e:
                    logger.warning(f"Failed to fetch new release movies: {e}")
                    fresh_error = "failed"
            else:
                fresh_error = "credentials missing"

        metadata = {
            "query": query or None,
            "curated_count": len(curated) if fresh_only else curated_search.total_matches,
            "curated_returned_count": len(curated),
            "fresh_count": len(fresh),
            "total_catalog_size": state.metadata.total or len(state.items),
            "catalog_updated_at": state.metadata.updated_at.isoformat() if state.metadata.updated_at else None,
            "min_score": self.min_score if min_score is None else min_score,
            "include_fresh": bool(should_fetch_fresh and self.has_credentials()),
            "fresh_only": bool(fresh_only),
            "cache_only": bool(cache_only),
            "curated_limit": curated_limit,
            "source": state.metadata.source,
            "fresh_requested": bool(should_fetch_fresh),
            "stale": state.metadata.stale,
        }
        if fresh_error:
            metadata["fresh_error"] = fresh_error
        return {
            "results": fresh if fresh_only else curated,
            "curated": curated,
            "fresh": fresh,
            "metadata": metadata,
        }
