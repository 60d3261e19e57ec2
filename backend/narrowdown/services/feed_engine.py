"""
feed_engine.py

MovieFeedEngine owns one instance of every engine component for the process:
response cache, catalog snapshot, per-user discovery cursors and the two
enrichment queues. Nothing else holds these; tests build isolated engines.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from narrowdown.core.config import Settings
from narrowdown.core.config import settings as default_settings
from narrowdown.schemas import CatalogItem, FeedResult
from narrowdown.services.catalog_store import CatalogSnapshotStore
from narrowdown.services.critic_prefetch import CriticPrefetchJob
from narrowdown.services.discovery_cursor import CursorStore, ProgressiveDiscovery
from narrowdown.services.document_store import build_document_store
from narrowdown.services.enrichment_queue import apply_enrichment, build_credits_queue, build_critic_queue
from narrowdown.services.feed_filters import FeedFilters
from narrowdown.services.omdb_client import OmdbClient
from narrowdown.services.rate_limit import RateLimitLedger
from narrowdown.services.ranking import merge_restored
from narrowdown.services.response_cache import TieredResponseCache
from narrowdown.services.tmdb_client import TmdbClient
from narrowdown.utils.payload import to_int

logger = logging.getLogger(__name__)

DEFAULT_MIN_FEED_SIZE = 20


class MovieFeedEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store=None,
        cache: Optional[TieredResponseCache] = None,
        tmdb=None,
        omdb=None,
        clock=None,
        on_enrichment_drained=None,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.cache = cache or TieredResponseCache(
            store,
            require_durable=self.settings.cache_require_durable,
            max_memory_entries=self.settings.cache_memory_max_entries,
            clock=clock,
        )
        self.ledger = RateLimitLedger(store, clock=clock)
        self.tmdb = tmdb or TmdbClient(cache=self.cache, ledger=self.ledger, settings=self.settings)
        self.omdb = omdb or OmdbClient(cache=self.cache, settings=self.settings, ledger=self.ledger)
        self.catalog = CatalogSnapshotStore(self.tmdb, cache=self.cache, settings=self.settings, clock=clock)
        self.discovery = ProgressiveDiscovery(self.tmdb, settings=self.settings)
        self.critic_queue = build_critic_queue(self.omdb, self.settings, on_drained=on_enrichment_drained)
        self.credits_queue = build_credits_queue(self.tmdb, self.settings, on_drained=on_enrichment_drained)
        self.prefetch = CriticPrefetchJob(self.catalog, self.omdb, cache=self.cache, settings=self.settings, clock=clock)
        self._cursors: Dict[str, CursorStore] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MovieFeedEngine":
        settings = settings or default_settings
        return cls(settings=settings, store=build_document_store(settings))

    def cursors_for(self, user_id: Optional[str]) -> CursorStore:
        key = str(user_id) if user_id else ""
        store = self._cursors.get(key)
        if store is None:
            store = self._cursors[key] = CursorStore(user_id=user_id or None, store=self.store, settings=self.settings)
        return store

    def enrich(self, items: List[CatalogItem]) -> List[CatalogItem]:
        return [apply_enrichment(item, self.critic_queue, self.credits_queue) for item in items]

    async def load_feed(
        self,
        filters: Optional[FeedFilters] = None,
        min_feed_size: int = DEFAULT_MIN_FEED_SIZE,
        suppressed_ids: Optional[Set[int]] = None,
        user_id: Optional[str] = None,
        restored: Optional[Iterable[Any]] = None,
        cache_only: bool = False,
    ) -> FeedResult:
        """Snapshot first, then progressive discovery until the feed is full, then enrichment."""
        filters = filters or FeedFilters()
        suppressed = set(suppressed_ids or [])
        state = await self.catalog.ensure_catalog(allow_stale=True, cache_only=cache_only)
        candidates = merge_restored(
            [item for item in state.items if item.id not in suppressed],
            restored or [],
            suppressed,
        )

        # Cache-only feeds never page upstream
        min_count = 0 if cache_only else max(1, int(min_feed_size))
        result = await self.discovery.fetch_until_enough(
            self.cursors_for(user_id), filters, min_count, candidates, suppressed,
        )
        if result.error:
            logger.warning(f"Feed for {result.signature!r} is partial: {result.error}")

        shown = result.items[: max(1, int(min_feed_size))]
        self.critic_queue.enqueue(shown)
        self.credits_queue.enqueue(shown)
        result.items = self.enrich(result.items)
        return result

    async def find_new_movies(
        self,
        filters: Optional[FeedFilters] = None,
        min_new: int = 10,
        known_ids: Optional[Set[int]] = None,
        suppressed_ids: Optional[Set[int]] = None,
        user_id: Optional[str] = None,
    ) -> FeedResult:
        """Keep paging past what the caller already has until min_new unseen titles match."""
        filters = filters or FeedFilters()
        known = set(known_ids or [])
        hidden = known | set(suppressed_ids or [])
        result = await self.discovery.fetch_until_enough(
            self.cursors_for(user_id), filters, max(1, int(min_new)), [], hidden,
        )
        result.items = self.enrich(result.items)
        self.critic_queue.enqueue(result.items)
        self.credits_queue.enqueue(result.items)
        return result

    async def genre_options(self) -> List[Dict[str, Any]]:
        """Upstream genre ids with display names, sorted by name, for building filter selections."""
        genres = await self.tmdb.fetch_genres()
        options = [
            {"id": to_int(genre.get("id")), "name": str(genre.get("name") or "").strip()}
            for genre in genres
        ]
        return sorted((o for o in options if o["id"] is not None and o["name"]), key=lambda o: o["name"].lower())

    async def refresh_catalog(self) -> Dict[str, Any]:
        state = await self.catalog.ensure_catalog(force_refresh=True, allow_stale=False, bypass_range_cache=True)
        return state.metadata.model_dump(mode="json")

    async def cache_status(self) -> Dict[str, Any]:
        status = await self.cache.probe()
        status["rate_limits"] = self.ledger.snapshot()
        status["enrichment"] = [self.critic_queue.status(), self.credits_queue.status()]
        status["catalog_error"] = self.catalog.last_error
        return status

    async def shutdown(self) -> None:
        """Flush debounced cursor state and let in-flight enrichment settle."""
        for cursors in list(self._cursors.values()):
            await cursors.flush()
        await self.critic_queue.close()
        await self.credits_queue.close()
        if self.prefetch.status.running:
            self.prefetch.stop()
            try:
                await self.prefetch.wait()
            except Exception as e:
                logger.warning(f"Critic prefetch ended with error during shutdown: {e}")
        try:
            await self.catalog.wait_for_refresh()
        except Exception as e:
            logger.warning(f"Catalog refresh ended with error during shutdown: {e}")
