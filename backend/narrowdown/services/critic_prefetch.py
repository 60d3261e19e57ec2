"""
critic_prefetch.py

Background job that walks the cached catalog snapshot and warms the OMDb
ratings cache one title at a time. Progress is checkpointed to the
`omdbRatingsPrefetch` collection so the next run resumes where the last one
stopped; a full walk wraps the cursor back to the start of a new pass.
"""
import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from narrowdown.core.config import settings as default_settings
from narrowdown.schemas import CatalogItem, PrefetchProgress, PrefetchStatus
from narrowdown.utils.timezone import extract_year, utc_now

logger = logging.getLogger(__name__)

PREFETCH_COLLECTION = "omdbRatingsPrefetch"
PREFETCH_STATE_KEY = ["state", "v1"]
MIN_DELAY_SECONDS = 0.6
MIN_RETRY_AFTER_SECONDS = 5 * 60


def lookup_from_item(item: CatalogItem) -> Optional[Dict[str, str]]:
    imdb_id = (item.imdb_id or "").strip()
    title = (item.title or "").strip()
    if not imdb_id and not title:
        return None
    year = extract_year(item.release_date)
    return {"imdb_id": imdb_id, "title": title, "year": str(year) if year else ""}


class CriticPrefetchJob:
    def __init__(self, catalog, omdb, cache=None, settings=None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], Any]] = None):
        self.catalog = catalog
        self.omdb = omdb
        self.cache = cache
        self.settings = settings or default_settings
        self._clock = clock or utc_now
        self._sleep = sleep or asyncio.sleep
        self.status = PrefetchStatus()
        self._task: Optional[asyncio.Task] = None

    def resolve_options(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        s = self.settings

        def pick(name, default):
            value = options.get(name)
            return default if value in (None, "", 0) else value

        return {
            "delay_seconds": max(MIN_DELAY_SECONDS, float(pick("delay_seconds", s.omdb_prefetch_delay_seconds))),
            "jitter_seconds": max(0.0, float(pick("jitter_seconds", s.omdb_prefetch_jitter_seconds))),
            "checkpoint_every": max(1, int(pick("checkpoint_every", s.omdb_prefetch_checkpoint_every))),
            "max_fetches": max(0, int(pick("max_fetches", s.omdb_prefetch_max_fetches_per_run))),
            "retry_after_seconds": max(MIN_RETRY_AFTER_SECONDS,
                                       int(pick("retry_after_seconds", s.omdb_prefetch_retry_after_seconds))),
            "force_refresh": bool(options.get("force_refresh")),
            "reset_cursor": bool(options.get("reset_cursor")),
        }

    async def load_progress(self) -> PrefetchProgress:
        if self.cache is None:
            return self.status.progress or PrefetchProgress()
        data = await self.cache.read_json(PREFETCH_COLLECTION, PREFETCH_STATE_KEY)
        if not isinstance(data, dict):
            return PrefetchProgress()
        try:
            return PrefetchProgress(**data)
        except ValueError:
            logger.warning("Discarding malformed critic prefetch state")
            return PrefetchProgress()

    async def save_progress(self, progress: PrefetchProgress) -> None:
        self.status.progress = progress
        if self.cache is not None:
            await self.cache.write_json(PREFETCH_COLLECTION, PREFETCH_STATE_KEY, progress.model_dump(mode="json"))

    async def get_status(self) -> PrefetchStatus:
        status = self.status.model_copy()
        if status.progress is None:
            status.progress = await self.load_progress()
        return status

    def start(self, options: Optional[Dict[str, Any]] = None) -> bool:
        """Launch a run in the background. Returns False when one is already running."""
        if self.status.running:
            return False
        self._mark_started(options)
        self._task = asyncio.get_running_loop().create_task(self._guarded_run())
        return True

    def stop(self) -> bool:
        if not self.status.running:
            return False
        self.status.stop_requested = True
        return True

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def _mark_started(self, options: Optional[Dict[str, Any]]) -> None:
        self.status.running = True
        self.status.stop_requested = False
        self.status.started_at = self._clock()
        self.status.options = self.resolve_options(options)
        self.status.progress = None
        self.status.last_error = None

    async def run(self, options: Optional[Dict[str, Any]] = None) -> PrefetchProgress:
        """Run one prefetch pass in the foreground (Celery task entry point)."""
        if self.status.running:
            raise RuntimeError("critic prefetch already running")
        self._mark_started(options)
        return await self._guarded_run()

    async def _guarded_run(self) -> PrefetchProgress:
        try:
            return await self._run(self.status.options)
        except Exception as e:
            self.status.last_error = str(e)
            logger.exception(f"Critic prefetch failed: {e}")
            raise
        finally:
            self.status.running = False
            self.status.stop_requested = False
            self.status.last_finished_at = self._clock()

    async def _run(self, opts: Dict[str, Any]) -> PrefetchProgress:
        persisted = await self.load_progress()
        state = await self.catalog.ensure_catalog(allow_stale=True, cache_only=True)
        movies = state.items
        total = len(movies)
        cursor = 0 if opts["reset_cursor"] else max(0, min(persisted.cursor, total))
        completed_passes = persisted.completed_passes
        counters = {"processed": 0, "fetched": 0, "cache_hits": 0, "not_found": 0,
                    "skipped": 0, "failed": 0, "rate_limited": 0, "network_requests": 0}
        halted_reason: Optional[str] = None
        since_checkpoint = 0

        async def checkpoint() -> PrefetchProgress:
            next_eligible_at = None
            if halted_reason == "rate_limited":
                next_eligible_at = self._clock() + timedelta(seconds=opts["retry_after_seconds"])
            progress = PrefetchProgress(
                cursor=cursor,
                completed_passes=completed_passes,
                total_movies=total,
                processed=counters["processed"],
                fetched=counters["fetched"],
                cache_hits=counters["cache_hits"],
                not_found=counters["not_found"],
                skipped=counters["skipped"],
                failed=counters["failed"],
                rate_limited=counters["rate_limited"],
                halted_reason=halted_reason,
                next_eligible_at=next_eligible_at,
                updated_at=self._clock(),
            )
            await self.save_progress(progress)
            return progress

        if not self.omdb.configured:
            halted_reason = "missing_omdb_key"
            return await checkpoint()
        if not total:
            halted_reason = "empty_catalog"
            return await checkpoint()

        while cursor < total:
            if self.status.stop_requested:
                halted_reason = "stop_requested"
                break
            if opts["max_fetches"] > 0 and counters["network_requests"] >= opts["max_fetches"]:
                halted_reason = "max_fetches_reached"
                break

            movie = movies[cursor]
            cursor += 1
            counters["processed"] += 1
            since_checkpoint += 1

            lookup = lookup_from_item(movie)
            if lookup is None:
                counters["skipped"] += 1
            else:
                result = await self.omdb.lookup(force_refresh=opts["force_refresh"], **lookup)
                if result.made_network_request:
                    counters["network_requests"] += 1
                if result.outcome == "cache_hit":
                    counters["cache_hits"] += 1
                elif result.outcome == "fetched":
                    counters["fetched"] += 1
                elif result.outcome == "not_found":
                    counters["not_found"] += 1
                elif result.outcome == "rate_limited":
                    counters["rate_limited"] += 1
                    halted_reason = "rate_limited"
                elif result.outcome == "invalid_key":
                    halted_reason = "invalid_omdb_key"
                else:
                    counters["failed"] += 1

                if result.made_network_request and not halted_reason:
                    jitter = random.uniform(0, opts["jitter_seconds"]) if opts["jitter_seconds"] > 0 else 0.0
                    await self._sleep(opts["delay_seconds"] + jitter)

            if halted_reason:
                break
            if since_checkpoint >= opts["checkpoint_every"]:
                since_checkpoint = 0
                await checkpoint()

        if not halted_reason and cursor >= total:
            halted_reason = "completed_pass"
            completed_passes += 1
            cursor = 0

        progress = await checkpoint()
        logger.info(
            f"Critic prefetch finished ({halted_reason}): processed={counters['processed']} "
            f"fetched={counters['fetched']} cache_hits={counters['cache_hits']} not_found={counters['not_found']}"
        )
        return progress
