"""
discovery_cursor.py

Resumable pagination against the TMDB discover endpoint.

CursorStore keeps, per user, one DiscoveryCursorState per filter signature
(newest last, oldest evicted beyond DISCOVER_HISTORY_LIMIT) and persists the
whole history with a debounced partial-merge write into the user's
`moviePreferences` document, or into a local JSON file when there is no user
or no durable store.

ProgressiveDiscovery.fetch_until_enough walks pages in strictly increasing
order until enough filtered candidates exist, upstream runs dry, or the
elastic page ceiling is reached.
"""
import asyncio
import json
import logging
import os
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from narrowdown.core import metrics
from narrowdown.core.config import settings as default_settings
from narrowdown.core.errors import CacheBackendUnavailable, InvalidResponseShape, UpstreamError, UpstreamRateLimited
from narrowdown.schemas import CatalogItem, DiscoveryCursorState, FeedResult
from narrowdown.services.feed_filters import FeedFilters
from narrowdown.services.ranking import merge_by_id, rank
from narrowdown.utils.payload import to_int

logger = logging.getLogger(__name__)

PREFERENCES_COLLECTION = "moviePreferences"
DISCOVER_STATE_FIELD = "tmdb_discover_state"
DISCOVER_STATE_VERSION = 1


def _to_epoch(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CursorStore:
    def __init__(
        self,
        user_id: Optional[str] = None,
        store=None,
        settings=None,
        clock: Optional[Callable[[], float]] = None,
        local_dir: Optional[str] = None,
    ):
        self.user_id = user_id
        self.store = store
        self.settings = settings or default_settings
        self._clock = clock or time.time
        self.local_dir = local_dir if local_dir is not None else self.settings.local_state_dir
        self.entries: "OrderedDict[str, DiscoveryCursorState]" = OrderedDict()
        self.dirty = False
        self._hydrated = False
        self._persist_task: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None

    @property
    def history_limit(self) -> int:
        return max(1, self.settings.discover_history_limit)

    @property
    def uses_durable_store(self) -> bool:
        return self.store is not None and bool(self.user_id)

    def local_path(self) -> str:
        owner = re.sub(r"[^A-Za-z0-9_.-]", "_", str(self.user_id)) if self.user_id else "anonymous"
        return os.path.join(self.local_dir, f"discover_state_{owner}.json")

    # -- state -----------------------------------------------------------
    def normalize_entry(self, raw: Any) -> Optional[DiscoveryCursorState]:
        if isinstance(raw, DiscoveryCursorState):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            return None
        next_page = max(1, to_int(raw.get("next_page", raw.get("nextPage"))) or 1)
        allowed = to_int(raw.get("allowed_pages", raw.get("allowedPages"))) or 0
        total = to_int(raw.get("total_pages", raw.get("totalPages")))
        return DiscoveryCursorState(
            next_page=next_page,
            allowed_pages=max(self.settings.discover_max_pages, allowed, next_page),
            total_pages=total if total is not None and total >= 0 else None,
            exhausted=bool(raw.get("exhausted")),
            updated_at=_to_epoch(raw.get("updated_at", raw.get("updatedAt"))),
            last_attempt=_to_epoch(raw.get("last_attempt", raw.get("lastAttempt"))),
        )

    def hydrate(self, raw: Any) -> None:
        """Replace the in-memory history with a stored payload ({version, entries})."""
        self.entries = OrderedDict()
        entries = raw.get("entries") if isinstance(raw, dict) else None
        if isinstance(entries, dict):
            for signature, value in entries.items():
                entry = self.normalize_entry(value)
                if entry is not None and isinstance(signature, str):
                    self.entries[signature] = entry
        while len(self.entries) > self.history_limit:
            self.entries.popitem(last=False)
        self._hydrated = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": DISCOVER_STATE_VERSION,
            "entries": {sig: entry.model_dump() for sig, entry in self.entries.items()},
        }

    def read(self, signature: str) -> Optional[DiscoveryCursorState]:
        entry = self.entries.get(signature)
        return entry.model_copy() if entry is not None else None

    def write(self, signature: str, state: DiscoveryCursorState) -> DiscoveryCursorState:
        entry = self.normalize_entry(state)
        now = self._clock()
        existing = self.entries.get(signature)
        if existing is not None and entry.next_page < existing.next_page:
            # Pages never rewind for an unchanged signature
            entry = entry.model_copy(update={"next_page": existing.next_page,
                                             "allowed_pages": max(entry.allowed_pages, existing.next_page)})
        entry = entry.model_copy(update={"updated_at": now, "last_attempt": now})

        if existing is not None and self._same_position(existing, entry):
            existing.updated_at = now
            existing.last_attempt = now
            return existing.model_copy()

        self.entries.pop(signature, None)
        self.entries[signature] = entry
        while len(self.entries) > self.history_limit:
            evicted, _ = self.entries.popitem(last=False)
            logger.debug(f"Evicted discover cursor {evicted}")
        self.dirty = True
        self.schedule_persist()
        return entry.model_copy()

    @staticmethod
    def _same_position(a: DiscoveryCursorState, b: DiscoveryCursorState) -> bool:
        return (
            a.next_page == b.next_page
            and a.allowed_pages == b.allowed_pages
            and a.total_pages == b.total_pages
            and a.exhausted == b.exhausted
        )

    # -- persistence -----------------------------------------------------
    async def load(self) -> None:
        """Hydrate once from the durable store or the local file."""
        if self._hydrated:
            return
        raw = None
        if self.uses_durable_store:
            try:
                document = await self.store.get(PREFERENCES_COLLECTION, self.user_id)
                raw = (document or {}).get(DISCOVER_STATE_FIELD)
            except CacheBackendUnavailable as e:
                self.last_error = str(e)
                logger.warning(f"Could not load discover state for {self.user_id}: {e}")
        if raw is None:
            raw = self._read_local()
        if self._hydrated:
            return
        if raw is not None:
            self.hydrate(raw)
        else:
            self._hydrated = True

    def _read_local(self) -> Optional[Dict[str, Any]]:
        path = self.local_path()
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable discover state file {path}: {e}")
            return None

    def _write_local(self, payload: Dict[str, Any]) -> None:
        path = self.local_path()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, path)

    def schedule_persist(self, delay: Optional[float] = None) -> None:
        if self._persist_task is not None and not self._persist_task.done():
            self._persist_task.cancel()
        wait = self.settings.discover_persist_debounce_seconds if delay is None else delay
        try:
            self._persist_task = asyncio.get_running_loop().create_task(self._persist_later(wait))
        except RuntimeError:
            # No loop (sync caller); flush() will persist
            self._persist_task = None

    async def _persist_later(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        await self.persist()

    async def persist(self) -> bool:
        # Snapshot before awaiting so interleaved writes are not lost or half-written
        payload = self.to_payload()
        self.dirty = False
        try:
            if self.uses_durable_store:
                await self.store.merge(PREFERENCES_COLLECTION, self.user_id, {DISCOVER_STATE_FIELD: payload})
            else:
                self._write_local(payload)
            self.last_error = None
            return True
        except asyncio.CancelledError:
            # Interrupted mid-write; the snapshot may not have landed
            self.dirty = True
            raise
        except (CacheBackendUnavailable, OSError) as e:
            self.last_error = str(e)
            self.dirty = True
            logger.warning(f"Persisting discover state failed, retrying later: {e}")
            self.schedule_persist()
            return False

    async def flush(self) -> bool:
        """Persist immediately if anything changed; used on teardown."""
        task = self._persist_task
        self._persist_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if not self.dirty:
            return True
        ok = await self.persist()
        if not ok and self._persist_task is not None:
            self._persist_task.cancel()
            self._persist_task = None
        return ok


class ProgressiveDiscovery:
    def __init__(self, tmdb, settings=None):
        self.tmdb = tmdb
        self.settings = settings or default_settings
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def grow_ceiling(self, allowed: int, page: int) -> int:
        limit = self.settings.discover_max_pages_limit
        if page > allowed and allowed < limit:
            return min(limit, max(allowed + self.settings.discover_initial_pages, page))
        return allowed

    def _rank_and_filter(self, items: List[CatalogItem], filters: FeedFilters) -> List[CatalogItem]:
        return filters.apply(rank(items, self.settings.min_priority_results))

    async def fetch_until_enough(
        self,
        cursors: CursorStore,
        filters: FeedFilters,
        min_result_count: int,
        existing: Optional[Iterable[CatalogItem]] = None,
        suppressed_ids: Optional[Set[int]] = None,
    ) -> FeedResult:
        signature = filters.signature()
        async with self._lock_for(f"{cursors.user_id or ''}::{signature}"):
            return await self._fetch_locked(cursors, filters, signature, min_result_count, existing, suppressed_ids)

    async def _fetch_locked(self, cursors, filters, signature, min_result_count, existing, suppressed_ids) -> FeedResult:
        await cursors.load()
        suppressed = suppressed_ids or set()
        items = merge_by_id(item for item in (existing or []) if item.id not in suppressed)
        filtered = self._rank_and_filter(items, filters)
        if len(filtered) >= min_result_count:
            return FeedResult(items=filtered, filtered_count=len(filtered), signature=signature,
                              cursor=cursors.read(signature))

        history = cursors.read(signature)
        page = history.next_page if history else 1
        allowed = max(self.settings.discover_max_pages, history.allowed_pages if history else 0, page)
        total: Optional[int] = history.total_pages if history else None

        if history is not None and history.exhausted and (total is None or page > total):
            logger.debug(f"Discover cursor {signature!r} exhausted at page {page}; skipping upstream")
            return FeedResult(items=filtered, filtered_count=len(filtered), signature=signature,
                              cursor=history, reached_end=True)

        params = filters.discover_params()
        made_network_request = False
        reached_end = False
        error: Optional[str] = None

        while page <= allowed and (total is None or page <= total):
            current = page
            try:
                result = await self.tmdb.discover_page(params, current)
            except InvalidResponseShape as e:
                # Malformed page counts as an empty page but is not proof the catalog ended
                made_network_request = True
                error = str(e)
                logger.warning(f"Discover page {current} malformed for {signature!r}: {e}")
                page = current + 1
                allowed = self.grow_ceiling(allowed, page)
                continue
            except UpstreamRateLimited as e:
                error = str(e)
                logger.warning(f"Discover halted by rate limit at page {current} for {signature!r}: {e}")
                break
            except UpstreamError as e:
                error = str(e)
                logger.warning(f"Discover page {current} failed for {signature!r}: {e}")
                break

            made_network_request = True
            await metrics.increment("discover_pages_fetched")
            if result.total_pages is not None:
                # The catalog moves; the newest reported total wins
                total = result.total_pages

            fresh = [item for item in result.results if item.id not in suppressed]
            items = merge_by_id(items + fresh)
            filtered = self._rank_and_filter(items, filters)
            logger.debug(f"Discover {signature!r} page {current}: {len(fresh)} new, {len(filtered)} matching")

            if len(filtered) >= min_result_count:
                state = cursors.write(signature, DiscoveryCursorState(
                    next_page=current + 1, allowed_pages=allowed, total_pages=total, exhausted=False,
                ))
                return FeedResult(items=filtered, filtered_count=len(filtered), signature=signature,
                                  cursor=state, made_network_request=True)

            if not result.results and (total is None or current >= total):
                reached_end = True
                page = current + 1
                break

            page = current + 1
            allowed = self.grow_ceiling(allowed, page)

        if not reached_end and total is not None and page > total:
            reached_end = True

        state = history
        if made_network_request:
            state = cursors.write(signature, DiscoveryCursorState(
                next_page=page,
                allowed_pages=allowed,
                total_pages=total,
                exhausted=reached_end and (total is None or page - 1 >= total),
            ))
        return FeedResult(
            items=filtered,
            filtered_count=len(filtered),
            signature=signature,
            cursor=state,
            reached_end=reached_end,
            made_network_request=made_network_request,
            error=error,
        )
