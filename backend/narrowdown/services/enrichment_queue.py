"""
enrichment_queue.py

Bounded-concurrency background fetcher that lazily attaches secondary data
(critic scores, credits) to catalog items.

Per-item state lives in a map keyed by item_cache_key() so restored or
re-fetched copies of the same title share it. States move
idle -> loading -> loaded | error; only request(force=True) moves a loaded or
errored item back to loading. Failures are never retried automatically.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from narrowdown.core.errors import EnrichmentNotFound, NarrowDownError, UpstreamRateLimited
from narrowdown.schemas import CatalogItem, CriticScores, EnrichmentState
from narrowdown.services.item_normalizer import apply_credits, item_cache_key, normalize_item

logger = logging.getLogger(__name__)

CRITIC_BLEND_WEIGHTS = {"rotten_tomatoes": 0.5, "metacritic": 0.3, "imdb": 0.2}


class EnrichmentQueue:
    def __init__(
        self,
        name: str,
        fetcher: Callable[[CatalogItem], Awaitable[Any]],
        concurrency: int = 4,
        batch_limit: int = 60,
        can_request: Optional[Callable[[CatalogItem], bool]] = None,
        existing_data: Optional[Callable[[CatalogItem], Any]] = None,
        on_drained: Optional[Callable[[], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.fetcher = fetcher
        self.concurrency = max(1, int(concurrency))
        self.batch_limit = max(1, int(batch_limit))
        self.can_request = can_request or (lambda item: True)
        self.existing_data = existing_data or (lambda item: None)
        self.on_drained = on_drained
        self._clock = clock or time.time

        self.states: Dict[str, EnrichmentState] = {}
        self._queue: Deque[Tuple[str, CatalogItem]] = deque()
        self._queued_keys: Set[str] = set()
        self._in_flight_keys: Set[str] = set()
        self._generation: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.fetch_count = 0
        self.drain_count = 0
        self.drained = asyncio.Event()
        self.drained.set()

    # -- state -----------------------------------------------------------
    def get_state(self, item: CatalogItem) -> EnrichmentState:
        key = item_cache_key(item)
        if key is None:
            return EnrichmentState()
        state = self.states.get(key)
        if state is not None:
            return state
        data = self.existing_data(item)
        if data:
            state = EnrichmentState(status="loaded", data=data, updated_at=self._clock())
            self.states[key] = state
            return state
        return EnrichmentState()

    def state_for_key(self, key: str) -> EnrichmentState:
        return self.states.get(key) or EnrichmentState()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight_keys)

    @property
    def queued(self) -> int:
        return len(self._queue)

    # -- queue -----------------------------------------------------------
    def enqueue(self, items: Iterable[Any]) -> int:
        """Admit up to batch_limit items that are idle and not already queued or in flight."""
        if self._closed:
            return 0
        admitted = 0
        for raw in list(items or [])[: self.batch_limit]:
            item = normalize_item(raw)
            if item is None or not self.can_request(item):
                continue
            key = item_cache_key(item)
            if key is None or key in self._queued_keys or key in self._in_flight_keys:
                continue
            if self.get_state(item).status != "idle":
                continue
            self._queued_keys.add(key)
            self._queue.append((key, item))
            admitted += 1
        if admitted:
            self.drained.clear()
        self.pump()
        return admitted

    def pump(self) -> None:
        while not self._closed and len(self._in_flight_keys) < self.concurrency and self._queue:
            key, item = self._queue.popleft()
            self._queued_keys.discard(key)
            if key in self._in_flight_keys:
                continue
            # Another path may have fetched it while it waited
            if self.get_state(item).status != "idle":
                continue
            self._in_flight_keys.add(key)
            task = asyncio.get_running_loop().create_task(self._run(key, item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._maybe_signal_drained()

    async def _run(self, key: str, item: CatalogItem) -> None:
        try:
            await self.request(item)
        finally:
            self._in_flight_keys.discard(key)
            self.pump()

    def _maybe_signal_drained(self) -> None:
        if self._in_flight_keys or self._queue or self.drained.is_set():
            return
        self.drained.set()
        self.drain_count += 1
        if self.on_drained is not None:
            try:
                self.on_drained()
            except Exception as e:
                logger.warning(f"{self.name} drained callback failed: {e}")

    async def wait_drained(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self.drained.wait(), timeout)

    def _halt(self, reason: str) -> None:
        if self._queue:
            logger.warning(f"{self.name} queue halted ({reason}); dropping {len(self._queue)} pending items")
        self._queue.clear()
        self._queued_keys.clear()

    # -- fetch -----------------------------------------------------------
    async def request(self, item: Any, force: bool = False) -> EnrichmentState:
        item = normalize_item(item)
        if item is None:
            return EnrichmentState(status="error", message="Item has no usable id")
        key = item_cache_key(item)
        current = self.get_state(item)
        if not force and current.status in ("loading", "loaded"):
            return current

        generation = self._generation.get(key, 0) + 1
        self._generation[key] = generation
        self.states[key] = EnrichmentState(status="loading", data=current.data, updated_at=self._clock())
        self.fetch_count += 1

        try:
            data = await self.fetcher(item)
            next_state = EnrichmentState(status="loaded", data=data, updated_at=self._clock())
        except EnrichmentNotFound as e:
            next_state = EnrichmentState(status="error", data=current.data,
                                         message=str(e) or "No data available", updated_at=self._clock())
        except UpstreamRateLimited as e:
            next_state = EnrichmentState(status="error", data=current.data,
                                         message="Rate limited, try again later", updated_at=self._clock())
            self._halt(str(e))
        except NarrowDownError as e:
            logger.warning(f"{self.name} fetch failed for {key}: {e}")
            next_state = EnrichmentState(status="error", data=current.data,
                                         message=str(e) or "Request failed", updated_at=self._clock())
        except Exception as e:
            logger.warning(f"{self.name} fetch failed for {key}: {e}")
            next_state = EnrichmentState(status="error", data=current.data,
                                         message="Request failed", updated_at=self._clock())

        if self._generation.get(key) != generation:
            # A newer request for the same item owns the state now
            return self.states.get(key, next_state)
        self.states[key] = next_state
        return next_state

    async def close(self) -> None:
        """Stop admitting work and let in-flight fetches finish."""
        self._closed = True
        self._queue.clear()
        self._queued_keys.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for state in self.states.values():
            counts[state.status] = counts.get(state.status, 0) + 1
        return {
            "name": self.name,
            "queued": self.queued,
            "in_flight": self.in_flight,
            "fetches": self.fetch_count,
            "drained": self.drain_count,
            "states": counts,
        }


def describe_state(state: Optional[EnrichmentState]) -> str:
    """Human-readable status line for a critic score state."""
    if state is None or state.status == "idle":
        return "Not fetched yet"
    if state.status == "loading":
        return "Fetching critic scores..."
    if state.status == "error":
        return state.message or "Critic scores unavailable"
    data = state.data
    if isinstance(data, dict):
        data = CriticScores(**data)
    if not isinstance(data, CriticScores):
        return "Critic scores unavailable"
    parts = []
    if data.rotten_tomatoes is not None:
        parts.append(f"Rotten Tomatoes: {round(data.rotten_tomatoes)}%")
    if data.metacritic is not None:
        parts.append(f"Metacritic: {round(data.metacritic)}")
    if data.imdb is not None:
        parts.append(f"IMDb: {data.imdb:.1f}")
    return " · ".join(parts) if parts else "Critic scores unavailable"


def weighted_critic_blend(scores: Optional[CriticScores]) -> Optional[float]:
    """Weighted 0-100 blend of the available critic signals, None when there are none."""
    if scores is None:
        return None
    signals = []
    if scores.rotten_tomatoes is not None:
        signals.append((scores.rotten_tomatoes, CRITIC_BLEND_WEIGHTS["rotten_tomatoes"]))
    if scores.metacritic is not None:
        signals.append((scores.metacritic, CRITIC_BLEND_WEIGHTS["metacritic"]))
    if scores.imdb is not None:
        signals.append((scores.imdb * 10, CRITIC_BLEND_WEIGHTS["imdb"]))
    total_weight = sum(weight for _, weight in signals)
    if not signals or total_weight <= 0:
        return None
    return sum(value * weight for value, weight in signals) / total_weight


def build_critic_queue(omdb, settings, on_drained=None, clock=None) -> EnrichmentQueue:
    return EnrichmentQueue(
        "critic_scores",
        fetcher=omdb.get_critic_scores,
        concurrency=settings.enrichment_concurrency,
        batch_limit=settings.enrichment_batch_limit,
        can_request=lambda item: bool(item.imdb_id or (item.title and item.title.strip())),
        existing_data=lambda item: item.critic_scores if item.critic_scores and item.critic_scores.has_any() else None,
        on_drained=on_drained,
        clock=clock,
    )


def build_credits_queue(tmdb, settings, on_drained=None, clock=None) -> EnrichmentQueue:
    async def fetch_credits(item: CatalogItem) -> Dict[str, List[str]]:
        enriched = apply_credits(item, await tmdb.fetch_credits(item.id))
        if not enriched.cast and not enriched.directors:
            raise EnrichmentNotFound(f"No credits listed for {item.title or item.id}")
        return {"cast": enriched.cast, "directors": enriched.directors}

    return EnrichmentQueue(
        "credits",
        fetcher=fetch_credits,
        concurrency=settings.enrichment_concurrency,
        batch_limit=settings.credits_batch_limit,
        can_request=lambda item: bool(item.id),
        existing_data=lambda item: {"cast": item.cast, "directors": item.directors}
        if (item.cast or item.directors) else None,
        on_drained=on_drained,
        clock=clock,
    )


def apply_enrichment(item: CatalogItem, critic_queue: Optional[EnrichmentQueue],
                     credits_queue: Optional[EnrichmentQueue]) -> CatalogItem:
    """Fill an item's empty enrichment fields from loaded queue states."""
    key = item_cache_key(item)
    update: Dict[str, Any] = {}
    if critic_queue is not None and item.critic_scores is None:
        state = critic_queue.state_for_key(key)
        if state.data is not None:
            update["critic_scores"] = state.data
    if credits_queue is not None:
        state = credits_queue.state_for_key(key)
        if isinstance(state.data, dict):
            if not item.cast and state.data.get("cast"):
                update["cast"] = list(state.data["cast"])
            if not item.directors and state.data.get("directors"):
                update["directors"] = list(state.data["directors"])
    return item.model_copy(update=update) if update else item
