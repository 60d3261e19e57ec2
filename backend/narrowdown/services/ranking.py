"""
ranking.py

Candidate selection, composite priority scoring and duplicate merging.

Selection walks successively looser (rating, votes) thresholds and keeps the
first one that yields enough candidates. Candidates are then ordered by

    priority = 0.3 * confidence_adjusted_rating
             + 0.5 * sqrt(normalized_log_vote_volume)
             + 0.2 * recency

with a stable sort, so equal scores keep their input order.
"""
import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from narrowdown.schemas import CatalogItem
from narrowdown.services.item_normalizer import fill_enrichment, normalize_item
from narrowdown.utils.timezone import age_in_days, parse_release_date, utc_now

logger = logging.getLogger(__name__)

PRIORITY_THRESHOLDS: List[Tuple[float, int]] = [(7.0, 50), (6.5, 25), (6.0, 10)]
NEUTRAL_PRIOR = 0.6
CONFIDENCE_VOTES = 150
RECENCY_WINDOW_DAYS = 365.0
UNKNOWN_RECENCY = 0.5

RATING_WEIGHT = 0.3
VOTE_WEIGHT = 0.5
RECENCY_WEIGHT = 0.2


def completeness_score(item: CatalogItem) -> int:
    """Number of informative fields populated on a record."""
    return sum([
        bool(item.poster_path),
        bool(item.overview),
        item.rating is not None,
        item.vote_count is not None,
        bool(item.release_date),
        item.critic_scores is not None and item.critic_scores.has_any(),
        bool(item.directors),
        bool(item.cast),
        bool(item.genre_ids or item.genres),
    ])


def merge_by_id(items: Iterable[CatalogItem]) -> List[CatalogItem]:
    """Collapse duplicates by id, keeping the more complete record at the first position seen.

    A later duplicate replaces the kept record only with a strictly higher
    completeness score; enrichment fields missing on the survivor are filled
    from the other copy.
    """
    order: List[int] = []
    kept: Dict[int, CatalogItem] = {}
    for item in items or []:
        if item is None:
            continue
        current = kept.get(item.id)
        if current is None:
            order.append(item.id)
            kept[item.id] = item
            continue
        if completeness_score(item) > completeness_score(current):
            kept[item.id] = fill_enrichment(item, current)
        else:
            kept[item.id] = fill_enrichment(current, item)
    return [kept[item_id] for item_id in order]


def merge_restored(items: List[CatalogItem], restored: Iterable, suppressed_ids: Optional[Set[int]] = None) -> List[CatalogItem]:
    """Add locally restored records the feed does not already hold, skipping suppressed ids."""
    suppressed = suppressed_ids or set()
    merged = list(items)
    for raw in restored or []:
        record = normalize_item(raw)
        if record is None or record.id in suppressed:
            continue
        merged.append(record)
    return merge_by_id(merged)


def recency_score(item: CatalogItem, now: Optional[datetime] = None) -> float:
    age = age_in_days(parse_release_date(item.release_date), now)
    if age is None:
        return UNKNOWN_RECENCY
    if age <= 0:
        return 1.0
    if age >= RECENCY_WINDOW_DAYS:
        return 0.0
    return 1.0 - age / RECENCY_WINDOW_DAYS


def priority_scores(items: List[CatalogItem], now: Optional[datetime] = None) -> List[float]:
    now = now or utc_now()
    max_votes = max([item.vote_count or 0 for item in items] + [1])
    denominator = math.log10(max_votes + 1)
    scores = []
    for item in items:
        votes = max(0, item.vote_count or 0)
        raw_average = max(0.0, min(10.0, item.rating or 0.0)) / 10.0
        confidence = min(1.0, votes / CONFIDENCE_VOTES)
        adjusted = raw_average * confidence + NEUTRAL_PRIOR * (1 - confidence)
        vote_volume = math.log10(votes + 1) / denominator if denominator > 0 else 0.0
        scores.append(
            RATING_WEIGHT * adjusted
            + VOTE_WEIGHT * math.sqrt(vote_volume)
            + RECENCY_WEIGHT * recency_score(item, now)
        )
    return scores


def select_candidates(items: List[CatalogItem], min_results: int = 12) -> List[CatalogItem]:
    best_fallback: Optional[List[CatalogItem]] = None
    for min_rating, min_votes in PRIORITY_THRESHOLDS:
        matches = [
            item for item in items
            if item.rating is not None and item.vote_count is not None
            and item.rating >= min_rating and item.vote_count >= min_votes
        ]
        if len(matches) >= min_results:
            return matches
        if best_fallback is None and matches:
            best_fallback = matches
    if best_fallback is not None:
        return best_fallback
    return [item for item in items if item.rating is not None and item.vote_count is not None]


def order_by_priority(items: List[CatalogItem], now: Optional[datetime] = None) -> List[CatalogItem]:
    """Stable descending sort by priority score without any threshold selection."""
    scores = priority_scores(items, now)
    ranked = sorted(range(len(items)), key=lambda i: -scores[i])
    return [items[i] for i in ranked]


def rank(items: Iterable[CatalogItem], min_results: int = 12, now: Optional[datetime] = None) -> List[CatalogItem]:
    candidates = select_candidates(list(items or []), min_results)
    return order_by_priority(candidates, now)
