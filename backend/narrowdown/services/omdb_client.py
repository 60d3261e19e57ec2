"""
OMDb client for NarrowDown.
Looks up critic scores (Rotten Tomatoes, Metacritic, IMDb) by IMDb id or by
title and year. Lookups never raise: every call returns a LookupResult whose
outcome tells the caller what happened. Successful payloads are cached for
OMDB_CACHE_TTL_SECONDS in the `omdbRatings` collection.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from narrowdown.core import metrics
from narrowdown.core.config import settings as default_settings
from narrowdown.core.errors import EnrichmentNotFound, UpstreamRateLimited, UpstreamUnavailable
from narrowdown.schemas import CatalogItem, CriticScores, LookupResult
from narrowdown.services.item_normalizer import normalize_critic_scores
from narrowdown.utils.payload import to_float
from narrowdown.utils.timezone import extract_year, utc_now

logger = logging.getLogger(__name__)

OMDB_CACHE_COLLECTION = "omdbRatings"
SERVICE = "omdb_api"


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def parse_percent(value: Any) -> Optional[int]:
    text = _clean(value if isinstance(value, str) else (str(value) if value is not None else ""))
    if text.endswith("%"):
        text = text[:-1]
    number = to_float(text)
    if number is None:
        return None
    return max(0, min(100, int(round(number))))


def parse_score(value: Any) -> Optional[int]:
    number = to_float(value)
    if number is None:
        return None
    return max(0, min(100, int(round(number))))


def parse_imdb_rating(value: Any) -> Optional[float]:
    number = to_float(value)
    if number is None:
        return None
    return round(max(0.0, min(10.0, number)), 1)


def build_cache_key_parts(imdb_id: str = "", title: str = "", year: str = "", type: str = "") -> List[str]:
    parts = ["omdb", f"type:{type.lower() if type else 'any'}"]
    if imdb_id:
        parts.append(f"imdb:{imdb_id.lower()}")
    elif title:
        parts.append(f"title:{title.lower()}")
    else:
        parts.append("title:")
    parts.append(f"year:{year}" if year else "year:")
    return parts


def normalize_payload(data: Dict[str, Any], type: str = None, requested_title: str = "",
                      requested_year: str = "") -> Optional[CriticScores]:
    if not isinstance(data, dict):
        return None
    ratings: Dict[str, Any] = {}
    for entry in data.get("Ratings") or []:
        if isinstance(entry, dict) and isinstance(entry.get("Source"), str) and entry["Source"].strip():
            ratings[entry["Source"].strip().lower()] = entry.get("Value")

    metascore = data.get("Metascore")
    imdb_rating = data.get("imdbRating")
    return CriticScores(
        source="omdb",
        rotten_tomatoes=parse_percent(ratings.get("rotten tomatoes", ratings.get("rottentomatoes"))),
        metacritic=parse_score(metascore if metascore is not None else ratings.get("metacritic")),
        imdb=parse_imdb_rating(
            imdb_rating if imdb_rating is not None
            else ratings.get("internet movie database", ratings.get("imdb"))
        ),
        imdb_id=_clean(data.get("imdbID")) or None,
        title=_clean(data.get("Title")) or _clean(requested_title) or None,
        year=_clean(data.get("Year")) or _clean(requested_year) or None,
        type=type or None,
        fetched_at=utc_now(),
    )


class OmdbClient:
    def __init__(self, cache=None, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None, ledger=None):
        self.settings = settings or default_settings
        self.cache = cache
        self.transport = transport
        self.ledger = ledger

    @property
    def configured(self) -> bool:
        return bool(_clean(self.settings.omdb_api_key))

    async def lookup(
        self,
        imdb_id: str = "",
        title: str = "",
        year: Any = "",
        type: str = "movie",
        force_refresh: bool = False,
        api_key: Optional[str] = None,
    ) -> LookupResult:
        key = _clean(api_key or self.settings.omdb_api_key)
        if not key:
            return LookupResult(outcome="invalid_key", message="OMDb API key is missing.")

        imdb_id = _clean(imdb_id)
        title = _clean(title)
        year = _clean(str(year)) if year not in (None, "") else ""
        cache_parts = build_cache_key_parts(imdb_id, title, year, type or "any")

        if not force_refresh and self.cache is not None:
            cached = await self.cache.read_json(OMDB_CACHE_COLLECTION, cache_parts, self.settings.omdb_cache_ttl_seconds)
            if cached:
                return LookupResult(outcome="cache_hit", payload=normalize_critic_scores(cached))

        if self.ledger is not None:
            blocked_until = await self.ledger.next_eligible_at(SERVICE)
            if blocked_until is not None:
                return LookupResult(outcome="rate_limited",
                                    message=f"OMDb backing off until {blocked_until.isoformat()}.")

        params = {"apikey": key}
        if imdb_id:
            params["i"] = imdb_id
        elif title:
            params["t"] = title
        if year:
            params["y"] = year
        if type:
            params["type"] = type
        params["plot"] = "short"
        params["r"] = "json"

        try:
            async with httpx.AsyncClient(timeout=10, transport=self.transport) as client:
                resp = await client.get(self.settings.omdb_base_url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"OMDb request failed for {imdb_id or title}: {e}")
            return LookupResult(outcome="request_failed", message=str(e), made_network_request=True)
        await metrics.increment("omdb_requests")

        data = None
        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code == 401:
            message = data.get("Error") if isinstance(data, dict) and data.get("Error") else "OMDb rejected the API key."
            return LookupResult(outcome="invalid_key", message=message, made_network_request=True)
        if resp.status_code == 429:
            await self._mark_rate_limited("OMDb request limit reached.", to_float(resp.headers.get("Retry-After")))
            return LookupResult(outcome="rate_limited", message="OMDb request limit reached.", made_network_request=True)
        if resp.status_code >= 400:
            return LookupResult(
                outcome="request_failed",
                message=f"OMDb request failed with status {resp.status_code}.",
                made_network_request=True,
            )
        if not isinstance(data, dict):
            return LookupResult(outcome="request_failed", message="OMDb returned a malformed body.",
                                made_network_request=True)

        if data.get("Response") == "False":
            message = data.get("Error") if isinstance(data.get("Error"), str) else "OMDb returned no results"
            normalized = message.lower()
            if "api key" in normalized:
                outcome = "invalid_key"
            elif "limit" in normalized or "too many" in normalized:
                outcome = "rate_limited"
                await self._mark_rate_limited(message)
            else:
                outcome = "not_found"
            return LookupResult(outcome=outcome, message=message, made_network_request=True)

        payload = normalize_payload(data, type=type, requested_title=title, requested_year=year)
        if payload is None:
            return LookupResult(outcome="not_found", message="OMDb did not return critic scores for this title.",
                                made_network_request=True)

        if self.cache is not None:
            await self.cache.write_json(
                OMDB_CACHE_COLLECTION,
                cache_parts,
                payload.model_dump(mode="json"),
                metadata={
                    "imdb_id": payload.imdb_id or imdb_id or None,
                    "title": payload.title or title or None,
                    "year": payload.year or year or None,
                    "type": payload.type or type or None,
                },
            )
        return LookupResult(outcome="fetched", payload=payload, made_network_request=True)

    async def _mark_rate_limited(self, reason: str, retry_after: Optional[float] = None) -> None:
        if self.ledger is None:
            return
        await self.ledger.mark_rate_limited(
            SERVICE, reason, retry_after or self.settings.omdb_prefetch_retry_after_seconds
        )

    async def get_critic_scores(self, item: CatalogItem, force_refresh: bool = False) -> CriticScores:
        """Critic scores for a catalog item, raising the error taxonomy instead of returning outcomes."""
        year = extract_year(item.release_date)
        result = await self.lookup(
            imdb_id=item.imdb_id or "",
            title=item.title,
            year=str(year) if year else "",
            force_refresh=force_refresh,
        )
        if result.outcome in ("fetched", "cache_hit") and result.payload is not None:
            return result.payload
        if result.outcome == "not_found" or result.outcome == "cache_hit":
            raise EnrichmentNotFound(result.message or f"No critic scores for {item.title}")
        if result.outcome == "rate_limited":
            raise UpstreamRateLimited(result.message or "OMDb rate limited", service=SERVICE)
        raise UpstreamUnavailable(result.message or "OMDb request failed", service=SERVICE)
