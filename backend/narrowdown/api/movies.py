"""
movies.py - Movie catalog, feed and critic score endpoints
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from narrowdown.core.errors import UpstreamError
from narrowdown.services.enrichment_queue import describe_state
from narrowdown.services.feed_engine import MovieFeedEngine
from narrowdown.services.feed_filters import FeedFilters
from narrowdown.utils.payload import parse_bool_flag, parse_id_set

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_LOOKUP_TYPES = {"movie", "series", "episode"}
LOOKUP_STATUS = {
    "not_found": (404, "omdb_not_found"),
    "rate_limited": (429, "omdb_rate_limited"),
    "invalid_key": (502, "omdb_invalid_key"),
    "request_failed": (502, "omdb_request_failed"),
}


def get_engine(request: Request) -> MovieFeedEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine is not ready")
    return engine


def _dump(items):
    return [item.model_dump(mode="json") for item in items]


@router.get("/movies")
async def list_movies(
    request: Request,
    q: str = Query("", description="Title search"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    fresh_limit: Optional[int] = Query(None, alias="freshLimit", ge=1, le=100),
    min_score: Optional[float] = Query(None, alias="minScore", ge=0, le=10),
    exclude_ids: Optional[str] = Query(None, alias="excludeIds"),
    cache_only: Optional[str] = Query(None, alias="cacheOnly"),
    include_fresh: Optional[str] = Query(None, alias="includeFresh"),
    fresh_only: Optional[str] = Query(None, alias="freshOnly"),
    scope: Optional[str] = Query(None),
    refresh: Optional[str] = Query(None),
):
    """Curated catalog search, optionally topped up with recent releases fetched live."""
    engine = get_engine(request)
    try:
        response = await engine.catalog.query_movies(
            query=q.strip(),
            limit=limit,
            fresh_limit=fresh_limit,
            min_score=min_score,
            exclude_ids=parse_id_set(exclude_ids),
            cache_only=parse_bool_flag(cache_only),
            include_fresh=parse_bool_flag(include_fresh),
            fresh_only=parse_bool_flag(fresh_only) or (scope or "").lower() == "new",
            force_refresh=parse_bool_flag(refresh),
        )
    except Exception as e:
        logger.error(f"Failed to fetch movies: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch movies")
    return {
        "results": _dump(response["results"]),
        "curated": _dump(response["curated"]),
        "fresh": _dump(response["fresh"]),
        "metadata": response["metadata"],
    }


@router.get("/movies/stats")
async def movie_stats(
    request: Request,
    exclude_ids: Optional[str] = Query(None, alias="excludeIds"),
    rating_precision: Optional[float] = Query(None, alias="ratingPrecision", gt=0, le=10),
    rating_top: int = Query(5, alias="ratingTop", ge=1, le=100),
    cache_only: Optional[str] = Query(None, alias="cacheOnly"),
):
    engine = get_engine(request)
    await engine.catalog.ensure_catalog(allow_stale=True, cache_only=parse_bool_flag(cache_only))
    return engine.catalog.stats(
        exclude_ids=parse_id_set(exclude_ids),
        rating_precision=rating_precision,
        rating_top=rating_top,
    )


@router.get("/movies/genres")
async def movie_genres(request: Request):
    engine = get_engine(request)
    try:
        genres = await engine.genre_options()
    except UpstreamError as e:
        logger.warning(f"Genre list unavailable: {e}")
        return JSONResponse(status_code=502, content={"error": "tmdb_unavailable", "message": str(e)})
    return {"genres": genres}


@router.get("/movies/feed")
async def movie_feed(
    request: Request,
    user_id: Optional[str] = Query(None),
    min_rating: Optional[str] = Query(None, alias="minRating"),
    min_votes: Optional[str] = Query(None, alias="minVotes"),
    start_year: Optional[str] = Query(None, alias="startYear"),
    end_year: Optional[str] = Query(None, alias="endYear"),
    genres: Optional[str] = Query(None, description="__all__, __none__ or comma separated genre ids"),
    min_feed_size: int = Query(20, alias="minFeedSize", ge=1, le=200),
    suppressed_ids: Optional[str] = Query(None, alias="suppressedIds"),
    cache_only: Optional[str] = Query(None, alias="cacheOnly"),
):
    """Filtered, ranked feed that pages upstream until enough titles match."""
    engine = get_engine(request)
    filters = FeedFilters.sanitize(min_rating, min_votes, start_year, end_year, genres)
    result = await engine.load_feed(
        filters=filters,
        min_feed_size=min_feed_size,
        suppressed_ids=parse_id_set(suppressed_ids),
        user_id=user_id,
        cache_only=parse_bool_flag(cache_only),
    )
    items = []
    for item in result.items:
        payload = item.model_dump(mode="json")
        payload["critic_status"] = describe_state(engine.critic_queue.get_state(item))
        items.append(payload)
    return {
        "results": items,
        "filtered_count": result.filtered_count,
        "filters": filters.describe(),
        "signature": result.signature,
        "cursor": result.cursor.model_dump() if result.cursor else None,
        "reached_end": result.reached_end,
        "made_network_request": result.made_network_request,
        "partial_error": result.error,
    }


@router.get("/movie-ratings")
async def movie_ratings(
    request: Request,
    imdb_id: Optional[str] = Query(None, alias="imdbId"),
    title: Optional[str] = Query(None),
    year: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    refresh: Optional[str] = Query(None),
):
    engine = get_engine(request)
    if not engine.omdb.configured:
        return JSONResponse(status_code=400, content={
            "error": "omdb_key_missing", "message": "OMDb API key is not configured on the server.",
        })
    imdb_id = (imdb_id or "").strip()
    title = (title or "").strip()
    if not imdb_id and not title:
        return JSONResponse(status_code=400, content={
            "error": "missing_lookup", "message": "Provide an imdbId or title to look up critic scores.",
        })
    lookup_type = (type or "").strip().lower()
    result = await engine.omdb.lookup(
        imdb_id=imdb_id,
        title=title,
        year=(year or "").strip(),
        type=lookup_type if lookup_type in ALLOWED_LOOKUP_TYPES else "",
        force_refresh=parse_bool_flag(refresh),
    )
    if result.outcome in LOOKUP_STATUS:
        status, error = LOOKUP_STATUS[result.outcome]
        return JSONResponse(status_code=status, content={"error": error, "message": result.message})
    return {
        "outcome": result.outcome,
        **(result.payload.model_dump(mode="json") if result.payload else {}),
    }
