"""
schemas.py

Pydantic schemas for catalog items, cache entries, discovery cursors,
enrichment state and the results returned by engine components.
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal
import datetime


class CriticScores(BaseModel):
    """Secondary ratings bundle. Each score is None when the source has no value."""
    source: str = "omdb"
    rotten_tomatoes: Optional[int] = None   # percentage, 0-100
    metacritic: Optional[int] = None        # 0-100
    imdb: Optional[float] = None            # 0-10, one decimal
    imdb_id: Optional[str] = None
    title: Optional[str] = None
    year: Optional[str] = None
    type: Optional[str] = None
    fetched_at: Optional[datetime.datetime] = None

    def has_any(self) -> bool:
        return any(v is not None for v in (self.rotten_tomatoes, self.metacritic, self.imdb))


class CatalogItem(BaseModel):
    id: int
    title: str = ""
    original_title: Optional[str] = None
    overview: Optional[str] = None
    release_date: Optional[str] = None
    rating: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    genre_ids: List[int] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    imdb_id: Optional[str] = None
    critic_scores: Optional[CriticScores] = None
    cast: List[str] = Field(default_factory=list)
    directors: List[str] = Field(default_factory=list)


class CacheEntry(BaseModel):
    status: int = 200
    content_type: str = "application/json"
    body: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    fetched_at: Optional[datetime.datetime] = None


class DiscoveryCursorState(BaseModel):
    next_page: int = 1
    allowed_pages: int = 10
    total_pages: Optional[int] = None
    exhausted: bool = False
    updated_at: Optional[float] = None
    last_attempt: Optional[float] = None


class EnrichmentState(BaseModel):
    status: Literal["idle", "loading", "loaded", "error"] = "idle"
    data: Optional[Any] = None
    message: Optional[str] = None
    updated_at: Optional[float] = None


class CatalogMetadata(BaseModel):
    total: int = 0
    updated_at: Optional[datetime.datetime] = None
    source: Optional[str] = None
    stale: bool = False
    last_error: Optional[str] = None


class CatalogState(BaseModel):
    items: List[CatalogItem] = Field(default_factory=list)
    metadata: CatalogMetadata = Field(default_factory=CatalogMetadata)


class SearchResult(BaseModel):
    results: List[CatalogItem] = Field(default_factory=list)
    total_matches: int = 0


class DiscoverPage(BaseModel):
    page: int = 1
    results: List[CatalogItem] = Field(default_factory=list)
    total_pages: Optional[int] = None


class LookupResult(BaseModel):
    outcome: Literal["fetched", "cache_hit", "not_found", "rate_limited", "invalid_key", "request_failed"]
    payload: Optional[CriticScores] = None
    message: Optional[str] = None
    made_network_request: bool = False


class FeedResult(BaseModel):
    items: List[CatalogItem] = Field(default_factory=list)
    filtered_count: int = 0
    signature: str = ""
    cursor: Optional[DiscoveryCursorState] = None
    reached_end: bool = False
    made_network_request: bool = False
    error: Optional[str] = None


class PrefetchProgress(BaseModel):
    cursor: int = 0
    completed_passes: int = 0
    total_movies: int = 0
    processed: int = 0
    fetched: int = 0
    cache_hits: int = 0
    not_found: int = 0
    skipped: int = 0
    failed: int = 0
    rate_limited: int = 0
    halted_reason: Optional[str] = None
    next_eligible_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None


class PrefetchStatus(BaseModel):
    running: bool = False
    stop_requested: bool = False
    started_at: Optional[datetime.datetime] = None
    last_finished_at: Optional[datetime.datetime] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[PrefetchProgress] = None
    last_error: Optional[str] = None


# Payloads
class PrefetchRequest(BaseModel):
    action: Literal["start", "stop"] = "start"
    delay_seconds: Optional[float] = None
    jitter_seconds: Optional[float] = None
    checkpoint_every: Optional[int] = None
    max_fetches: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    reset_cursor: bool = False
