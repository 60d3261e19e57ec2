
import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Durable store (Redis). Empty REDIS_URL disables it and components run on their fallbacks.
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    cache_require_durable: bool = os.getenv("CACHE_REQUIRE_DURABLE", "false").lower() in ("1", "true", "yes", "on")
    cache_memory_max_entries: int = int(os.getenv("CACHE_MEMORY_MAX_ENTRIES", "500"))
    cache_key_prefix: str = os.getenv("CACHE_KEY_PREFIX", "narrowdown")

    # Upstream catalog (TMDB)
    tmdb_api_key: str = os.getenv("TMDB_API_KEY", "")
    tmdb_base_url: str = os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org")
    tmdb_cache_ttl_seconds: int = int(os.getenv("TMDB_CACHE_TTL_SECONDS", str(60 * 60 * 6)))  # 6h
    tmdb_timeout_seconds: float = float(os.getenv("TMDB_TIMEOUT_SECONDS", "10"))
    tmdb_max_retries: int = int(os.getenv("TMDB_MAX_RETRIES", "4"))

    # Secondary critic scores (OMDb)
    omdb_api_key: str = os.getenv("OMDB_API_KEY", os.getenv("OMDB_KEY", ""))
    omdb_base_url: str = os.getenv("OMDB_BASE_URL", "https://www.omdbapi.com/")
    omdb_cache_ttl_seconds: int = int(os.getenv("OMDB_CACHE_TTL_SECONDS", str(60 * 60 * 12)))  # 12h

    # Catalog snapshot
    catalog_refresh_pages: int = int(os.getenv("CATALOG_REFRESH_PAGES", "25"))
    catalog_min_votes: int = int(os.getenv("CATALOG_MIN_VOTES", "50"))
    catalog_min_score: float = float(os.getenv("CATALOG_MIN_SCORE", "6.0"))
    catalog_ttl_seconds: int = int(os.getenv("CATALOG_TTL_SECONDS", str(60 * 60 * 24)))
    catalog_refresh_interval_seconds: int = int(os.getenv("CATALOG_REFRESH_INTERVAL_SECONDS", str(60 * 60 * 12)))
    new_release_window_days: int = int(os.getenv("NEW_RELEASE_WINDOW_DAYS", "120"))
    new_release_max_pages: int = int(os.getenv("NEW_RELEASE_MAX_PAGES", "5"))

    # Progressive discovery cursor. Page ceiling starts at discover_max_pages and grows by
    # discover_initial_pages per exhausted ceiling, never beyond discover_max_pages_limit.
    discover_initial_pages: int = int(os.getenv("DISCOVER_INITIAL_PAGES", "3"))
    discover_max_pages: int = int(os.getenv("DISCOVER_MAX_PAGES", "10"))
    discover_max_pages_limit: int = int(os.getenv("DISCOVER_MAX_PAGES_LIMIT", "30"))
    discover_history_limit: int = int(os.getenv("DISCOVER_HISTORY_LIMIT", "50"))
    discover_persist_debounce_seconds: float = float(os.getenv("DISCOVER_PERSIST_DEBOUNCE_SECONDS", "1.5"))
    local_state_dir: str = os.getenv("LOCAL_STATE_DIR", "/app/data/state")

    # Ranking
    min_priority_results: int = int(os.getenv("MIN_PRIORITY_RESULTS", "12"))

    # Enrichment queues
    enrichment_concurrency: int = int(os.getenv("ENRICHMENT_CONCURRENCY", "4"))
    enrichment_batch_limit: int = int(os.getenv("ENRICHMENT_BATCH_LIMIT", "60"))
    credits_batch_limit: int = int(os.getenv("CREDITS_BATCH_LIMIT", "20"))

    # Critic score prefetch job
    omdb_prefetch_delay_seconds: float = float(os.getenv("OMDB_PREFETCH_DELAY_SECONDS", "1.5"))
    omdb_prefetch_jitter_seconds: float = float(os.getenv("OMDB_PREFETCH_JITTER_SECONDS", "0.35"))
    omdb_prefetch_checkpoint_every: int = int(os.getenv("OMDB_PREFETCH_CHECKPOINT_EVERY", "10"))
    omdb_prefetch_max_fetches_per_run: int = int(os.getenv("OMDB_PREFETCH_MAX_FETCHES_PER_RUN", "0"))
    omdb_prefetch_retry_after_seconds: int = int(os.getenv("OMDB_PREFETCH_RETRY_AFTER_SECONDS", str(60 * 60)))

    # Maintenance endpoints are disabled while this is empty
    admin_refresh_token: str = os.getenv("ADMIN_REFRESH_TOKEN", "")

settings = Settings()
