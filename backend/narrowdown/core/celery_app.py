from celery import Celery
from narrowdown.core.config import settings
import os

celery_app = Celery(
    "narrowdown",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["narrowdown.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,
    worker_prefetch_multiplier=1,
    task_compression='gzip',
    result_compression='gzip',

    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # Catalog refresh and critic prefetch both hit rate-limited APIs; keep them off the default queue
    task_routes={
        'narrowdown.services.tasks.refresh_movie_catalog': {'queue': 'ingestion'},
        'narrowdown.services.tasks.prefetch_critic_scores': {'queue': 'ingestion'},
    },

    beat_schedule={
        "refresh-movie-catalog": {
            "task": "narrowdown.services.tasks.refresh_movie_catalog",
            "schedule": settings.catalog_refresh_interval_seconds,  # every 12 hours by default
        },
        "prefetch-critic-scores": {
            "task": "narrowdown.services.tasks.prefetch_critic_scores",
            "schedule": 60 * 60 * 6,  # every 6 hours; resumes from the stored cursor
            "kwargs": {"max_fetches": 500},
        },
    },
    timezone=os.getenv("NARROWDOWN_TIMEZONE") or os.getenv("TZ") or "UTC",
)
