"""
tasks.py

Celery task definitions. Each task builds its own engine inside asyncio.run so
Redis clients stay bound to the task's event loop.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import shared_task

from narrowdown.core.redis_client import close_redis
from narrowdown.services.feed_engine import MovieFeedEngine

logger = logging.getLogger(__name__)


@shared_task
def refresh_movie_catalog() -> Dict[str, Any]:
    """Rebuild the catalog snapshot from upstream, bypassing cached discover pages."""
    async def _run():
        engine = MovieFeedEngine.from_settings()
        try:
            metadata = await engine.refresh_catalog()
            logger.info(f"Catalog refresh task finished: {metadata}")
            return metadata
        finally:
            await engine.shutdown()
            await close_redis()
    return asyncio.run(_run())


@shared_task
def prefetch_critic_scores(max_fetches: Optional[int] = None, reset_cursor: bool = False) -> Dict[str, Any]:
    """Warm the critic score cache for the cached catalog, resuming at the stored cursor."""
    async def _run():
        engine = MovieFeedEngine.from_settings()
        try:
            progress = await engine.prefetch.run({"max_fetches": max_fetches, "reset_cursor": reset_cursor})
            return progress.model_dump(mode="json")
        except RuntimeError as e:
            logger.error(f"prefetch_critic_scores failed: {e}")
            return {"error": str(e)}
        finally:
            await engine.shutdown()
            await close_redis()
    return asyncio.run(_run())
