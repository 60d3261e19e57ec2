from fastapi import APIRouter, Request

from narrowdown.api.movies import get_engine
from narrowdown.core.metrics import counters_snapshot, latency_snapshot

router = APIRouter()


@router.get("/cache")
async def cache_status(request: Request):
    """Durable store health, in-process cache size, rate limit windows and queue stats."""
    engine = get_engine(request)
    status = await engine.cache_status()
    status["counters"] = await counters_snapshot()
    status["latency"] = await latency_snapshot()
    return status
