"""
admin.py - Maintenance endpoints guarded by ADMIN_REFRESH_TOKEN
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from narrowdown.api.movies import get_engine
from narrowdown.schemas import PrefetchRequest
from narrowdown.utils.timezone import utc_now

logger = logging.getLogger(__name__)
router = APIRouter()


def read_admin_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    header = request.headers.get("x-admin-token")
    if header:
        return header.strip()
    return (request.query_params.get("token") or "").strip()


def _deny(request: Request) -> Optional[JSONResponse]:
    expected = get_engine(request).settings.admin_refresh_token
    if not expected:
        return JSONResponse(status_code=503, content={"error": "admin_refresh_unconfigured"})
    token = read_admin_token(request)
    if not token or token != expected:
        return JSONResponse(status_code=401, content={"error": "admin_refresh_unauthorized"})
    return None


@router.post("/refresh-movie-cache")
async def refresh_movie_cache(request: Request):
    denied = _deny(request)
    if denied:
        return denied
    engine = get_engine(request)
    started = time.perf_counter()
    try:
        metadata = await engine.refresh_catalog()
    except Exception as e:
        logger.error(f"Admin movie cache refresh failed: {e}")
        return JSONResponse(status_code=500, content={"error": "admin_refresh_failed"})
    return {
        "ok": metadata.get("last_error") is None,
        "refreshed_at": utc_now().isoformat(),
        "duration_ms": int((time.perf_counter() - started) * 1000),
        "catalog_total": metadata.get("total", 0),
        "catalog_updated_at": metadata.get("updated_at"),
        "source": metadata.get("source"),
        "last_error": metadata.get("last_error"),
    }


@router.get("/prefetch-movie-ratings")
async def prefetch_status(request: Request):
    denied = _deny(request)
    if denied:
        return denied
    status = await get_engine(request).prefetch.get_status()
    return {"ok": True, **status.model_dump(mode="json")}


@router.post("/prefetch-movie-ratings")
async def prefetch_control(request: Request, payload: Optional[PrefetchRequest] = None):
    denied = _deny(request)
    if denied:
        return denied
    job = get_engine(request).prefetch
    payload = payload or PrefetchRequest()

    if payload.action == "stop":
        stopping = job.stop()
        status = await job.get_status()
        return {"ok": True, "started": False, "stopping": stopping, **status.model_dump(mode="json")}

    started = job.start(payload.model_dump(exclude={"action"}))
    status = await job.get_status()
    if not started:
        return JSONResponse(status_code=409, content={
            "error": "omdb_prefetch_in_progress", **status.model_dump(mode="json"),
        })
    return JSONResponse(status_code=202, content={"ok": True, "started": True, **status.model_dump(mode="json")})
