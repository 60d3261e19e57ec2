from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware

from narrowdown.api import admin, movies, status
from narrowdown.core.redis_client import close_redis
from narrowdown.services.feed_engine import MovieFeedEngine
from narrowdown.utils.logger import logger


app = FastAPI(title="NarrowDown API", version="1.0.0")

# Catalog payloads are large; compress them
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(movies.router, prefix="/api", tags=["Movies"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
app.include_router(status.router, prefix="/api/status", tags=["Status"])


@app.on_event("startup")
async def startup_event():
    # Tests may install their own engine before startup
    if getattr(app.state, "engine", None) is None:
        app.state.engine = MovieFeedEngine.from_settings()
    logger.info("NarrowDown engine ready")


@app.on_event("shutdown")
async def shutdown_event():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.shutdown()
    await close_redis()


@app.get("/health")
async def health_check():
    """Simple health check endpoint for load balancers/monitoring"""
    return {"status": "ok"}
