from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from ..core.config import settings
import asyncio
import threading
from typing import Dict, Optional

# Per-event-loop async Redis clients and pools to avoid cross-loop issues
_redis_async_by_loop: Dict[str, aioredis.Redis] = {}
_async_pool_by_loop: Dict[str, AsyncConnectionPool] = {}

def _current_loop_key() -> str:
	"""Generate a stable key for the current async context.

	Prefer the running event loop identity; if none, fall back to thread id.
	"""
	try:
		loop = asyncio.get_running_loop()
		return f"loop-{id(loop)}"
	except RuntimeError:
		# No running loop (likely called from sync context)
		return f"thread-{threading.get_ident()}"

def get_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
	"""Get an async Redis client bound to the current event loop.

	Returns None when no Redis URL is configured, so callers can fall back to
	their in-process state. Clients are never shared across event loops, which
	avoids "Future attached to a different loop" errors when awaited.
	"""
	redis_url = url if url is not None else settings.redis_url
	if not redis_url:
		return None
	key = f"{_current_loop_key()}|{redis_url}"
	client = _redis_async_by_loop.get(key)
	if client is not None:
		return client

	pool = AsyncConnectionPool.from_url(
		redis_url,
		decode_responses=True,
		max_connections=50,
		socket_connect_timeout=5,
		socket_timeout=5,
		retry_on_timeout=True,
	)
	client = aioredis.Redis(connection_pool=pool)
	_async_pool_by_loop[key] = pool
	_redis_async_by_loop[key] = client
	return client

async def close_redis() -> None:
	"""Close the client bound to the current loop (application shutdown)."""
	prefix = f"{_current_loop_key()}|"
	for key in [k for k in _redis_async_by_loop if k.startswith(prefix)]:
		client = _redis_async_by_loop.pop(key)
		_async_pool_by_loop.pop(key, None)
		await client.aclose()
