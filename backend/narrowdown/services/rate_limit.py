"""
rate_limit.py

Exponential backoff for upstream quota errors, plus a ledger that records
when a rate-limited service may be called again so later runs back off.
Back-off windows are kept in process and mirrored to the durable store
(`rateLimits` collection) when one is configured.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from narrowdown.core.errors import CacheBackendUnavailable, UpstreamRateLimited
from narrowdown.utils.timezone import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

RATE_LIMIT_COLLECTION = "rateLimits"
DEFAULT_RETRY_AFTER_SECONDS = 60


class RateLimitLedger:
    """Remembers per-service back-off windows."""

    def __init__(self, store=None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or utc_now
        self._windows: Dict[str, Dict[str, Any]] = {}

    async def mark_rate_limited(self, service: str, reason: str, retry_after: Optional[float] = None) -> datetime:
        seconds = retry_after if retry_after and retry_after > 0 else DEFAULT_RETRY_AFTER_SECONDS
        next_eligible_at = self._clock() + timedelta(seconds=seconds)
        record = {
            "service": service,
            "reason": reason,
            "recorded_at": self._clock().isoformat(),
            "next_eligible_at": next_eligible_at.isoformat(),
        }
        self._windows[service] = record
        if self.store is not None:
            try:
                await self.store.set(RATE_LIMIT_COLLECTION, service, record)
            except CacheBackendUnavailable as e:
                logger.warning(f"Could not persist rate limit for {service}: {e}")
        logger.error(f"Marked {service} rate limited until {next_eligible_at.isoformat()}: {reason}")
        return next_eligible_at

    async def next_eligible_at(self, service: str) -> Optional[datetime]:
        """When the service may be called again, or None if it is not backing off."""
        record = self._windows.get(service)
        if record is None and self.store is not None:
            try:
                record = await self.store.get(RATE_LIMIT_COLLECTION, service)
            except CacheBackendUnavailable as e:
                logger.warning(f"Could not read rate limit for {service}: {e}")
                record = None
            if record:
                self._windows[service] = record
        if not record:
            return None
        when = parse_timestamp(record.get("next_eligible_at"))
        if when is None or when <= self._clock():
            return None
        return when

    async def clear(self, service: str) -> None:
        self._windows.pop(service, None)
        if self.store is not None:
            try:
                await self.store.delete(RATE_LIMIT_COLLECTION, service)
            except CacheBackendUnavailable as e:
                logger.warning(f"Could not clear rate limit for {service}: {e}")

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(record) for name, record in self._windows.items()}


async def with_backoff(
    func,
    *args,
    max_retries: int = 5,
    service: str = None,
    ledger: Optional[RateLimitLedger] = None,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    **kwargs,
):
    """Execute func with exponential backoff on UpstreamRateLimited.

    A Retry-After hint from upstream replaces the computed delay (still capped).
    When retries run out the back-off is recorded on the ledger and the last
    error is re-raised.
    """
    delay = base_delay
    last_exception: Optional[UpstreamRateLimited] = None

    for attempt in range(max(1, max_retries)):
        try:
            return await func(*args, **kwargs)
        except UpstreamRateLimited as e:
            last_exception = e
            if attempt + 1 >= max_retries:
                break
            wait = min(e.retry_after if e.retry_after else delay, max_delay)
            logger.warning(f"Rate limited on attempt {attempt + 1}/{max_retries}, sleeping {wait}s")
            await asyncio.sleep(wait)
            delay = min(delay * 2, max_delay)

    if ledger is not None and service:
        await ledger.mark_rate_limited(
            service,
            str(last_exception),
            retry_after=last_exception.retry_after if last_exception else None,
        )
    raise last_exception or UpstreamRateLimited(f"Max retries ({max_retries}) exceeded", service=service)
