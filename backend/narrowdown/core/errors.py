"""
errors.py

Exception taxonomy for the catalog acquisition engine.
Upstream clients raise these; engine components absorb them at their boundary.
"""
from typing import Optional


class NarrowDownError(Exception):
    """Base class for all engine errors."""


class UpstreamError(NarrowDownError):
    """A call to an upstream API did not produce a usable response."""

    def __init__(self, message: str, service: str = None, status: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.status = status


class UpstreamUnavailable(UpstreamError):
    """Network failure, 5xx or any other non-success response. Retryable later."""


class UpstreamRateLimited(UpstreamError):
    """Upstream refused the request because of its quota."""

    def __init__(self, message: str, service: str = None, status: Optional[int] = 429,
                 retry_after: Optional[float] = None):
        super().__init__(message, service=service, status=status)
        self.retry_after = retry_after


class InvalidResponseShape(UpstreamError):
    """Upstream answered with a payload that cannot be parsed into the expected shape."""


class CacheBackendUnavailable(NarrowDownError):
    """The durable document store could not be reached."""


class EnrichmentNotFound(NarrowDownError):
    """The secondary API has no data for the requested title."""
