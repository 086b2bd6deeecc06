"""
Request rate limits backed by slowapi.

All API routes share one budget per client address, enforced by
``SlowAPIMiddleware`` from the limiter's application limits. Coffee
analysis draws on a second, smaller budget counted on the same storage.
Counters live in Redis when ``REDIS_URL`` is set and in process memory
otherwise.
"""

from __future__ import annotations

import logging

from fastapi import Request
from limits import parse
from redis import exceptions as redis_exceptions
from slowapi import Limiter
from slowapi.util import get_remote_address

from dripmate.config import Settings

logger = logging.getLogger(__name__)

MEMORY_STORAGE_URI = "memory://"
AI_SCOPE = "ai"


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        application_limits=[settings.api_rate_limit],
        storage_uri=settings.redis_url or MEMORY_STORAGE_URI,
        enabled=settings.rate_limit_enabled,
        # Storage outages let requests through instead of failing them.
        swallow_errors=True,
    )


def hit_ai_limit(limiter: Limiter, request: Request, limit: str) -> bool:
    """Count one analysis call for the caller; False once the budget is spent."""
    if not limiter.enabled:
        return True
    try:
        return limiter.limiter.hit(parse(limit), AI_SCOPE, get_remote_address(request))
    except redis_exceptions.ConnectionError:
        logger.warning("Rate limit storage unreachable; allowing analysis request")
        return True
