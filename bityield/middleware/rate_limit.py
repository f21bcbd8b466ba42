from __future__ import annotations

import logging
import time
from typing import Any, Callable

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

EXEMPT_PATHS = {"/", "/health"}


def peer_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def client_ip(request: Request) -> str:
    """Forwarded address for log lines. Caller-controlled, never used as a limiter key."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return peer_ip(request)


async def rate_limiter(request: Request, call_next: Callable, store: Any, limit: int, window_seconds: int):
    """Fixed-window limiter keyed by the connecting peer, counted in the cache store."""
    if request.url.path in EXEMPT_PATHS:
        return await call_next(request)

    window = int(time.time() // window_seconds)
    key = f"rate:{peer_ip(request)}:{window}"
    try:
        current = await store.incr(key)
        if current == 1:
            await store.expire(key, window_seconds)
    except Exception as e:
        # Store outage: let the request through
        logger.warning(f"Rate limiter store error, allowing request: {e}")
        return await call_next(request)

    if current > limit:
        retry_after = window_seconds - int(time.time()) % window_seconds
        logger.info(f"Rate limit exceeded for {key} ({current}/{limit})")
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded, try again later"},
            headers={"Retry-After": str(retry_after)},
        )

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, limit - current))
    return response
