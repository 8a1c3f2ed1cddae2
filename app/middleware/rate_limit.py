"""
Rate limiter — in-process sliding window.

Limits:
  - Per IP on the set-cookie pickup endpoint: configurable (default 10/min)
"""

import time

from fastapi import HTTPException, Request

from app.api.common import get_real_ip

import structlog

logger = structlog.get_logger()

_memory_store: dict[str, list[float]] = {}


def _sliding_window_check(key: str, limit: int, window_seconds: int = 60) -> tuple[bool, int]:
    now = time.time()
    cutoff = now - window_seconds

    if key not in _memory_store:
        _memory_store[key] = []

    _memory_store[key] = [t for t in _memory_store[key] if t > cutoff]
    current_count = len(_memory_store[key])

    if current_count >= limit:
        return False, 0

    _memory_store[key].append(now)
    return True, limit - current_count - 1


def check_rate_limit(key: str, limit: int, window: int = 60) -> int:
    allowed, remaining = _sliding_window_check(key, limit, window)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(window),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining


def rate_limit_ip(request: Request, scope: str, limit: int) -> int:
    return check_rate_limit(f"{scope}:{get_real_ip(request)}", limit)


def reset() -> None:
    _memory_store.clear()
