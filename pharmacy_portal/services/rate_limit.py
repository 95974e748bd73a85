from __future__ import annotations

import hashlib
import time
from typing import Callable

from fastapi import HTTPException, Request, status

from ..config import get_settings
from .security_store import get_security_store


def rate_limit_identity(request: Request) -> str:
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
        return "user:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.headers.get("X-Real-IP") or getattr(request.client, "host", None) or "unknown"
    return "ip:" + hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]


def enforce_rate_limit(scope: str, identity: str, max_requests: int, window_seconds: int) -> None:
    bucket = int(time.time()) // window_seconds
    key = f"rl:{scope}:{identity}:{bucket}"
    store = get_security_store()
    count = store.incr(key, window_seconds)
    if count > max_requests:
        retry_after = store.ttl(key) or window_seconds
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "Rate limit exceeded", "retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(max_requests),
                "X-RateLimit-Remaining": "0",
            },
        )


def rate_limited(scope: str) -> Callable[[Request], None]:
    """Dependency enforcing the expiry-endpoint budget for ``scope``."""

    def dependency(request: Request) -> None:
        settings = get_settings()
        enforce_rate_limit(
            scope,
            rate_limit_identity(request),
            settings.EXPIRY_RATE_LIMIT_MAX,
            settings.EXPIRY_RATE_LIMIT_WINDOW_SECONDS,
        )

    return dependency
