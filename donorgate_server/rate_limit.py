# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting for login, password reset and share-link account endpoints."""

import time
from collections import defaultdict

from fastapi import HTTPException, Request

# (client_key, route) -> request timestamps inside the window
_buckets: defaultdict[tuple[str, str], list[float]] = defaultdict(list)
WINDOW = 60
LIMITS: dict[str, int] = {
    "/donor/login": 10,
    "/donor/signup": 5,
    "/donor/password-reset": 5,
    "/donor/password-reset/confirm": 10,
    "/donor/verify-email": 10,
    "/admin/login": 10,
    "/share/{token}/account": 10,
}


def _client_key(request: Request) -> str:
    """Prefer X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def _clean_old(bucket: list[float], now: float) -> None:
    cutoff = now - WINDOW
    while bucket and bucket[0] < cutoff:
        bucket.pop(0)


def check_rate_limit(request: Request, path: str) -> None:
    """Raise 429 if the client has exceeded the limit for this route."""
    limit = LIMITS.get(path)
    if limit is None:
        return
    now = time.monotonic()
    bucket = _buckets[(_client_key(request), path)]
    _clean_old(bucket, now)
    if len(bucket) >= limit:
        raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")
    bucket.append(now)


def reset() -> None:
    _buckets.clear()


def route_key(path: str) -> str:
    """Collapse share-link tokens so every link shares one bucket per client."""
    parts = path.rstrip("/").split("/")
    if len(parts) >= 3 and parts[1] == "share":
        parts[2] = "{token}"
    return "/".join(parts)


async def rate_limit_dep(request: Request) -> None:
    """FastAPI dependency: add Depends(rate_limit_dep) to limited routes."""
    check_rate_limit(request, route_key(request.url.path))
