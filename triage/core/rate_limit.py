"""Shared SlowAPI limiter."""

from __future__ import annotations

import os

from fastapi import Request
from slowapi import Limiter

RESPOND_RATE_LIMIT = os.getenv("TRIAGE_RESPOND_RATE_LIMIT", "30/minute")


def get_client_ip(request: Request) -> str:
    """Key requests by the first ``X-Forwarded-For`` hop or the peer address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)
