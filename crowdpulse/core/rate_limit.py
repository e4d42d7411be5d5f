"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Only the manual refresh route is limited: it bypasses the staleness window
and hits MongoDB directly, so a stuck "refresh" button must not hammer it.

Usage in routes:
    from fastapi import Request
    from crowdpulse.core.rate_limit import limiter

    @router.post("/refresh")
    @limiter.limit(settings.refresh_rate_limit)
    async def refresh(request: Request):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
