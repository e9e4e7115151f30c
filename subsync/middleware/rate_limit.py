"""Rate limiting middleware using slowapi.

Default limits:
- Global: 100 req/min per IP
- Status checks: 30 req/min (each one queries Stripe)
- Writes (checkout, cancel): 10 req/min
- Provider events: exempt (Stripe retries on 429 and shares few IPs)
"""

from __future__ import annotations

import logging
import os

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

logger = logging.getLogger("subsync.rate_limit")

RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"

limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri="memory://",  # In-memory storage (single process)
    enabled=RATE_LIMIT_ENABLED,
)

# Usage: @rate_limit_write on checkout/cancel endpoints
rate_limit_status = limiter.limit(os.environ.get("RATE_LIMIT_STATUS", "30/minute"))
rate_limit_write = limiter.limit(os.environ.get("RATE_LIMIT_WRITE", "10/minute"))
rate_limit_exempt = limiter.exempt


def setup_rate_limiting(app):
    """Configure rate limiting on the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _custom_rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiting %s", "enabled" if limiter.enabled else "disabled")


async def _custom_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Log the event and return 429 with Retry-After header."""
    security_logger.rate_limit_exceeded(
        ip=get_client_ip(request),
        path=request.url.path,
        method=request.method,
        limit=str(exc.detail),
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limited",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": str(exc.detail)
        },
        headers={"Retry-After": "60"}
    )
