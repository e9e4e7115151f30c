"""Client address for rate-limit keys and security log entries.

Proxy headers are honored only when the service runs behind Cloudflare and
TRUST_PROXY is set; otherwise any client could pick its own rate-limit key by
sending X-Forwarded-For.
"""

from __future__ import annotations

import os
import logging
from fastapi import Request

logger = logging.getLogger("subsync.client_ip")

_behind_cloudflare = os.environ.get("BEHIND_CLOUDFLARE", "").lower() in ("1", "true")
_trust_proxy_env = os.environ.get("TRUST_PROXY", "").lower() in ("1", "true")
TRUST_PROXY = _trust_proxy_env and _behind_cloudflare

# Checked in order; X-Forwarded-For holds a chain, the client first.
PROXY_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For")

if _trust_proxy_env and not _behind_cloudflare:
    logger.warning("TRUST_PROXY set without BEHIND_CLOUDFLARE=1; proxy headers will be ignored.")


def get_client_ip(request: Request) -> str:
    if TRUST_PROXY:
        for header in PROXY_HEADERS:
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()

    return request.client.host if request.client else "unknown"
