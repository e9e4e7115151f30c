"""Security audit log for the billing endpoints.

One JSON object per line in a rotating file, kept apart from the app log so
that webhook forgery attempts and throttling can be alerted on:
- provider_signature_failure: a /provider-events delivery that did not verify
- provider_payload_rejected: a verified delivery whose body was unusable
- rate_limit_exceeded
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

LOG_DIR = Path(os.environ.get("SECURITY_LOG_DIR", Path(__file__).parent.parent.parent / "logs"))
SECURITY_LOG_FILE = LOG_DIR / "security.log"

MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5

# Claimed ids come from unverified bodies.
MAX_CLAIMED_FIELD_LENGTH = 255


def _clip(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:MAX_CLAIMED_FIELD_LENGTH]


class SecurityLogger:
    def __init__(self, log_file: Path = SECURITY_LOG_FILE):
        self.logger = logging.getLogger("subsync.security")
        self._attach(log_file)

    def _attach(self, log_file: Path) -> None:
        if self.logger.handlers:
            return
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT)
        handler.setFormatter(logging.Formatter('%(message)s'))
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.WARNING)

    def _write(
        self,
        event: str,
        severity: str,
        *,
        ip: Optional[str] = None,
        path: Optional[str] = None,
        **fields: Any,
    ) -> None:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "service": "subsync",
            "event": event,
            "severity": severity,
            "ip": ip,
            "path": path,
            **fields,
        }
        self.logger.warning(json.dumps({k: v for k, v in entry.items() if v is not None}, default=str))

    def signature_failure(
        self,
        *,
        ip: str,
        path: str,
        reason: str,
        signature_present: bool,
        claimed_event_id: Optional[str] = None,
        claimed_type: Optional[str] = None,
    ) -> None:
        """A provider event delivery that failed verification.

        ``claimed_*`` are read from the unverified body and only help match the
        attempt against the provider's delivery log.
        """
        self._write(
            "provider_signature_failure",
            "high",
            ip=ip,
            path=path,
            reason=reason,
            signaturePresent=signature_present,
            claimedEventId=_clip(claimed_event_id),
            claimedType=_clip(claimed_type),
        )

    def payload_rejected(self, *, ip: str, path: str, reason: str) -> None:
        self._write("provider_payload_rejected", "medium", ip=ip, path=path, reason=reason)

    def rate_limit_exceeded(self, *, ip: str, path: str, method: str, limit: str) -> None:
        self._write("rate_limit_exceeded", "low", ip=ip, path=path, method=method, limit=limit)


security_logger = SecurityLogger()
