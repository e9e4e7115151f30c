"""Error taxonomy for the subscription sync service.

Every error that can cross the HTTP boundary is a ``BillingError`` carrying the
status code, a machine-readable ``error`` reason, the taxonomy ``code`` and
optional ``details``. ``main.py`` renders them as ``ErrorResponse`` bodies.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_error = "internal_error"

    def __init__(
        self,
        message: str = "",
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message or error or self.default_error)
        self.message = message or error or self.default_error
        self.error = error or self.default_error
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"error": self.error, "code": self.code}
        if self.message and self.message != self.error:
            content["message"] = self.message
        if self.details:
            content["details"] = self.details
        return content


class ValidationError(BillingError):
    """Bad or missing input. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"
    default_error = "invalid_request"


class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"
    default_error = "not_found"


class AuthenticityError(BillingError):
    """Provider event signature did not verify."""

    status_code = 400
    code = "AUTHENTICITY_ERROR"
    default_error = "invalid_signature"


class UpstreamError(BillingError):
    """Stripe or Firestore call failed or timed out.

    Raised before the atomic record write, so callers may retry.
    """

    status_code = 502
    code = "UPSTREAM_ERROR"
    default_error = "upstream_error"

    def __init__(self, message: str = "", *, service: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.service = service
        if service:
            self.details.setdefault("service", service)


class StaleEventError(BillingError):
    """Update older than the persisted watermark. Callers treat it as success."""

    status_code = 200
    code = "STALE_EVENT"
    default_error = "stale_event"

    def __init__(self, record: Any, watermark: int, message: str = ""):
        super().__init__(
            message or f"watermark {watermark} older than {record.lastAppliedEventTimestamp}",
            details={"watermark": watermark, "persisted": record.lastAppliedEventTimestamp},
        )
        self.record = record
        self.watermark = watermark


class SupersededSubscriptionError(StaleEventError):
    """Event about a subscription the record has already moved past."""

    code = "SUPERSEDED_SUBSCRIPTION"
    default_error = "superseded_subscription"

    def __init__(self, record: Any, watermark: int, subscription_id: str):
        super().__init__(
            record,
            watermark,
            f"subscription {subscription_id} is not the current subscription {record.remoteSubscriptionId}",
        )
        self.subscription_id = subscription_id
        self.details["subscriptionId"] = subscription_id


class UnattributableEventError(BillingError):
    """Push event that cannot be bound to any local user."""

    status_code = 200
    code = "UNATTRIBUTABLE_EVENT"
    default_error = "unattributable_event"
