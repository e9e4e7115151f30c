"""Provider events router - Stripe webhook endpoint.

POST /provider-events answers 400 only when the signature does not verify.
Once it does, the answer is 200 {received: true}; processing errors are
reported in the body and recorded for retry. Processing that overruns the
delivery deadline is acknowledged as deferred and left to the retry worker.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..billing.events import EventIngestionGateway, EventProcessor
from ..dependencies import get_event_gateway, get_event_processor
from ..errors import AuthenticityError, ValidationError
from ..middleware.rate_limit import rate_limit_exempt
from ..models import ErrorResponse, ProviderEventAck
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("subsync.provider_events")

WEBHOOK_PROCESSING_DEADLINE_SEC = float(os.environ.get("WEBHOOK_PROCESSING_DEADLINE_SEC", "8"))


def _claimed_event(payload: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Event id and type as the unverified body states them, for the audit log."""
    try:
        body = json.loads(payload)
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("id"), body.get("type")


@router.post(
    "/provider-events",
    response_model=ProviderEventAck,
    responses={400: {"model": ErrorResponse}},
)
@rate_limit_exempt
async def receive_provider_event(
    request: Request,
    event_gateway: EventIngestionGateway = Depends(get_event_gateway),
    processor: EventProcessor = Depends(get_event_processor),
) -> ProviderEventAck:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = event_gateway.ingest(payload, signature)
    except AuthenticityError as exc:
        logger.error("Webhook signature verification failed: %s", exc.message)
        claimed_id, claimed_type = _claimed_event(payload)
        security_logger.signature_failure(
            ip=get_client_ip(request),
            path=request.url.path,
            reason=exc.error,
            signature_present=bool(signature),
            claimed_event_id=claimed_id,
            claimed_type=claimed_type,
        )
        raise
    except ValidationError as exc:
        # Signed by the provider: acknowledged, never redelivered.
        logger.error("Verified provider event body rejected: %s", exc.message)
        security_logger.payload_rejected(
            ip=get_client_ip(request),
            path=request.url.path,
            reason=exc.error,
        )
        return ProviderEventAck(error=exc.error)

    try:
        # On timeout the executor future is abandoned; the thread runs to completion.
        loop = asyncio.get_running_loop()
        outcome = await asyncio.wait_for(
            loop.run_in_executor(None, processor.handle, event),
            timeout=WEBHOOK_PROCESSING_DEADLINE_SEC,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Provider event %s exceeded %.1fs deadline; deferring to retry worker",
            event.id,
            WEBHOOK_PROCESSING_DEADLINE_SEC,
        )
        await run_in_threadpool(
            processor.record_failure, event, kind="deferred", error="processing deadline exceeded"
        )
        return ProviderEventAck(
            eventId=event.id,
            type=event.type,
            kind=event.kind.value,
            deferred=True,
        )

    return ProviderEventAck(
        eventId=outcome.eventId,
        type=outcome.type,
        kind=outcome.kind.value,
        applied=outcome.applied,
        stale=outcome.stale,
        error=outcome.error,
    )
