"""Pydantic request/response models for the subscription sync API."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, validator

# =============================================================================
# INPUT VALIDATION PATTERNS
# =============================================================================

# Firebase Auth uids are up to 128 characters; no slashes (document ids).
USER_ID_PATTERN = re.compile(r'^[^/\s]{1,128}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CheckoutIntentRequest(BaseModel):
    """Start a checkout for one of the offerable plans."""
    planId: str = Field(..., min_length=1, max_length=255)
    userId: str
    contactIdentifier: str = Field(..., max_length=320)

    @validator('userId')
    def validate_user_id(cls, v):
        if not USER_ID_PATTERN.match(v):
            raise ValueError('Invalid userId')
        return v

    @validator('contactIdentifier')
    def validate_contact(cls, v):
        if not EMAIL_PATTERN.match(v):
            raise ValueError('Invalid contactIdentifier')
        return v.strip()


class SubscriptionStatusRequest(BaseModel):
    userId: str

    @validator('userId')
    def validate_user_id(cls, v):
        if not USER_ID_PATTERN.match(v):
            raise ValueError('Invalid userId')
        return v


class SubscriptionCancelRequest(BaseModel):
    """Cancel at period end. ``contactIdentifier`` alone is the legacy form."""
    userId: Optional[str] = None
    contactIdentifier: Optional[str] = Field(default=None, max_length=320)

    @validator('userId')
    def validate_user_id(cls, v):
        if v is not None and not USER_ID_PATTERN.match(v):
            raise ValueError('Invalid userId')
        return v

    @validator('contactIdentifier')
    def validate_contact(cls, v):
        if v is not None and not EMAIL_PATTERN.match(v):
            raise ValueError('Invalid contactIdentifier')
        return v.strip() if v else v


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CheckoutIntentResponse(BaseModel):
    checkoutUrl: Optional[str] = None
    sessionId: str


class SubscriptionStatusResponse(BaseModel):
    active: bool
    status: str
    tier: str
    currentPeriodEnd: Optional[int] = None  # epoch seconds
    cancelAtPeriodEnd: bool = False
    subscriptionId: Optional[str] = None


class SubscriptionCancelResponse(BaseModel):
    subscriptionId: str
    currentPeriodEnd: Optional[int] = None  # epoch seconds
    cancelAtPeriodEnd: bool


class ProviderEventAck(BaseModel):
    received: bool = True
    eventId: Optional[str] = None
    type: Optional[str] = None
    kind: Optional[str] = None
    applied: bool = False
    stale: bool = False
    deferred: bool = False
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    code: str
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
