"""
Payment Schemas

Pydantic models returned by the reconciliation engine and the Stripe webhook route.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TransitionStatus(str, Enum):
    APPLIED = "applied"  # event effect committed
    SKIPPED = "skipped"  # already applied (idempotent replay)
    IGNORED = "ignored"  # nothing to do for this event
    FAILED_CLOSED = "failed_closed"  # refused to guess; credits untouched


class TransitionResult(BaseModel):
    """Outcome of reconciling one Stripe event"""

    status: TransitionStatus
    transition: str = Field(..., description="activation, upgrade, renewal, cancellation, ...")
    user_id: str | None = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class WebhookProcessingResult(BaseModel):
    """Response body returned to Stripe for every webhook delivery"""

    success: bool
    event_type: str | None = None
    event_id: str | None = None
    message: str
    processed_at: datetime
