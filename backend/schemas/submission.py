# schemas/submission.py
# ============================================================================
# PAID SUBMISSION FULFILLMENT: DOMAIN SCHEMAS
# ============================================================================
# Submission lifecycle, checkout events, delivery results and size limits.
# Binary attachment bytes live only in Submission; nothing here is ever
# serialized into the payment processor's metadata.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class SubmissionStatus(str, Enum):
    STAGED = "staged"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID_PENDING_DELIVERY = "paid_pending_delivery"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    FAILED = "failed"


# Statuses the TTL sweep may evict
EVICTABLE_ON_EXPIRY = (SubmissionStatus.STAGED, SubmissionStatus.AWAITING_PAYMENT)

CHECKOUT_COMPLETED = "checkout.session.completed"


# ============================================================================
# SECTION 2: SUBMISSION
# ============================================================================

class Attachment(BaseModel):
    """One named binary blob from the intake form."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Form field the file arrived under (e.g. 'cv')")
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes

    @computed_field
    @property
    def size(self) -> int:
        return len(self.content)


class Submission(BaseModel):
    """The unit of work tracked from intake through payment to delivery."""
    model_config = ConfigDict(frozen=True)

    id: str
    fields: Dict[str, str] = Field(default_factory=dict)
    attachments: List[Attachment] = Field(default_factory=list)
    amount: int = Field(gt=0, description="Minor currency units")
    currency: str = Field(min_length=3, max_length=3)

    status: SubmissionStatus = SubmissionStatus.STAGED
    checkout_session_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    # Single-delivery claim; set by take(), cleared by mark_delivered()/mark_failed()
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    delivery_attempts: int = 0
    last_error: Optional[str] = None

    def transition_to(self, new_status: SubmissionStatus, **changes) -> "Submission":
        """Immutable state transition"""
        return self.model_copy(update={
            "status": new_status,
            "updated_at": utcnow(),
            **changes,
        })

    def summary(self) -> dict:
        """Status view without field values or attachment bytes."""
        return {
            "submission_id": self.id,
            "status": self.status.value,
            "amount": self.amount,
            "currency": self.currency,
            "attachment_count": len(self.attachments),
            "delivery_attempts": self.delivery_attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


class SubmissionLimits(BaseModel):
    """Intake size limits; fields stay server-side so Stripe's metadata caps don't apply."""
    max_fields: int = 100
    max_field_length: int = 10_000
    max_fields_bytes: int = 256 * 1024
    max_attachments: int = 10
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_total_attachment_bytes: int = 25 * 1024 * 1024


# ============================================================================
# SECTION 3: CHECKOUT
# ============================================================================

class CheckoutResult(BaseModel):
    """Checkout session creation result"""
    submission_id: str
    session_id: str
    redirect_url: str
    expires_at: datetime


class CheckoutEvent(BaseModel):
    """Verified callback payload, reduced to what fulfillment needs."""
    type: str
    submission_ref: Optional[str] = None
    payment_status: Optional[str] = None
    event_id: Optional[str] = None
    session_id: Optional[str] = None

    @computed_field
    @property
    def is_actionable(self) -> bool:
        return self.type == CHECKOUT_COMPLETED


# ============================================================================
# SECTION 4: DELIVERY
# ============================================================================

class OutboundMessage(BaseModel):
    to: str
    from_email: str
    subject: str
    body: str
    attachments: List[Attachment] = Field(default_factory=list)
    reply_to: Optional[str] = None


class DeliveryResult(BaseModel):
    submission_id: str
    message_id: str
    recipient: str
    attachment_count: int
    sent_at: datetime = Field(default_factory=utcnow)


class HttpAck(BaseModel):
    """Acknowledgment returned to the payment processor."""
    status_code: int = 200
    outcome: str
    submission_id: Optional[str] = None
    detail: Optional[str] = None

    def body(self) -> dict:
        return {
            "received": self.status_code < 400,
            "outcome": self.outcome,
            "submission_id": self.submission_id,
            "detail": self.detail,
        }
