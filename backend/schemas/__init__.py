# schemas/__init__.py
from schemas.submission import (
    Attachment,
    CheckoutEvent,
    CheckoutResult,
    DeliveryResult,
    HttpAck,
    OutboundMessage,
    Submission,
    SubmissionLimits,
    SubmissionStatus,
    CHECKOUT_COMPLETED,
    utcnow,
)

__all__ = [
    "Attachment",
    "CheckoutEvent",
    "CheckoutResult",
    "DeliveryResult",
    "HttpAck",
    "OutboundMessage",
    "Submission",
    "SubmissionLimits",
    "SubmissionStatus",
    "CHECKOUT_COMPLETED",
    "utcnow",
]
