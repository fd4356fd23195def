"""
Fulfillment error taxonomy.

HTTP status mapping lives in the API layer; these only carry meaning.
"""

from typing import Optional


class FulfillmentError(Exception):
    """Base class for every error raised by the fulfillment pipeline."""

    code = "FULFILLMENT_ERROR"

    def __init__(self, message: str, submission_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.submission_id = submission_id


class ValidationError(FulfillmentError):
    """Bad intake input (user-facing 400)."""

    code = "VALIDATION_ERROR"


class GatewayError(FulfillmentError):
    """Payment processor unavailable or rejected the session request."""

    code = "GATEWAY_ERROR"


class SignatureError(FulfillmentError):
    """Callback signature missing, malformed or not matching."""

    code = "SIGNATURE_ERROR"


class MalformedEventError(FulfillmentError):
    """Callback verified but its body is not a known event shape."""

    code = "MALFORMED_EVENT"


class NotFoundError(FulfillmentError):
    code = "NOT_FOUND"


class InvalidTransitionError(FulfillmentError):
    code = "INVALID_TRANSITION"

    def __init__(self, submission_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move submission {submission_id} from '{current}' to '{requested}'",
            submission_id=submission_id,
        )
        self.current = current
        self.requested = requested


class AlreadyInProgressError(FulfillmentError):
    """Another worker holds (or already completed) the single-delivery claim."""

    code = "ALREADY_IN_PROGRESS"


class DeliveryError(FulfillmentError):
    """Mail transport failure. Non-retryable errors fail the submission at once."""

    code = "DELIVERY_ERROR"

    def __init__(self, message: str, submission_id: Optional[str] = None, retryable: bool = True):
        super().__init__(message, submission_id=submission_id)
        self.retryable = retryable
