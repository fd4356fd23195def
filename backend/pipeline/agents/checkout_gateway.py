"""
Checkout Session Gateway
========================
Wraps Stripe's two operations the fulfillment core depends on:
- create_session(): one hosted Checkout Session per staged submission
- verify_and_parse(): signature check over the raw webhook bytes, then parse

Only the submission id travels through Stripe (as client_reference_id).
Fields and attachment bytes never leave the staged store.

pip install stripe structlog
"""

import asyncio
import json
from datetime import timedelta
from typing import Optional

import pydantic
import stripe
import structlog

from pipeline.errors import GatewayError, MalformedEventError, SignatureError
from schemas.submission import CHECKOUT_COMPLETED, CheckoutEvent, CheckoutResult
from storage.submission_store import IStagedSubmissionStore


# Stripe accepts session expiry between 30 minutes and 24 hours out
MIN_CHECKOUT_EXPIRY = timedelta(minutes=31)
MAX_CHECKOUT_EXPIRY = timedelta(hours=24)

# Staged data outlives the session by this much so a late webhook still finds it
SESSION_HOLD_MARGIN = timedelta(hours=1)


class CheckoutSessionGateway:
    """
    Stripe Checkout adapter.

    The Stripe client and keys are injected so tests can substitute a fake;
    nothing here sets process-wide stripe.api_key.

    Example:
        gateway = CheckoutSessionGateway(store, api_key="sk_test_...", webhook_secret="whsec_...")
        result = await gateway.create_session(submission_id, 5000, "eur", success_url, cancel_url)
        # Client pays at result.redirect_url
        event = gateway.verify_and_parse(raw_body, request.headers["stripe-signature"])
    """

    def __init__(
        self,
        store: IStagedSubmissionStore,
        api_key: str = "",
        webhook_secret: str = "",
        stripe_client=stripe,
        product_name: str = "Form Submission",
        checkout_expiry: timedelta = timedelta(minutes=60),
        signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.store = store
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._stripe = stripe_client
        self._product_name = product_name
        self.checkout_expiry = min(max(checkout_expiry, MIN_CHECKOUT_EXPIRY), MAX_CHECKOUT_EXPIRY)
        self._tolerance = signature_tolerance
        self._logger = structlog.get_logger().bind(component="checkout_gateway")

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    async def create_session(
        self,
        submission_id: str,
        amount: int,
        currency: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout Session referencing the submission.
        On Stripe failure the submission stays staged and GatewayError is raised.
        """
        log = self._logger.bind(submission_id=submission_id)
        log.info("checkout_initiated", amount=amount, currency=currency)

        expires_at = self.store.now() + self.checkout_expiry
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.create,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": self._product_name},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                client_reference_id=submission_id,
                success_url=success_url,
                cancel_url=cancel_url,
                expires_at=int(expires_at.timestamp()),
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError(f"Checkout session creation failed: {e}", submission_id) from e

        # Keep the staged data at least as long as the customer can still pay
        await self.store.mark_awaiting_payment(
            submission_id,
            checkout_session_id=session.id,
            hold_until=expires_at + SESSION_HOLD_MARGIN,
        )

        log.info("checkout_created", stripe_session_id=session.id, expires_at=expires_at.isoformat())
        return CheckoutResult(
            submission_id=submission_id,
            session_id=session.id,
            redirect_url=session.url,
            expires_at=expires_at,
        )

    # =========================================================================
    # WEBHOOK VERIFICATION
    # =========================================================================

    def verify_and_parse(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        shared_secret: Optional[str] = None,
    ) -> CheckoutEvent:
        """
        Verify the Stripe-Signature header over the untouched body, then parse.
        Unknown event types are returned, never raised.
        """
        secret = shared_secret or self._webhook_secret
        if not signature_header:
            raise SignatureError("Missing Stripe-Signature header")
        if not secret:
            raise SignatureError("Webhook signing secret is not configured")

        # CRITICAL: verify signature BEFORE parsing
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, self._tolerance
            )
        except UnicodeDecodeError as e:
            raise SignatureError("Webhook body is not valid UTF-8") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid webhook signature: {e}") from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"Webhook body is not JSON: {e}") from e

        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise MalformedEventError("Webhook event has no type")
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            raise MalformedEventError("Webhook event has no data.object")

        submission_ref = session.get("client_reference_id")
        if event["type"] == CHECKOUT_COMPLETED and not submission_ref:
            raise MalformedEventError("Completed checkout session carries no client_reference_id")

        try:
            return CheckoutEvent(
                type=event["type"],
                submission_ref=submission_ref,
                payment_status=session.get("payment_status"),
                event_id=event.get("id"),
                session_id=session.get("id"),
            )
        except pydantic.ValidationError as e:
            raise MalformedEventError(f"Webhook event has unexpected field types: {e}") from e
