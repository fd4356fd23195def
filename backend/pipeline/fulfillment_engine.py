"""
Fulfillment Engine
==================
Correlates the synchronous, attachment-bearing intake with Stripe's
asynchronous, attachment-less checkout callback, and delivers each paid
submission to the mail channel at most once per successful take():

    intake      -> store.put -> gateway.create_session
    on_callback -> gateway.verify_and_parse -> store.mark_paid_pending_delivery
                -> store.take (single-delivery guard) -> dispatcher.send
                -> store.mark_delivered | store.mark_failed (bounded retry)

Every verified callback is acknowledged 200 whatever the local outcome;
only signature/shape failures get 400. Delivery retries are this engine's
job, never Stripe's.
"""

import asyncio
from typing import Dict, Iterable, Optional, Set

import structlog

from pipeline.agents.checkout_gateway import CheckoutSessionGateway
from pipeline.agents.notification_dispatcher import NotificationDispatcher
from pipeline.errors import (
    AlreadyInProgressError,
    DeliveryError,
    InvalidTransitionError,
    MalformedEventError,
    NotFoundError,
    SignatureError,
)
from schemas.submission import (
    Attachment,
    CheckoutEvent,
    CheckoutResult,
    DeliveryResult,
    HttpAck,
    Submission,
    SubmissionStatus,
)
from storage.submission_store import IStagedSubmissionStore


class FulfillmentEngine:
    """
    Owns submission lifecycle transitions.

    Example:
        engine = FulfillmentEngine(store, gateway, dispatcher)
        result = await engine.intake(fields, attachments, 5000, "eur")
        # Client pays at result.redirect_url
        ack = await engine.on_callback(raw_body, signature_header)
    """

    def __init__(
        self,
        store: IStagedSubmissionStore,
        gateway: CheckoutSessionGateway,
        dispatcher: NotificationDispatcher,
        success_url: str = "",
        cancel_url: str = "",
        background_delivery: bool = True,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 60.0,
    ):
        if store.ttl <= gateway.checkout_expiry:
            raise ValueError("Submission TTL must outlive the checkout session expiry")

        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.background_delivery = background_delivery
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

        # Outstanding background deliveries, at most one per claimed submission
        self._tasks: Set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="fulfillment_engine")

    # =========================================================================
    # INTAKE
    # =========================================================================

    async def intake(
        self,
        fields: Dict[str, str],
        attachments: Iterable[Attachment],
        amount: int,
        currency: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        """Stage the submission, then open a checkout session referencing it."""
        submission_id = await self.store.put(fields, attachments, amount, currency)
        submission = await self.store.get(submission_id)
        return await self.gateway.create_session(
            submission_id,
            submission.amount,
            submission.currency,
            success_url or self.success_url,
            cancel_url or self.cancel_url,
        )

    async def retry_checkout(
        self,
        submission_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        """Re-open checkout for an unpaid submission without re-staging its data."""
        submission = await self.store.get(submission_id)
        if submission.status not in (SubmissionStatus.STAGED, SubmissionStatus.AWAITING_PAYMENT):
            raise InvalidTransitionError(
                submission_id, submission.status.value, SubmissionStatus.AWAITING_PAYMENT.value
            )
        return await self.gateway.create_session(
            submission_id,
            submission.amount,
            submission.currency,
            success_url or self.success_url,
            cancel_url or self.cancel_url,
        )

    # =========================================================================
    # CALLBACK HANDLING
    # =========================================================================

    async def on_callback(self, raw_body: bytes, signature_header: Optional[str]) -> HttpAck:
        """Single entry point for Stripe webhook deliveries."""
        try:
            event = self.gateway.verify_and_parse(raw_body, signature_header)
        except SignatureError as e:
            self._logger.warning("webhook_signature_invalid", error=e.message, security_event=True)
            return HttpAck(status_code=400, outcome="rejected", detail=e.message)
        except MalformedEventError as e:
            self._logger.warning("webhook_malformed", error=e.message, security_event=True)
            return HttpAck(status_code=400, outcome="rejected", detail=e.message)

        log = self._logger.bind(
            event_type=event.type,
            stripe_event_id=event.event_id,
            submission_id=event.submission_ref,
        )
        log.info("webhook_received")

        if not event.is_actionable:
            return HttpAck(outcome="ignored", submission_id=event.submission_ref)

        if event.payment_status == "unpaid":
            log.info("checkout_completed_unpaid", payment_status=event.payment_status)
            return HttpAck(outcome="payment_pending", submission_id=event.submission_ref)

        return await self._fulfill(event, log)

    async def _fulfill(self, event: CheckoutEvent, log) -> HttpAck:
        submission_id = event.submission_ref

        try:
            await self.store.mark_paid_pending_delivery(submission_id)
        except NotFoundError:
            log.warning("webhook_unknown_submission")
            return HttpAck(outcome="unknown_submission", submission_id=submission_id)
        except InvalidTransitionError as e:
            log.info("webhook_already_handled", current_status=e.current)
            return HttpAck(outcome="already_handled", submission_id=submission_id)

        try:
            submission = await self.store.take(submission_id)
        except AlreadyInProgressError:
            log.info("webhook_duplicate")
            return HttpAck(outcome="duplicate", submission_id=submission_id)

        if self.background_delivery:
            self._spawn(self.deliver(submission))
            return HttpAck(outcome="delivery_scheduled", submission_id=submission_id)

        result = await self.deliver(submission)
        return HttpAck(
            outcome="delivered" if result else "delivery_failed",
            submission_id=submission_id,
        )

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def deliver(self, submission: Submission) -> Optional[DeliveryResult]:
        """
        Deliver a submission already claimed via take(). The claim is never
        held across the backoff sleep; each retry re-takes it, and the loop
        stops if another worker got there first.
        """
        log = self._logger.bind(submission_id=submission.id)

        while True:
            try:
                result = await self.dispatcher.send(submission)
            except DeliveryError as e:
                try:
                    updated = await self.store.mark_failed(
                        submission.id,
                        e.message,
                        retryable=e.retryable,
                        claim_token=submission.claim_token,
                    )
                except (AlreadyInProgressError, InvalidTransitionError):
                    log.warning("delivery_claim_superseded", stage="failed")
                    return None
                if updated.status == SubmissionStatus.FAILED:
                    return None

                delay = self._backoff(updated.delivery_attempts)
                log.info("delivery_retry_scheduled", attempt=updated.delivery_attempts, delay=delay)
                await asyncio.sleep(delay)

                try:
                    submission = await self.store.take(submission.id)
                except (AlreadyInProgressError, InvalidTransitionError, NotFoundError) as taken:
                    log.info("delivery_retry_superseded", reason=type(taken).__name__)
                    return None
                continue

            try:
                await self.store.mark_delivered(submission.id, claim_token=submission.claim_token)
            except (AlreadyInProgressError, InvalidTransitionError):
                # Our send outlived the claim; the worker now holding it finishes the transition
                log.warning("delivery_claim_superseded", stage="delivered", message_id=result.message_id)
                return result
            log.info("delivery_complete", message_id=result.message_id, recipient=result.recipient)
            return result

    async def recover_pending(self, limit: int = 100) -> int:
        """
        Re-attempt delivery of paid submissions with no live claim, e.g. after
        a crash between take() and the final transition. Returns the number
        delivered.
        """
        delivered = 0
        for pending in await self.store.list_pending_delivery(limit):
            try:
                submission = await self.store.take(pending.id)
            except (AlreadyInProgressError, InvalidTransitionError, NotFoundError):
                continue

            self._logger.warning(
                "delivery_recovered",
                submission_id=pending.id,
                attempts=pending.delivery_attempts,
            )
            if await self.deliver(submission):
                delivered += 1
        return delivered

    async def requeue_failed(self, submission_id: str) -> Optional[DeliveryResult]:
        """Operator retry of a failed submission."""
        await self.store.requeue_failed(submission_id)
        submission = await self.store.take(submission_id)
        return await self.deliver(submission)

    async def drain(self) -> None:
        """Wait for outstanding background deliveries."""
        tasks = list(self._tasks)
        while tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            tasks = [t for t in self._tasks if not t.done()]

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("background_delivery_crashed", error=str(task.exception()))

    def _backoff(self, attempts: int) -> float:
        return min(self.backoff_seconds * (2 ** max(attempts - 1, 0)), self.max_backoff_seconds)

