"""
Staged Submission Store
=======================
Keyed temporary storage for a submission's fields and binary attachments,
addressed by submission id, with TTL expiry and the single-delivery claim.

Transitions are pure functions on an immutable Submission; each backend
applies them atomically per submission id:
- InMemorySubmissionStore: dict swap under an asyncio.Lock (no I/O inside)
- PostgresSubmissionStore: SELECT ... FOR UPDATE + UPDATE in one transaction

State machine:
    staged -> awaiting_payment -> paid_pending_delivery -> delivered
    staged | awaiting_payment -> expired (TTL sweep, deleted)
    paid_pending_delivery -> failed (retries exhausted, kept for operators)
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from database import Database
from pipeline.errors import (
    AlreadyInProgressError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from schemas.submission import (
    EVICTABLE_ON_EXPIRY,
    Attachment,
    Submission,
    SubmissionLimits,
    SubmissionStatus,
    utcnow,
)


Clock = Callable[[], datetime]
Transition = Callable[[Submission], Submission]


def generate_submission_id() -> str:
    return f"SUB-{uuid.uuid4().hex}"


def validate_submission(
    fields: Dict[str, str],
    attachments: Sequence[Attachment],
    amount: int,
    currency: str,
    limits: SubmissionLimits,
) -> None:
    """Raise ValidationError if the intake payload breaks any configured limit."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer in minor currency units")
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")

    if len(fields) > limits.max_fields:
        raise ValidationError(f"Too many fields ({len(fields)} > {limits.max_fields})")

    fields_bytes = 0
    for key, value in fields.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValidationError(f"Field {key!r} must be a string")
        if len(value) > limits.max_field_length:
            raise ValidationError(
                f"Field '{key}' exceeds {limits.max_field_length} characters"
            )
        fields_bytes += len(key.encode("utf-8")) + len(value.encode("utf-8"))
    if fields_bytes > limits.max_fields_bytes:
        raise ValidationError(f"Field payload exceeds {limits.max_fields_bytes} bytes")

    if len(attachments) > limits.max_attachments:
        raise ValidationError(
            f"Too many attachments ({len(attachments)} > {limits.max_attachments})"
        )
    total = 0
    for attachment in attachments:
        if attachment.size > limits.max_attachment_bytes:
            raise ValidationError(
                f"Attachment '{attachment.filename}' exceeds {limits.max_attachment_bytes} bytes"
            )
        total += attachment.size
    if total > limits.max_total_attachment_bytes:
        raise ValidationError(
            f"Attachments exceed {limits.max_total_attachment_bytes} bytes in total"
        )


# =============================================================================
# STORE INTERFACE
# =============================================================================

class IStagedSubmissionStore(ABC):
    """
    Abstract staged store. Owns physical storage and eviction; knows nothing
    about payment beyond the status flags it is told to set.
    """

    backend = "abstract"

    def __init__(
        self,
        limits: Optional[SubmissionLimits] = None,
        ttl: timedelta = timedelta(hours=24),
        claim_timeout: timedelta = timedelta(minutes=10),
        delivered_retention: timedelta = timedelta(hours=72),
        max_delivery_attempts: int = 5,
        clock: Clock = utcnow,
    ):
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be at least 1")

        self.limits = limits or SubmissionLimits()
        self.ttl = ttl
        self.claim_timeout = claim_timeout
        self.delivered_retention = delivered_retention
        self.max_delivery_attempts = max_delivery_attempts
        self._clock = clock
        self._logger = structlog.get_logger().bind(
            component="submission_store", backend=self.backend
        )

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _insert(self, submission: Submission) -> None:
        pass

    @abstractmethod
    async def _apply(
        self, submission_id: str, change: Transition, with_attachments: bool = False
    ) -> Submission:
        """Atomically read, transform and write back one submission."""
        pass

    @abstractmethod
    async def get(self, submission_id: str) -> Submission:
        pass

    @abstractmethod
    async def evict(self, submission_id: str) -> bool:
        pass

    @abstractmethod
    async def evict_expired(self) -> int:
        pass

    @abstractmethod
    async def list_pending_delivery(self, limit: int = 100) -> List[Submission]:
        """Paid submissions with no live claim, oldest payment first."""
        pass

    @abstractmethod
    async def list_failed(self, limit: int = 100) -> List[Submission]:
        pass

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def put(
        self,
        fields: Dict[str, str],
        attachments: Iterable[Attachment],
        amount: int,
        currency: str,
    ) -> str:
        attachments = list(attachments)
        validate_submission(fields, attachments, amount, currency, self.limits)

        now = self._clock()
        submission = Submission(
            id=generate_submission_id(),
            fields=dict(fields),
            attachments=attachments,
            amount=amount,
            currency=currency.lower(),
            status=SubmissionStatus.STAGED,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        await self._insert(submission)

        self._logger.info(
            "submission_staged",
            submission_id=submission.id,
            field_count=len(submission.fields),
            attachment_count=len(attachments),
            amount=amount,
            currency=submission.currency,
            expires_at=submission.expires_at.isoformat(),
        )
        return submission.id

    def now(self) -> datetime:
        return self._clock()

    async def mark_awaiting_payment(
        self,
        submission_id: str,
        checkout_session_id: Optional[str] = None,
        hold_until: Optional[datetime] = None,
    ) -> Submission:
        """
        staged -> awaiting_payment. `hold_until` pushes expires_at out so the
        TTL sweep cannot evict the data while its checkout session is payable.
        """
        def change(current: Submission) -> Submission:
            if current.status not in (SubmissionStatus.STAGED, SubmissionStatus.AWAITING_PAYMENT):
                raise InvalidTransitionError(
                    current.id, current.status.value, SubmissionStatus.AWAITING_PAYMENT.value
                )
            expires_at = current.expires_at
            if hold_until is not None and hold_until > expires_at:
                expires_at = hold_until
            return current.transition_to(
                SubmissionStatus.AWAITING_PAYMENT,
                checkout_session_id=checkout_session_id or current.checkout_session_id,
                expires_at=expires_at,
                updated_at=self._clock(),
            )

        return await self._apply(submission_id, change)

    async def mark_paid_pending_delivery(self, submission_id: str) -> Submission:
        def change(current: Submission) -> Submission:
            if current.status == SubmissionStatus.PAID_PENDING_DELIVERY:
                return current
            if current.status != SubmissionStatus.AWAITING_PAYMENT:
                raise InvalidTransitionError(
                    current.id, current.status.value,
                    SubmissionStatus.PAID_PENDING_DELIVERY.value,
                )
            now = self._clock()
            return current.transition_to(
                SubmissionStatus.PAID_PENDING_DELIVERY, paid_at=now, updated_at=now
            )

        return await self._apply(submission_id, change)

    async def take(self, submission_id: str) -> Submission:
        """
        Claim a paid submission for delivery and return it with attachments.
        A second take while the claim is live fails with AlreadyInProgressError.
        The returned claim_token must be presented to mark_delivered/mark_failed.
        """
        def change(current: Submission) -> Submission:
            if current.status in (SubmissionStatus.DELIVERED, SubmissionStatus.FAILED):
                raise AlreadyInProgressError(
                    f"Submission {current.id} already {current.status.value}",
                    submission_id=current.id,
                )
            if current.status != SubmissionStatus.PAID_PENDING_DELIVERY:
                raise InvalidTransitionError(current.id, current.status.value, "delivery_in_progress")
            now = self._clock()
            if self._claim_is_live(current, now):
                raise AlreadyInProgressError(
                    f"Submission {current.id} is already being delivered",
                    submission_id=current.id,
                )
            return current.transition_to(
                SubmissionStatus.PAID_PENDING_DELIVERY,
                claimed_at=now,
                claim_token=uuid.uuid4().hex,
                updated_at=now,
            )

        submission = await self._apply(submission_id, change, with_attachments=True)
        self._logger.info(
            "submission_claimed",
            submission_id=submission_id,
            attempt=submission.delivery_attempts + 1,
        )
        return submission

    async def mark_delivered(self, submission_id: str, claim_token: Optional[str] = None) -> Submission:
        def change(current: Submission) -> Submission:
            self._require_claim(current, SubmissionStatus.DELIVERED, claim_token)
            now = self._clock()
            return current.transition_to(
                SubmissionStatus.DELIVERED,
                delivered_at=now,
                claimed_at=None,
                claim_token=None,
                delivery_attempts=current.delivery_attempts + 1,
                last_error=None,
                updated_at=now,
            )

        submission = await self._apply(submission_id, change)
        self._logger.info("submission_delivered", submission_id=submission_id)
        return submission

    async def mark_failed(
        self,
        submission_id: str,
        reason: str,
        retryable: bool = True,
        claim_token: Optional[str] = None,
    ) -> Submission:
        """
        Release the claim after a failed delivery. Stays paid_pending_delivery
        (retryable) until max_delivery_attempts, then becomes failed.
        """
        def change(current: Submission) -> Submission:
            self._require_claim(current, SubmissionStatus.FAILED, claim_token)
            attempts = current.delivery_attempts + 1
            exhausted = not retryable or attempts >= self.max_delivery_attempts
            return current.transition_to(
                SubmissionStatus.FAILED if exhausted else SubmissionStatus.PAID_PENDING_DELIVERY,
                claimed_at=None,
                claim_token=None,
                delivery_attempts=attempts,
                last_error=reason,
                updated_at=self._clock(),
            )

        submission = await self._apply(submission_id, change)
        if submission.status == SubmissionStatus.FAILED:
            self._logger.critical(
                "submission_failed",
                submission_id=submission_id,
                attempts=submission.delivery_attempts,
                error=reason,
                requires_manual_intervention=True,
            )
        else:
            self._logger.warning(
                "submission_delivery_attempt_failed",
                submission_id=submission_id,
                attempts=submission.delivery_attempts,
                max_attempts=self.max_delivery_attempts,
                error=reason,
            )
        return submission

    async def requeue_failed(self, submission_id: str) -> Submission:
        """Operator retry: failed -> paid_pending_delivery with a fresh attempt budget."""
        def change(current: Submission) -> Submission:
            if current.status != SubmissionStatus.FAILED:
                raise InvalidTransitionError(
                    current.id, current.status.value,
                    SubmissionStatus.PAID_PENDING_DELIVERY.value,
                )
            return current.transition_to(
                SubmissionStatus.PAID_PENDING_DELIVERY,
                delivery_attempts=0,
                updated_at=self._clock(),
            )

        submission = await self._apply(submission_id, change)
        self._logger.info("submission_requeued", submission_id=submission_id)
        return submission

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _claim_is_live(self, submission: Submission, now: datetime) -> bool:
        return (
            submission.claimed_at is not None
            and now - submission.claimed_at < self.claim_timeout
        )

    def _require_claim(
        self, submission: Submission, requested: SubmissionStatus, claim_token: Optional[str]
    ) -> None:
        if submission.status != SubmissionStatus.PAID_PENDING_DELIVERY or submission.claimed_at is None:
            raise InvalidTransitionError(submission.id, submission.status.value, requested.value)
        # A stale claim re-taken by another worker carries a new token
        if claim_token is not None and claim_token != submission.claim_token:
            raise AlreadyInProgressError(
                f"Claim on submission {submission.id} was superseded",
                submission_id=submission.id,
            )

    def _eviction_reason(self, submission: Submission, now: datetime) -> Optional[str]:
        if submission.status in EVICTABLE_ON_EXPIRY and submission.expires_at <= now:
            return SubmissionStatus.EXPIRED.value
        if (
            submission.status == SubmissionStatus.DELIVERED
            and submission.delivered_at is not None
            and submission.delivered_at + self.delivered_retention <= now
        ):
            return SubmissionStatus.DELIVERED.value
        return None


# =============================================================================
# IN-MEMORY IMPLEMENTATION (tests, single-process dev)
# =============================================================================

class InMemorySubmissionStore(IStagedSubmissionStore):
    """Process-local store; does not survive restarts."""

    backend = "memory"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._submissions: Dict[str, Submission] = {}
        self._lock = asyncio.Lock()

    async def _insert(self, submission: Submission) -> None:
        async with self._lock:
            self._submissions[submission.id] = submission

    async def _apply(
        self, submission_id: str, change: Transition, with_attachments: bool = False
    ) -> Submission:
        async with self._lock:
            current = self._submissions.get(submission_id)
            if current is None:
                raise NotFoundError(f"Submission not found: {submission_id}", submission_id)
            updated = change(current)
            self._submissions[submission_id] = updated
            return updated

    async def get(self, submission_id: str) -> Submission:
        async with self._lock:
            submission = self._submissions.get(submission_id)
        if submission is None:
            raise NotFoundError(f"Submission not found: {submission_id}", submission_id)
        return submission

    async def evict(self, submission_id: str) -> bool:
        async with self._lock:
            return self._submissions.pop(submission_id, None) is not None

    async def evict_expired(self) -> int:
        now = self._clock()
        evicted = []
        async with self._lock:
            for submission in list(self._submissions.values()):
                reason = self._eviction_reason(submission, now)
                if reason:
                    del self._submissions[submission.id]
                    evicted.append((submission.id, reason))

        for submission_id, reason in evicted:
            self._logger.info("submission_evicted", submission_id=submission_id, reason=reason)
        return len(evicted)

    async def list_pending_delivery(self, limit: int = 100) -> List[Submission]:
        now = self._clock()
        async with self._lock:
            pending = [
                s for s in self._submissions.values()
                if s.status == SubmissionStatus.PAID_PENDING_DELIVERY
                and not self._claim_is_live(s, now)
            ]
        pending.sort(key=lambda s: s.paid_at or s.updated_at)
        return pending[:limit]

    async def list_failed(self, limit: int = 100) -> List[Submission]:
        async with self._lock:
            failed = [s for s in self._submissions.values() if s.status == SubmissionStatus.FAILED]
        failed.sort(key=lambda s: s.updated_at)
        return failed[:limit]


# =============================================================================
# POSTGRES IMPLEMENTATION (durable across restarts)
# =============================================================================

_SUBMISSION_COLUMNS = """
    id, fields, amount, currency, status, checkout_session_id, created_at,
    expires_at, updated_at, paid_at, delivered_at, claimed_at, claim_token,
    delivery_attempts, last_error
"""


class PostgresSubmissionStore(IStagedSubmissionStore):
    """
    Durable store keyed by submission id with a status column and an
    expires_at index. Attachments are kept as BYTEA rows and are loaded only
    by get() and take(); transition results carry no attachment bytes.
    """

    backend = "postgres"

    def __init__(self, db: Database, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    @staticmethod
    def _to_submission(row, attachments: Sequence = ()) -> Submission:
        fields = row["fields"]
        if isinstance(fields, str):
            fields = json.loads(fields)
        return Submission(
            id=row["id"],
            fields=fields,
            attachments=[
                Attachment(
                    name=a["name"],
                    filename=a["filename"],
                    content_type=a["content_type"],
                    content=bytes(a["content"]),
                )
                for a in attachments
            ],
            amount=row["amount"],
            currency=row["currency"],
            status=SubmissionStatus(row["status"]),
            checkout_session_id=row["checkout_session_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
            paid_at=row["paid_at"],
            delivered_at=row["delivered_at"],
            claimed_at=row["claimed_at"],
            claim_token=row["claim_token"],
            delivery_attempts=row["delivery_attempts"],
            last_error=row["last_error"],
        )

    async def _fetch_attachments(self, conn, submission_id: str):
        return await conn.fetch(
            """
            SELECT name, filename, content_type, content
            FROM staged_attachments
            WHERE submission_id = $1
            ORDER BY position
            """,
            submission_id,
        )

    async def _insert(self, submission: Submission) -> None:
        async with self.db.transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO staged_submissions ({_SUBMISSION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                """,
                submission.id,
                json.dumps(submission.fields),
                submission.amount,
                submission.currency,
                submission.status.value,
                submission.checkout_session_id,
                submission.created_at,
                submission.expires_at,
                submission.updated_at,
                submission.paid_at,
                submission.delivered_at,
                submission.claimed_at,
                submission.claim_token,
                submission.delivery_attempts,
                submission.last_error,
            )
            if submission.attachments:
                await conn.executemany(
                    """
                    INSERT INTO staged_attachments
                    (submission_id, position, name, filename, content_type, content)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    [
                        (submission.id, position, a.name, a.filename, a.content_type, a.content)
                        for position, a in enumerate(submission.attachments)
                    ],
                )

    async def _apply(
        self, submission_id: str, change: Transition, with_attachments: bool = False
    ) -> Submission:
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SUBMISSION_COLUMNS} FROM staged_submissions WHERE id = $1 FOR UPDATE",
                submission_id,
            )
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}", submission_id)

            attachments = await self._fetch_attachments(conn, submission_id) if with_attachments else ()
            current = self._to_submission(row, attachments)
            updated = change(current)
            if updated is not current:
                await conn.execute(
                    """
                    UPDATE staged_submissions
                    SET status = $2, checkout_session_id = $3, expires_at = $4,
                        updated_at = $5, paid_at = $6, delivered_at = $7,
                        claimed_at = $8, claim_token = $9,
                        delivery_attempts = $10, last_error = $11
                    WHERE id = $1
                    """,
                    submission_id,
                    updated.status.value,
                    updated.checkout_session_id,
                    updated.expires_at,
                    updated.updated_at,
                    updated.paid_at,
                    updated.delivered_at,
                    updated.claimed_at,
                    updated.claim_token,
                    updated.delivery_attempts,
                    updated.last_error,
                )
            return updated

    async def get(self, submission_id: str) -> Submission:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SUBMISSION_COLUMNS} FROM staged_submissions WHERE id = $1",
                submission_id,
            )
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}", submission_id)
            attachments = await self._fetch_attachments(conn, submission_id)
        return self._to_submission(row, attachments)

    async def evict(self, submission_id: str) -> bool:
        result = await self.db.execute(
            "DELETE FROM staged_submissions WHERE id = $1", submission_id
        )
        return result == "DELETE 1"

    async def evict_expired(self) -> int:
        now = self._clock()
        rows = await self.db.fetch_all(
            """
            DELETE FROM staged_submissions
            WHERE (status = ANY($1::text[]) AND expires_at <= $2)
               OR (status = $3 AND delivered_at <= $4)
            RETURNING id, status
            """,
            [s.value for s in EVICTABLE_ON_EXPIRY],
            now,
            SubmissionStatus.DELIVERED.value,
            now - self.delivered_retention,
        )
        for row in rows:
            reason = (
                SubmissionStatus.DELIVERED.value
                if row["status"] == SubmissionStatus.DELIVERED.value
                else SubmissionStatus.EXPIRED.value
            )
            self._logger.info("submission_evicted", submission_id=row["id"], reason=reason)
        return len(rows)

    async def list_pending_delivery(self, limit: int = 100) -> List[Submission]:
        rows = await self.db.fetch_all(
            f"""
            SELECT {_SUBMISSION_COLUMNS} FROM staged_submissions
            WHERE status = $1 AND (claimed_at IS NULL OR claimed_at <= $2)
            ORDER BY paid_at
            LIMIT $3
            """,
            SubmissionStatus.PAID_PENDING_DELIVERY.value,
            self._clock() - self.claim_timeout,
            limit,
        )
        return [self._to_submission(row) for row in rows]

    async def list_failed(self, limit: int = 100) -> List[Submission]:
        rows = await self.db.fetch_all(
            f"""
            SELECT {_SUBMISSION_COLUMNS} FROM staged_submissions
            WHERE status = $1
            ORDER BY updated_at
            LIMIT $2
            """,
            SubmissionStatus.FAILED.value,
            limit,
        )
        return [self._to_submission(row) for row in rows]
