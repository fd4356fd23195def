from datetime import timedelta

import pytest

from conftest import APPLICANT_FIELDS
from pipeline.errors import (
    AlreadyInProgressError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from schemas.submission import Attachment, Submission, SubmissionLimits, SubmissionStatus, utcnow
from storage.submission_store import InMemorySubmissionStore


async def _paid(store, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "EUR")
    await store.mark_awaiting_payment(submission_id, checkout_session_id="cs_test_1")
    await store.mark_paid_pending_delivery(submission_id)
    return submission_id


@pytest.mark.asyncio
async def test_put_stages_fields_and_attachments(store, clock, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "EUR")

    submission = await store.get(submission_id)
    assert submission_id.startswith("SUB-")
    assert submission.status == SubmissionStatus.STAGED
    assert submission.fields == APPLICANT_FIELDS
    assert submission.attachments[0].filename == "cv.pdf"
    assert submission.attachments[0].size == 3
    assert submission.currency == "eur"
    assert submission.expires_at == clock.now + store.ttl


@pytest.mark.asyncio
async def test_put_generates_unique_ids(store, cv):
    first = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")
    second = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")
    assert first != second


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, currency", [(0, "eur"), (-100, "eur"), (5000, "euro"), (5000, "")])
async def test_put_rejects_bad_amount_or_currency(store, amount, currency):
    with pytest.raises(ValidationError):
        await store.put(APPLICANT_FIELDS, [], amount, currency)


@pytest.mark.asyncio
async def test_put_enforces_attachment_limits(clock):
    store = InMemorySubmissionStore(
        clock=clock,
        limits=SubmissionLimits(max_attachments=1, max_attachment_bytes=4),
    )
    small = Attachment(name="a", filename="a.txt", content=b"abc")
    large = Attachment(name="b", filename="b.txt", content=b"abcdef")

    with pytest.raises(ValidationError):
        await store.put({}, [small, small], 100, "eur")
    with pytest.raises(ValidationError, match="b.txt"):
        await store.put({}, [large], 100, "eur")


@pytest.mark.asyncio
async def test_put_enforces_field_length(clock):
    store = InMemorySubmissionStore(clock=clock, limits=SubmissionLimits(max_field_length=5))
    with pytest.raises(ValidationError, match="firstName"):
        await store.put({"firstName": "Anastasia"}, [], 100, "eur")


@pytest.mark.asyncio
async def test_get_unknown_submission_raises(store):
    with pytest.raises(NotFoundError):
        await store.get("SUB-missing")


@pytest.mark.asyncio
async def test_payment_requires_awaiting_payment(store, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")

    with pytest.raises(InvalidTransitionError) as exc:
        await store.mark_paid_pending_delivery(submission_id)
    assert exc.value.current == "staged"


@pytest.mark.asyncio
async def test_mark_paid_is_idempotent(store, cv):
    submission_id = await _paid(store, cv)
    first = await store.get(submission_id)

    again = await store.mark_paid_pending_delivery(submission_id)
    assert again.status == SubmissionStatus.PAID_PENDING_DELIVERY
    assert again.paid_at == first.paid_at


@pytest.mark.asyncio
async def test_take_claims_once(store, cv):
    submission_id = await _paid(store, cv)

    taken = await store.take(submission_id)
    assert taken.claimed_at is not None
    assert [a.content for a in taken.attachments] == [b"%PD"]

    with pytest.raises(AlreadyInProgressError):
        await store.take(submission_id)


@pytest.mark.asyncio
async def test_stale_claim_can_be_retaken(store, clock, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)

    clock.advance(seconds=store.claim_timeout.total_seconds() + 1)

    retaken = await store.take(submission_id)
    assert retaken.claimed_at == clock.now


@pytest.mark.asyncio
async def test_take_before_payment_is_invalid(store, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")
    await store.mark_awaiting_payment(submission_id)

    with pytest.raises(InvalidTransitionError):
        await store.take(submission_id)


@pytest.mark.asyncio
async def test_take_after_delivery_reports_in_progress(store, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)
    await store.mark_delivered(submission_id)

    with pytest.raises(AlreadyInProgressError):
        await store.take(submission_id)


@pytest.mark.asyncio
async def test_mark_delivered_requires_claim(store, cv):
    submission_id = await _paid(store, cv)

    with pytest.raises(InvalidTransitionError):
        await store.mark_delivered(submission_id)


@pytest.mark.asyncio
async def test_mark_delivered_records_attempt(store, clock, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)

    delivered = await store.mark_delivered(submission_id)
    assert delivered.status == SubmissionStatus.DELIVERED
    assert delivered.delivered_at == clock.now
    assert delivered.delivery_attempts == 1
    assert delivered.claimed_at is None


@pytest.mark.asyncio
async def test_mark_failed_releases_claim_until_exhausted(store, cv):
    submission_id = await _paid(store, cv)

    for attempt in (1, 2):
        await store.take(submission_id)
        updated = await store.mark_failed(submission_id, "smtp down")
        assert updated.status == SubmissionStatus.PAID_PENDING_DELIVERY
        assert updated.delivery_attempts == attempt
        assert updated.claimed_at is None

    await store.take(submission_id)
    final = await store.mark_failed(submission_id, "smtp down")
    assert final.status == SubmissionStatus.FAILED
    assert final.last_error == "smtp down"


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_immediately(store, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)

    failed = await store.mark_failed(submission_id, "no recipient", retryable=False)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.delivery_attempts == 1


@pytest.mark.asyncio
async def test_requeue_failed_resets_attempts(store, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)
    await store.mark_failed(submission_id, "no recipient", retryable=False)

    requeued = await store.requeue_failed(submission_id)
    assert requeued.status == SubmissionStatus.PAID_PENDING_DELIVERY
    assert requeued.delivery_attempts == 0

    with pytest.raises(InvalidTransitionError):
        await store.requeue_failed(submission_id)


@pytest.mark.asyncio
async def test_evict_expired_spares_paid_submissions(store, clock, cv):
    staged_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")
    paid_id = await _paid(store, cv)

    clock.advance(hours=25)

    assert await store.evict_expired() == 1
    with pytest.raises(NotFoundError):
        await store.get(staged_id)
    assert (await store.get(paid_id)).status == SubmissionStatus.PAID_PENDING_DELIVERY


@pytest.mark.asyncio
async def test_evict_expired_drops_delivered_after_retention(store, clock, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)
    await store.mark_delivered(submission_id)

    clock.advance(hours=1)
    assert await store.evict_expired() == 0

    clock.advance(hours=store.delivered_retention.total_seconds() / 3600)
    assert await store.evict_expired() == 1


@pytest.mark.asyncio
async def test_evict_single_submission(store, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")

    assert await store.evict(submission_id) is True
    assert await store.evict(submission_id) is False


@pytest.mark.asyncio
async def test_list_pending_delivery_skips_live_claims(store, clock, cv):
    claimed_id = await _paid(store, cv)
    waiting_id = await _paid(store, cv)
    await store.take(claimed_id)

    pending = await store.list_pending_delivery()
    assert [s.id for s in pending] == [waiting_id]

    clock.advance(minutes=11)
    pending = await store.list_pending_delivery()
    assert {s.id for s in pending} == {claimed_id, waiting_id}


@pytest.mark.asyncio
async def test_list_failed(store, cv):
    submission_id = await _paid(store, cv)
    await store.take(submission_id)
    await store.mark_failed(submission_id, "bounced", retryable=False)

    failed = await store.list_failed()
    assert [s.id for s in failed] == [submission_id]


def test_ttl_must_be_positive():
    with pytest.raises(ValueError):
        InMemorySubmissionStore(ttl=timedelta(0))


@pytest.mark.asyncio
async def test_awaiting_payment_hold_extends_but_never_shortens_expiry(store, clock, cv):
    submission_id = await store.put(APPLICANT_FIELDS, [cv], 5000, "eur")
    original = (await store.get(submission_id)).expires_at

    shorter = await store.mark_awaiting_payment(submission_id, hold_until=clock.now + timedelta(hours=1))
    assert shorter.expires_at == original

    later = original + timedelta(hours=2)
    extended = await store.mark_awaiting_payment(submission_id, hold_until=later)
    assert extended.expires_at == later

    clock.advance(hours=25)
    assert await store.evict_expired() == 0


@pytest.mark.asyncio
async def test_superseded_claim_token_cannot_finish_delivery(store, clock, cv):
    submission_id = await _paid(store, cv)
    first = await store.take(submission_id)

    clock.advance(seconds=store.claim_timeout.total_seconds() + 1)
    second = await store.take(submission_id)
    assert second.claim_token != first.claim_token

    with pytest.raises(AlreadyInProgressError):
        await store.mark_delivered(submission_id, claim_token=first.claim_token)
    with pytest.raises(AlreadyInProgressError):
        await store.mark_failed(submission_id, "smtp down", claim_token=first.claim_token)

    delivered = await store.mark_delivered(submission_id, claim_token=second.claim_token)
    assert delivered.status == SubmissionStatus.DELIVERED
    assert delivered.claim_token is None


def test_default_timestamps_are_timezone_aware():
    submission = Submission(id="SUB-1", amount=100, currency="eur", expires_at=utcnow())

    assert submission.created_at.tzinfo is not None
    assert submission.updated_at.tzinfo is not None
