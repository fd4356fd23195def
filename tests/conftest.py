import hashlib
import hmac
import json
import pathlib
import sys
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

BACKEND = pathlib.Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from pipeline.agents.checkout_gateway import CheckoutSessionGateway
from pipeline.agents.notification_dispatcher import InMemoryMailTransport, NotificationDispatcher
from pipeline.errors import DeliveryError
from pipeline.fulfillment_engine import FulfillmentEngine
from schemas.submission import CHECKOUT_COMPLETED, Attachment
from storage.submission_store import InMemorySubmissionStore

WEBHOOK_SECRET = "whsec_test_secret"
SUCCESS_URL = "https://example.com/#/success"
CANCEL_URL = "https://example.com/#/cancel"

APPLICANT_FIELDS = {"firstName": "Ana", "lastName": "Ivanov", "email": "ana@example.com"}


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCheckoutSessions:
    """Stands in for stripe.checkout.Session; records every create() call."""

    def __init__(self):
        self.calls = []
        self.error = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        session_id = f"cs_test_{len(self.calls)}"
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")


class FlakyMailTransport(InMemoryMailTransport):
    """Fails the first `failures` sends, then behaves like the in-memory outbox."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def send(self, message):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise DeliveryError("421 service not available")
        return await super().send(message)


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for the payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(
    submission_ref,
    event_type: str = CHECKOUT_COMPLETED,
    payment_status: str = "paid",
    event_id: str = "evt_test_1",
) -> bytes:
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "payment_status": payment_status,
    }
    if submission_ref is not None:
        session["client_reference_id"] = submission_ref
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": session},
    }).encode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cv():
    return Attachment(name="cv", filename="cv.pdf", content_type="application/pdf", content=b"%PD")


@pytest.fixture
def store(clock):
    return InMemorySubmissionStore(clock=clock, max_delivery_attempts=3)


@pytest.fixture
def sessions():
    return FakeCheckoutSessions()


@pytest.fixture
def gateway(store, sessions):
    return CheckoutSessionGateway(
        store,
        api_key="sk_test_key",
        webhook_secret=WEBHOOK_SECRET,
        stripe_client=SimpleNamespace(checkout=SimpleNamespace(Session=sessions)),
    )


@pytest.fixture
def transport():
    return FlakyMailTransport()


@pytest.fixture
def dispatcher(transport):
    return NotificationDispatcher(transport, from_email="no-reply@example.com")


@pytest.fixture
def engine(store, gateway, dispatcher):
    return FulfillmentEngine(
        store,
        gateway,
        dispatcher,
        success_url=SUCCESS_URL,
        cancel_url=CANCEL_URL,
        background_delivery=False,
        backoff_seconds=0,
    )
