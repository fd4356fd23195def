import pytest
from fastapi.testclient import TestClient
import stripe

from api.server import create_app
from conftest import checkout_event, sign


@pytest.fixture
def client(engine):
    app = create_app(engine=engine, recovery_enabled=False)
    with TestClient(app) as test_client:
        yield test_client


def _intake(client, **overrides):
    data = {
        "firstName": "Ana",
        "lastName": "Ivanov",
        "email": "ana@example.com",
        "amount": "5000",
        "currency": "eur",
    }
    data.update(overrides)
    files = {"cv": ("cv.pdf", b"%PD", "application/pdf")}
    return client.post("/create-checkout-session", data=data, files=files)


def _webhook(client, submission_id, secret=None):
    payload = checkout_event(submission_id)
    header = sign(payload, secret=secret) if secret else sign(payload)
    return client.post(
        "/webhook",
        content=payload,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


def test_intake_returns_checkout_redirect(client, sessions):
    resp = _intake(client)
    assert resp.status_code == 200

    body = resp.json()
    assert body["submissionId"].startswith("SUB-")
    assert body["sessionId"] == "cs_test_1"
    assert body["url"].startswith("https://checkout.stripe.com/")
    assert sessions.calls[0]["client_reference_id"] == body["submissionId"]


def test_status_hides_field_values(client):
    submission_id = _intake(client).json()["submissionId"]

    resp = client.get(f"/api/submissions/{submission_id}")
    assert resp.status_code == 200

    body = resp.json()
    assert body["status"] == "awaiting_payment"
    assert body["attachment_count"] == 1
    assert "ana@example.com" not in resp.text


def test_json_intake_without_files(client):
    resp = client.post(
        "/create-checkout-session",
        json={"firstName": "Ana", "email": "ana@example.com", "amount": 5000},
    )
    assert resp.status_code == 200

    status = client.get(f"/api/submissions/{resp.json()['submissionId']}").json()
    assert status["attachment_count"] == 0
    assert status["currency"] == "eur"


@pytest.mark.parametrize("amount", ["0", "50.00", "abc", ""])
def test_intake_rejects_invalid_amount(client, amount):
    resp = _intake(client, amount=amount)
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_webhook_delivers_paid_submission(client, transport):
    submission_id = _intake(client).json()["submissionId"]

    resp = _webhook(client, submission_id)

    assert resp.status_code == 200
    assert resp.json()["received"] is True
    assert resp.json()["outcome"] == "delivered"
    assert transport.outbox[0].attachments[0].filename == "cv.pdf"
    assert client.get(f"/api/submissions/{submission_id}").json()["status"] == "delivered"


def test_webhook_replay_and_unknown_are_acknowledged(client, transport):
    submission_id = _intake(client).json()["submissionId"]
    _webhook(client, submission_id)

    replay = _webhook(client, submission_id)
    unknown = _webhook(client, "S2")

    assert replay.status_code == 200
    assert unknown.status_code == 200
    assert unknown.json()["outcome"] == "unknown_submission"
    assert len(transport.outbox) == 1


def test_webhook_bad_signature_is_400(client, transport):
    submission_id = _intake(client).json()["submissionId"]

    resp = _webhook(client, submission_id, secret="whsec_forged")

    assert resp.status_code == 400
    assert resp.json()["received"] is False
    assert transport.outbox == []


def test_webhook_without_signature_is_400(client):
    resp = client.post("/webhook", content=checkout_event("S1"))
    assert resp.status_code == 400


def test_unknown_submission_status_is_404(client):
    resp = client.get("/api/submissions/SUB-missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


def test_retry_checkout_after_gateway_failure(client, sessions):
    sessions.error = stripe.APIConnectionError("network down")
    failed = _intake(client)
    assert failed.status_code == 500
    submission_id = failed.json()["submissionId"]

    sessions.error = None
    resp = client.post(f"/api/submissions/{submission_id}/checkout")

    assert resp.status_code == 200
    assert resp.json()["submissionId"] == submission_id
    assert client.get(f"/api/submissions/{submission_id}").json()["status"] == "awaiting_payment"


def test_operator_lists_and_retries_failed(client, transport):
    transport.failures = 10
    submission_id = _intake(client).json()["submissionId"]
    assert _webhook(client, submission_id).json()["outcome"] == "delivery_failed"

    failed = client.get("/api/admin/submissions/failed").json()
    assert failed["count"] == 1
    assert failed["submissions"][0]["submission_id"] == submission_id

    transport.failures = 0
    resp = client.post(f"/api/admin/submissions/{submission_id}/retry")

    assert resp.status_code == 200
    assert resp.json()["delivered"] is True
    assert resp.json()["submission"]["status"] == "delivered"

    again = client.post(f"/api/admin/submissions/{submission_id}/retry")
    assert again.status_code == 409


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["store"] == "memory"
    assert resp.json()["uptime_seconds"] >= 0
