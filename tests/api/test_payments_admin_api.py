"""Checkout verification, manual activation and health endpoints."""

import pytest

from subscription_engine.core.security import hmac_sha256_hex
from tests.payloads import INTERNAL_HEADERS, KEY_SECRET

pytestmark = pytest.mark.integration


def _verify_body(signature: str | None = None) -> dict:
    return {
        "user_id": "user_checkout",
        "razorpay_payment_id": "pay_checkout",
        "razorpay_subscription_id": "sub_checkout",
        "razorpay_signature": signature or hmac_sha256_hex(KEY_SECRET, b"sub_checkout|pay_checkout"),
    }


def test_verify_payment_records_verified(api_client):
    response = api_client.post("/api/payments/verify", json=_verify_body(), headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"verified": True, "status": "verified", "message": "Payment verified successfully"}

    [record] = api_client.get("/api/users/user_checkout/payments", headers=INTERNAL_HEADERS).json()
    assert (record["external_payment_id"], record["status"]) == ("pay_checkout", "verified")


def test_verify_payment_rejects_bad_signature(api_client):
    response = api_client.post("/api/payments/verify", json=_verify_body("deadbeef"), headers=INTERNAL_HEADERS)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payment signature"
    assert api_client.get("/api/users/user_checkout/payments", headers=INTERNAL_HEADERS).json() == []


def test_verify_payment_validates_body(api_client):
    body = _verify_body()
    body["razorpay_payment_id"] = ""

    assert api_client.post("/api/payments/verify", json=body, headers=INTERNAL_HEADERS).status_code == 422


def test_manual_activation_grants_full_access(api_client):
    response = api_client.post(
        "/api/admin/subscriptions/activate",
        json={"user_id": "user_manual", "plan_type": "pro_yearly", "email": "ops@example.com"},
        headers=INTERNAL_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["applied"] is True
    assert body["external_subscription_id"].startswith("manual_")

    entitlement = api_client.get("/api/users/user_manual/entitlement", headers=INTERNAL_HEADERS).json()
    assert (entitlement["access_level"], entitlement["plan_type"]) == ("full", "pro_yearly")


def test_manual_activation_rejects_free_plan(api_client):
    response = api_client.post(
        "/api/admin/subscriptions/activate",
        json={"user_id": "user_manual", "plan_type": "free"},
        headers=INTERNAL_HEADERS,
    )
    assert response.status_code == 400


def test_manual_activation_requires_token(api_client):
    response = api_client.post(
        "/api/admin/subscriptions/activate", json={"user_id": "user_manual", "plan_type": "pro_yearly"}
    )
    assert response.status_code == 401


def test_health_and_readiness(api_client):
    assert api_client.get("/api/health").json() == {"status": "healthy", "service": "subscription-engine"}

    ready = api_client.get("/api/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"database": True, "redis": True}


def test_health_returns_503_while_draining(api_client):
    api_client.app.state.shutting_down = True

    response = api_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_correlation_id_is_echoed(api_client):
    response = api_client.get("/api/health", headers={"X-Request-ID": "0f3c9a0e-6a57-4a43-9a55-6c8f3c2bd7a1"})
    assert response.headers["X-Request-ID"] == "0f3c9a0e-6a57-4a43-9a55-6c8f3c2bd7a1"
