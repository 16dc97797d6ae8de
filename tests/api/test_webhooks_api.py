"""HTTP contract of the Razorpay webhook endpoint."""

from datetime import UTC, datetime, timedelta

import pytest

from tests.payloads import INTERNAL_HEADERS, subscription_event

pytestmark = pytest.mark.integration


def _activation(event_id="evt_api_1", user_id="user_api"):
    now = datetime.now(UTC)
    return subscription_event(
        "subscription.activated",
        subscription_id=f"sub_{user_id}",
        user_id=user_id,
        start=now,
        end=now + timedelta(days=30),
        event_id=event_id,
    )


def test_activation_webhook_grants_full_access(api_client, post_webhook):
    response = post_webhook(_activation())

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "detail": "activated", "event_id": "evt_api_1"}

    entitlement = api_client.get("/api/users/user_api/entitlement", headers=INTERNAL_HEADERS).json()
    assert entitlement["access_level"] == "full"
    assert entitlement["plan_type"] == "pro_monthly"
    assert entitlement["subscription"]["external_subscription_id"] == "sub_user_api"


def test_redelivery_is_acknowledged_as_duplicate(post_webhook):
    post_webhook(_activation())

    response = post_webhook(_activation())

    assert response.status_code == 200
    assert response.json()["detail"] == "duplicate"


def test_invalid_signature_returns_400_with_debug_id(post_webhook):
    response = post_webhook(_activation(), signature="0" * 64)

    assert response.status_code == 400
    body = response.json()
    assert body["detail"] == "invalid_signature"
    assert "debug_id" in body


def test_missing_signature_header_returns_400(api_client):
    response = api_client.post("/api/webhooks/razorpay", content=b"{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_out_of_order_event_asks_for_redelivery(post_webhook):
    now = datetime.now(UTC)
    renewal = subscription_event(
        "subscription.charged",
        subscription_id="sub_never_seen",
        start=now,
        end=now + timedelta(days=30),
        event_id="evt_early",
    )

    response = post_webhook(renewal)

    assert response.status_code == 500
