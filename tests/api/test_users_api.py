"""Per-user entitlement, quota and message endpoints."""

from datetime import UTC, datetime, timedelta

import pytest

from subscription_engine.db.models import PaymentTransaction, Subscription, User
from tests.payloads import INTERNAL_HEADERS

pytestmark = pytest.mark.integration


def _subscriber(user_id: str, *, plan_type="pro_monthly", days_left=10, cancelling=False, status="active"):
    """Arrange function for a user with a single subscription ending ``days_left`` from now."""

    async def arrange(session):
        now = datetime.now(UTC)
        end = now + timedelta(days=days_left)
        session.add(User(id=user_id, plan_type=plan_type, subscription_status="active"))
        session.add(
            Subscription(
                user_id=user_id,
                external_subscription_id=f"sub_{user_id}",
                status=status,
                plan_type=plan_type,
                current_period_start=end - timedelta(days=30),
                current_period_end=end,
                cancel_at_period_end=cancelling,
                version=1,
            )
        )

    return arrange


def test_requires_internal_token(api_client):
    assert api_client.get("/api/users/user_x/entitlement").status_code == 401
    wrong = {"Authorization": "Bearer nope"}
    assert api_client.get("/api/users/user_x/entitlement", headers=wrong).status_code == 401


def test_unknown_user_is_free_tier(api_client):
    response = api_client.get("/api/users/user_new/entitlement", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert (body["access_level"], body["plan_type"], body["can_write"]) == ("none", "free", True)
    assert body["limits"] == {"ideas": 3, "validations": 1, "content": 3}
    assert body["subscription"] is None


def test_lapsed_cancellation_is_readonly(api_client, seed):
    seed(_subscriber("user_lapsed", days_left=-2, cancelling=True))

    body = api_client.get("/api/users/user_lapsed/entitlement", headers=INTERNAL_HEADERS).json()

    assert body["access_level"] == "readonly"
    assert body["can_write"] is False
    assert body["reason"] == "subscription_expired"


def test_readonly_user_cannot_consume_quota(api_client, seed):
    seed(_subscriber("user_lapsed", days_left=-2, cancelling=True))

    response = api_client.post("/api/users/user_lapsed/usage/ideas", headers=INTERNAL_HEADERS)

    assert response.status_code == 403
    assert "Upgrade" in response.json()["detail"]


def test_free_quota_exhaustion_returns_429(api_client):
    first = api_client.post("/api/users/user_free/usage/validations", headers=INTERNAL_HEADERS)
    second = api_client.post("/api/users/user_free/usage/validations", headers=INTERNAL_HEADERS)

    assert first.status_code == 200
    assert first.json() == {"quota_type": "validations", "allowed": True, "used": 1, "limit": 1}
    assert second.status_code == 429
    assert second.json()["quota_type"] == "validations"
    assert (second.json()["used"], second.json()["limit"]) == (1, 1)


def test_unknown_quota_type_is_rejected(api_client):
    response = api_client.post("/api/users/user_free/usage/tweets", headers=INTERNAL_HEADERS)
    assert response.status_code == 422


def test_usage_snapshot(api_client):
    api_client.post("/api/users/user_snap/usage/ideas", headers=INTERNAL_HEADERS)

    body = api_client.get("/api/users/user_snap/usage", headers=INTERNAL_HEADERS).json()

    assert body["plan_type"] == "free"
    assert body["quotas"]["ideas"] == {"used": 1, "limit": 3, "remaining": 2}
    reset = datetime.fromisoformat(body["reset_date"])
    assert reset.day == 1
    assert reset > datetime.now(UTC)


def test_daily_message_limit(api_client):
    for expected in range(1, 6):
        response = api_client.post("/api/users/user_msg/messages", headers=INTERNAL_HEADERS)
        assert response.json()["used"] == expected

    blocked = api_client.post("/api/users/user_msg/messages", headers=INTERNAL_HEADERS)

    assert blocked.status_code == 429
    assert blocked.json()["limit"] == 5
    usage = api_client.get("/api/users/user_msg/messages", headers=INTERNAL_HEADERS).json()
    assert (usage["used"], usage["remaining"]) == (5, 0)


def test_proration_requires_active_monthly_plan(api_client, seed):
    seed(_subscriber("user_yearly", plan_type="pro_yearly", days_left=200))

    assert api_client.get("/api/users/user_yearly/proration", headers=INTERNAL_HEADERS).status_code == 409
    assert api_client.get("/api/users/user_nobody/proration", headers=INTERNAL_HEADERS).status_code == 409


def test_proration_quote_for_monthly_subscriber(api_client, seed):
    seed(_subscriber("user_monthly", days_left=10))

    response = api_client.get("/api/users/user_monthly/proration", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["currency"] == "INR"
    assert body["yearly_price"] == 28908
    assert 0 < body["unused_credit"] <= 2900
    assert body["amount_due"] == body["yearly_price"] - body["unused_credit"]


def test_billing_history(api_client, seed):
    async def arrange(session):
        session.add(User(id="user_paid"))
        session.add(
            PaymentTransaction(
                user_id="user_paid",
                external_payment_id="pay_hist",
                external_subscription_id="sub_hist",
                amount=2900,
                status="captured",
            )
        )

    seed(arrange)

    [record] = api_client.get("/api/users/user_paid/payments", headers=INTERNAL_HEADERS).json()

    assert record["external_payment_id"] == "pay_hist"
    assert (record["amount"], record["currency"], record["status"]) == (2900, "INR", "captured")
