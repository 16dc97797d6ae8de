"""Subscription model: one row per processor subscription, retained for billing history."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String

from subscription_engine.db.base import Base, UTCDateTime, utcnow


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)

    external_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    external_plan_id = Column(String(255), nullable=True)

    # trial | active | cancelled
    status = Column(String(50), nullable=False, index=True)
    plan_type = Column(String(50), nullable=False)

    current_period_start = Column(UTCDateTime, nullable=False)
    current_period_end = Column(UTCDateTime, nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Compare-and-set counter: every conditional write bumps it
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
