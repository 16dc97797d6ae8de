"""UsageLimits model: monthly quota counters per user."""

from sqlalchemy import Column, ForeignKey, Integer, String

from subscription_engine.db.base import Base, UTCDateTime, utcnow


class UsageLimits(Base):
    __tablename__ = "usage_limits"

    user_id = Column(String(255), ForeignKey("users.id"), primary_key=True)
    plan_type = Column(String(50), nullable=False, default="free")

    ideas_used = Column(Integer, nullable=False, default=0)
    validations_used = Column(Integer, nullable=False, default=0)
    content_used = Column(Integer, nullable=False, default=0)

    # Limits (-1 = unlimited)
    ideas_limit = Column(Integer, nullable=False, default=0)
    validations_limit = Column(Integer, nullable=False, default=0)
    content_limit = Column(Integer, nullable=False, default=0)

    # Next calendar-month boundary at which counters reset
    reset_date = Column(UTCDateTime, nullable=False)

    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
