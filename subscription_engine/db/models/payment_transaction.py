"""PaymentTransaction model: one row per processor payment id."""

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from subscription_engine.db.base import Base, UTCDateTime, utcnow


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)

    external_payment_id = Column(String(255), unique=True, nullable=False, index=True)
    external_subscription_id = Column(String(255), nullable=True, index=True)

    amount = Column(Integer, nullable=False, default=0)  # minor units (paise)
    currency = Column(String(3), nullable=False, default="INR")
    method = Column(String(50), nullable=True)  # card, upi, netbanking, ...

    # verified | captured | failed | refunded (forward-only)
    status = Column(String(50), nullable=False)
    error_description = Column(Text, nullable=True)

    verified_at = Column(UTCDateTime, nullable=True)
    captured_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
