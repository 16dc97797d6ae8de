"""WebhookEvent model: idempotency ledger for inbound processor events."""

from sqlalchemy import JSON, Boolean, Column, Integer, String, Text

from subscription_engine.db.base import Base, UTCDateTime, utcnow


class WebhookEvent(Base):
    """Tracks processor event IDs so each event is applied at most once."""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)

    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(UTCDateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    needs_review = Column(Boolean, nullable=False, default=False)
    lease_until = Column(UTCDateTime, nullable=True)  # claim held by an in-flight delivery

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
