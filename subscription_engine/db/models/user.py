"""User model: plan and denormalized subscription status per external user id."""

from sqlalchemy import Column, String

from subscription_engine.db.base import Base, UTCDateTime, utcnow


class User(Base):
    __tablename__ = "users"

    # Opaque id issued by the authentication provider
    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True)

    # free | pro_monthly | pro_yearly
    plan_type = Column(String(50), nullable=False, default="free")
    # inactive | trial | active | cancelled (cache of the governing subscription)
    subscription_status = Column(String(50), nullable=False, default="inactive")

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
