"""Subscription model for the unlimited-generation membership."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Subscription(Base):
    """Recurring-billing entitlement for one account."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    provider_subscription_id = Column(String, nullable=False, unique=True, index=True)
    provider_customer_id = Column(String, nullable=True)
    setup_intent_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="active", index=True)  # active, past_due, canceled
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    promo_code = Column(String, nullable=True)
    discount_percent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
