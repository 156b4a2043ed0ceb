"""CheckoutSession model for in-flight purchases."""

from sqlalchemy import Column, DateTime, JSON, Numeric, String
from sqlalchemy.sql import func

from database import Base


class CheckoutSession(Base):
    """Server-held checkout state, keyed by the confirmation id handed to the client."""

    __tablename__ = "checkout_sessions"

    confirmation_id = Column(String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    order_type = Column(String, nullable=False, default="catalogue")  # direct, catalogue
    shipping_json = Column(JSON, nullable=False)
    cart_json = Column(JSON, nullable=False)  # lines with unit prices captured at reservation time
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="chf")
    payment_intent_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default="reserved", index=True)  # reserved, payment_pending, confirmed, abandoned
    abandon_reason = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
