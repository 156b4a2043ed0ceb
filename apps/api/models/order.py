"""Order and OrderItem models."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Order(Base):
    """Durable order, created once per confirmed checkout session."""

    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    confirmation_id = Column(String, nullable=False, unique=True, index=True)
    order_type = Column(String, nullable=False, default="catalogue")  # direct, catalogue
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=False, index=True)
    address = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    zip_code = Column(String, nullable=False)
    country = Column(String, nullable=False)
    poster_image_url = Column(String, nullable=True)
    original_image_url = Column(String, nullable=True)
    style = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="chf")
    payment_intent_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, shipped, delivered, cancelled
    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")


class OrderItem(Base):
    """One cart line of an order."""

    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    image_id = Column(String, ForeignKey("generated_images.id"), nullable=True, index=True)
    poster_image_url = Column(String, nullable=False)
    style = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    edition_numbers = Column(String, nullable=True)  # comma separated, 1-based for display
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")
