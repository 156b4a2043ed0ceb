"""PosterPurchase model: the append-only edition allocation ledger."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class PosterPurchase(Base):
    """One committed edition sale."""

    __tablename__ = "poster_purchases"
    __table_args__ = (
        UniqueConstraint("image_id", "edition_number", name="uq_poster_purchases_image_edition"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_id = Column(String, ForeignKey("edition_tickets.id"), nullable=False, unique=True)
    image_id = Column(String, ForeignKey("generated_images.id"), nullable=False, index=True)
    edition_number = Column(Integer, nullable=False)
    buyer_email = Column(String, nullable=False, index=True)
    confirmation_id = Column(String, nullable=False, index=True)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    creator_earnings = Column(Numeric(10, 2), nullable=False, default=0)
    purchase_date = Column(DateTime(timezone=True), server_default=func.now())

    image = relationship("GeneratedImage", back_populates="purchases")
