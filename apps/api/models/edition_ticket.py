"""EditionTicket model: a provisional or committed hold on one edition."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class EditionTicket(Base):
    """One unit of held capacity for a limited edition.

    ``edition_number`` is the provisional number shown during checkout. The
    final number is issued on commit and stored in ``committed_edition_number``
    and on the purchase row.
    """

    __tablename__ = "edition_tickets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    image_id = Column(String, ForeignKey("generated_images.id"), nullable=False, index=True)
    edition_number = Column(Integer, nullable=False)
    committed_edition_number = Column(Integer, nullable=True)
    confirmation_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="reserved", index=True)  # reserved, committed, released
    reserved_at = Column(DateTime(timezone=True), server_default=func.now())
    committed_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    image = relationship("GeneratedImage", back_populates="tickets")
