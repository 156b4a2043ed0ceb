"""GeneratedImage model: a generated poster and, once published, a limited edition."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GeneratedImage(Base):
    """Poster artifact owned by one account.

    ``total_supply``, ``price_per_unit`` and ``creator_share_rate`` are fixed at
    publish time. ``sold_count`` counts held editions (reserved or committed);
    ``committed_count`` counts paid ones and issues final edition numbers.
    Both are written only by ``services.inventory``.
    """

    __tablename__ = "generated_images"
    __table_args__ = (
        CheckConstraint("sold_count >= 0", name="ck_generated_images_sold_non_negative"),
        CheckConstraint(
            "total_supply IS NULL OR sold_count <= total_supply",
            name="ck_generated_images_sold_within_supply",
        ),
        CheckConstraint("committed_count >= 0", name="ck_generated_images_committed_non_negative"),
        CheckConstraint("committed_count <= sold_count", name="ck_generated_images_committed_within_sold"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    original_path = Column(String, nullable=False)
    generated_path = Column(String, nullable=False)
    thumbnail_path = Column(String, nullable=True)
    style = Column(String, nullable=False)
    city = Column(String, nullable=True)
    moment_link = Column(String, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False, index=True)
    review_status = Column(String, nullable=True, index=True)  # pending, approved, rejected
    total_supply = Column(Integer, nullable=True)
    sold_count = Column(Integer, nullable=False, default=0)
    committed_count = Column(Integer, nullable=False, default=0)
    price_per_unit = Column(Numeric(10, 2), nullable=True)
    creator_share_rate = Column(Numeric(4, 2), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    tickets = relationship("EditionTicket", back_populates="image")
    purchases = relationship("PosterPurchase", back_populates="image")

    @property
    def is_limited_edition(self) -> bool:
        return bool(self.is_public and self.total_supply is not None)
