"""GenerationCredit model: per-email free and paid generation balance."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class GenerationCredit(Base):
    """Credit balance row, created on first touch for an email.

    Only ``services.credits`` writes the counter columns, and only through
    conditional UPDATE statements.
    """

    __tablename__ = "generation_credits"
    __table_args__ = (
        CheckConstraint("free_credits_used >= 0", name="ck_generation_credits_free_used_non_negative"),
        CheckConstraint("free_credits_used <= free_credits_total", name="ck_generation_credits_free_used_cap"),
        CheckConstraint("paid_credits >= 0", name="ck_generation_credits_paid_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    free_credits_total = Column(Integer, nullable=False, default=2)
    free_credits_used = Column(Integer, nullable=False, default=0)
    paid_credits = Column(Integer, nullable=False, default=0)
    last_generated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
