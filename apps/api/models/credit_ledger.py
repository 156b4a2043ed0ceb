"""CreditLedger model for generation usage accounting."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("billing_provider", "billing_reference", name="uq_credit_ledger_billing_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # free_use, paid_use, unlimited_use, purchase, grant
    delta_credits = Column(Integer, nullable=False)
    free_remaining_after = Column(Integer, nullable=True)
    paid_credits_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
