"""PaymentRecord model tracking one provider order through confirmation."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, false
from sqlalchemy.sql import func

from database import Base


PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_VERIFIED = "verified"
PAYMENT_STATUS_FAILED = "failed"


class PaymentRecord(Base):
    """
    Provider order keyed by its reference id.

    credits_applied flips false -> true exactly once and only together with
    status = verified.
    """

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    reference_id = Column(String, nullable=False, unique=True, index=True)
    user_email = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    plan_id = Column(String, nullable=True)
    billing_cycle = Column(String, nullable=False, default="monthly")
    payment_method = Column(String, nullable=True)
    region = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    credits_applied = Column(Boolean, nullable=False, default=False, server_default=false())
    credits_granted = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
