"""Durable record of a refund that could not be delivered synchronously."""

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String
from sqlalchemy.sql import func

from database import Base


REFUND_STATUS_PENDING = "pending"
REFUND_STATUS_PROCESSING = "processing"
REFUND_STATUS_RESOLVED = "resolved"
REFUND_STATUS_ESCALATED = "escalated"


class CreditRefundFailure(Base):
    """Refund retry queue entry keyed by its idempotent refund key.

    pending -> processing -> resolved | pending (retry) | escalated.
    Rows are never deleted; resolved and escalated rows are the audit trail.
    """

    __tablename__ = "credit_refund_failures"
    __table_args__ = (
        Index("ix_credit_refund_failures_status_updated", "status", "updated_at"),
    )

    refund_key = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    status = Column(String, nullable=False, default=REFUND_STATUS_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
