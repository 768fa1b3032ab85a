"""Reconciliation checkpoint and adjustment audit models."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


INCREMENTAL_CHECKPOINT_ID = "incremental_checkpoint"


class ReconciliationCheckpoint(Base):
    """Last ledger position scanned by the incremental pass."""

    __tablename__ = "credit_reconciliation_state"

    id = Column(String, primary_key=True, default=INCREMENTAL_CHECKPOINT_ID)
    last_created_at = Column(DateTime(timezone=True), nullable=False)
    last_transaction_id = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class ReconciliationAdjustment(Base):
    """A detected drift between a user's balance and their ledger sum."""

    __tablename__ = "credit_reconciliation_adjustments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    scope = Column(String, nullable=False)
    current_balance = Column(Integer, nullable=False)
    ledger_balance = Column(Integer, nullable=False)
    diff = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)
    requires_manual_approval = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
