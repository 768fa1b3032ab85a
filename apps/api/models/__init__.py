"""Models package."""

from .user import User
from .credit_transaction import CreditTransaction
from .credit_refund_failure import CreditRefundFailure
from .reconciliation import ReconciliationAdjustment, ReconciliationCheckpoint
