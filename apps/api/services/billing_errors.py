"""
Billing Exceptions

Structured errors raised by the credit ledger, the refund pipeline and the
request-coalescing layer. Insufficient credits is deliberately NOT an
exception: `CreditLedgerService.reserve` reports it by returning False.
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing-consistency failures."""

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: Optional[dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class LedgerUnavailableError(BillingError):
    """The ledger store could not complete a transaction; the caller may retry."""

    def __init__(self, message: str = "Credit ledger is temporarily unavailable", operation: Optional[str] = None):
        super().__init__(
            message=message,
            code="LEDGER_UNAVAILABLE",
            details={"operation": operation} if operation else {},
        )
        self.operation = operation


class StoreCircuitOpenError(BillingError):
    """Store calls are short-circuited while the circuit is open."""

    def __init__(self, operation: str, retry_after_seconds: int):
        super().__init__(
            message="Datastore circuit is open; writes are temporarily disabled",
            code="STORE_CIRCUIT_OPEN",
            details={"operation": operation, "retry_after_seconds": retry_after_seconds},
        )
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds


class RefundDeliveryError(BillingError):
    """A refund neither landed nor could be persisted for retry.

    This is the one refund outcome that must reach a human: money would
    otherwise be lost silently.
    """

    def __init__(self, refund_key: str, user_id: str, amount: int, cause: Optional[str] = None):
        super().__init__(
            message="Refund could not be applied or queued for retry",
            code="REFUND_UNRECORDED",
            details={
                "refund_key": refund_key,
                "user_id": user_id,
                "amount": amount,
                "cause": cause,
            },
        )
        self.refund_key = refund_key


class CoalescedRequestFailedError(BillingError):
    """The leader of a coalesced request group did not produce a response."""

    def __init__(self, key_scope: str, reason: str):
        super().__init__(
            message="Duplicate request could not be served because the original request failed",
            code="COALESCED_REQUEST_FAILED",
            details={"key_scope": key_scope, "reason": reason},
        )
        self.key_scope = key_scope
