import pytest

from models.credit_refund_failure import REFUND_STATUS_PENDING
from services.billing_errors import RefundDeliveryError
from services.refund_guard import build_refund_key, refund_with_guard


class _FlakyLedger:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def refund(self, user_id, amount, *, refund_key=None, reason=None):
        self.calls.append((user_id, amount, refund_key))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class _BrokenFailureStore:
    async def upsert_failure(self, record):
        raise RuntimeError("failure store offline")


def test_build_refund_key_is_deterministic_and_prefixed():
    key = build_refund_key(["preview", "req-1", "user-1", "generation"])

    assert key == build_refund_key(["preview", "req-1", "user-1", "generation"])
    assert key != build_refund_key(["preview", "req-2", "user-1", "generation"])
    assert key.startswith("refund_")
    assert len(key) == len("refund_") + 48


@pytest.mark.asyncio
async def test_successful_refund_does_not_touch_failure_store(ledger, failure_store):
    await ledger.reserve("guard-user", 5)

    refunded = await refund_with_guard(
        ledger,
        failure_store,
        user_id="guard-user",
        amount=5,
        refund_key="refund_guard_ok",
        reason="provider failed",
    )

    assert refunded is True
    assert await ledger.get_balance("guard-user") == 25
    assert await failure_store.get("refund_guard_ok") is None


@pytest.mark.asyncio
async def test_failed_refund_is_persisted_for_the_sweeper(failure_store):
    flaky = _FlakyLedger(RuntimeError("ledger timeout"))

    refunded = await refund_with_guard(
        flaky,
        failure_store,
        user_id="guard-user",
        amount=3,
        refund_key="refund_guard_queued",
        reason="provider failed",
        metadata={"request_id": "req-9"},
    )

    assert refunded is False
    record = await failure_store.get("refund_guard_queued")
    assert record.status == REFUND_STATUS_PENDING
    assert record.amount == 3
    assert record.last_error == "ledger timeout"
    assert record.metadata == {"request_id": "req-9"}


@pytest.mark.asyncio
async def test_refund_returning_false_is_also_persisted(failure_store):
    refunded = await refund_with_guard(
        _FlakyLedger(False),
        failure_store,
        user_id="guard-user",
        amount=2,
        refund_key="refund_guard_false",
    )

    assert refunded is False
    assert (await failure_store.get("refund_guard_false")).last_error == "refund returned false"


@pytest.mark.asyncio
async def test_unrecordable_refund_raises_and_alerts(metrics):
    with pytest.raises(RefundDeliveryError) as exc_info:
        await refund_with_guard(
            _FlakyLedger(RuntimeError("ledger timeout")),
            _BrokenFailureStore(),
            user_id="guard-user",
            amount=4,
            refund_key="refund_guard_lost",
            metrics=metrics,
        )

    assert exc_info.value.code == "REFUND_UNRECORDED"
    assert exc_info.value.details["refund_key"] == "refund_guard_lost"
    assert metrics.alert_counts == {"credit_refund_unrecorded": 1}
