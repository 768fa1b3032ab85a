import pytest
from sqlalchemy import update

from models.credit_refund_failure import (
    REFUND_STATUS_ESCALATED,
    REFUND_STATUS_PENDING,
    REFUND_STATUS_RESOLVED,
    CreditRefundFailure,
)
from services.refund_failures import FailureInput
from services.refund_sweeper import CreditRefundSweeper


class _ScriptedLedger:
    """Ledger double whose refund outcome is chosen per refund key."""

    def __init__(self, failing_keys=()):
        self.failing_keys = set(failing_keys)
        self.refunded = []

    async def refund(self, user_id, amount, *, refund_key=None, reason=None):
        if refund_key in self.failing_keys:
            raise RuntimeError(f"ledger unavailable for {refund_key}")
        self.refunded.append(refund_key)
        return True


async def _queue(failure_store, key: str, *, attempts: int = 0, session_maker=None):
    await failure_store.upsert_failure(
        FailureInput(refund_key=key, user_id="sweep-user", amount=2, reason="generation failed", last_error="boom")
    )
    if attempts:
        async with session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(CreditRefundFailure)
                    .where(CreditRefundFailure.refund_key == key)
                    .values(attempts=attempts)
                )


def _sweeper(ledger, failure_store, metrics, **overrides):
    options = dict(max_per_run=25, max_attempts=3, scan_limit=50, metrics=metrics)
    options.update(overrides)
    return CreditRefundSweeper(ledger, failure_store, **options)


@pytest.mark.asyncio
async def test_sweep_resolves_refunds_that_now_succeed(failure_store, metrics):
    await _queue(failure_store, "refund_s1")
    await _queue(failure_store, "refund_s2")
    ledger = _ScriptedLedger()

    result = await _sweeper(ledger, failure_store, metrics).run_once()

    assert result.claimed == 2
    assert result.resolved == 2
    assert sorted(ledger.refunded) == ["refund_s1", "refund_s2"]
    assert (await failure_store.get("refund_s1")).status == REFUND_STATUS_RESOLVED


@pytest.mark.asyncio
async def test_sweep_releases_failures_below_attempt_limit(failure_store, metrics, session_maker):
    await _queue(failure_store, "refund_retry", attempts=1, session_maker=session_maker)
    ledger = _ScriptedLedger(failing_keys={"refund_retry"})

    result = await _sweeper(ledger, failure_store, metrics).run_once()

    assert result.retried == 1
    assert result.escalated == 0
    record = await failure_store.get("refund_retry")
    assert record.status == REFUND_STATUS_PENDING
    assert record.attempts == 2
    assert metrics.alert_counts == {}


@pytest.mark.asyncio
async def test_sweep_escalates_on_final_attempt(failure_store, metrics, session_maker):
    await _queue(failure_store, "refund_final", attempts=2, session_maker=session_maker)
    ledger = _ScriptedLedger(failing_keys={"refund_final"})

    result = await _sweeper(ledger, failure_store, metrics).run_once()

    assert result.escalated == 1
    record = await failure_store.get("refund_final")
    assert record.status == REFUND_STATUS_ESCALATED
    assert record.attempts == 3
    assert metrics.alert_counts == {"credit_refund_escalated": 1}


@pytest.mark.asyncio
async def test_sweep_stops_after_max_per_run_claims(failure_store, metrics, clock):
    for index in range(5):
        await _queue(failure_store, f"refund_batch_{index}")
        clock.advance(seconds=1)

    result = await _sweeper(_ScriptedLedger(), failure_store, metrics, max_per_run=3).run_once()

    assert result.claimed == 3
    counts = await failure_store.count_by_status()
    assert counts == {REFUND_STATUS_RESOLVED: 3, REFUND_STATUS_PENDING: 2}


@pytest.mark.asyncio
async def test_failed_record_is_not_reclaimed_within_the_same_run(failure_store, metrics):
    await _queue(failure_store, "refund_once")
    ledger = _ScriptedLedger(failing_keys={"refund_once"})

    result = await _sweeper(ledger, failure_store, metrics, max_attempts=20, max_per_run=10).run_once()

    assert result.claimed == 1
    assert result.retried == 1
    record = await failure_store.get("refund_once")
    assert record.status == REFUND_STATUS_PENDING
    assert record.attempts == 1


@pytest.mark.asyncio
async def test_sweep_applies_real_refund_through_ledger(ledger, failure_store, metrics):
    await ledger.reserve("sweep-user", 2)
    await _queue(failure_store, "refund_real")

    result = await _sweeper(ledger, failure_store, metrics).run_once()

    assert result.resolved == 1
    assert await ledger.get_balance("sweep-user") == 25


@pytest.mark.asyncio
async def test_sweep_recovers_stale_claims_first(failure_store, metrics, clock):
    await _queue(failure_store, "refund_abandoned")
    await failure_store.claim_next_pending(max_attempts=3, scan_limit=10)
    clock.advance(seconds=700)

    result = await _sweeper(_ScriptedLedger(), failure_store, metrics, stale_processing_seconds=600).run_once()

    assert result.released_stale == 1
    assert result.resolved == 1
    assert (await failure_store.get("refund_abandoned")).status == REFUND_STATUS_RESOLVED


@pytest.mark.asyncio
async def test_record_exhausted_before_claim_is_escalated_with_alert(failure_store, metrics, session_maker):
    await _queue(failure_store, "refund_exhausted", attempts=3, session_maker=session_maker)
    ledger = _ScriptedLedger()

    result = await _sweeper(ledger, failure_store, metrics, max_attempts=3).run_once()

    assert result.claimed == 0
    assert ledger.refunded == []
    assert (await failure_store.get("refund_exhausted")).status == REFUND_STATUS_ESCALATED
    assert metrics.alert_counts == {"credit_refund_escalated": 1}
