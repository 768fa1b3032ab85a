"""Durable refund retry queue with claim-based ownership."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import dialect_insert
from models.credit_refund_failure import (
    REFUND_STATUS_ESCALATED,
    REFUND_STATUS_PENDING,
    REFUND_STATUS_PROCESSING,
    REFUND_STATUS_RESOLVED,
    CreditRefundFailure,
)
from services.store_circuit import StoreCircuitExecutor

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return str(error)[:MAX_ERROR_LENGTH]


@dataclass
class FailureInput:
    refund_key: str
    user_id: str
    amount: int
    reason: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundFailure:
    refund_key: str
    user_id: str
    amount: int
    status: str
    attempts: int
    reason: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: CreditRefundFailure) -> "RefundFailure":
        return cls(
            refund_key=row.refund_key,
            user_id=row.user_id,
            amount=int(row.amount),
            status=row.status,
            attempts=int(row.attempts or 0),
            reason=row.reason,
            last_error=row.last_error,
            metadata=dict(row.metadata_json or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
            processing_started_at=row.processing_started_at,
            resolved_at=row.resolved_at,
            escalated_at=row.escalated_at,
        )


class RefundFailureStore:
    """
    State machine over `credit_refund_failures`:

        pending -> processing -> resolved
                              -> pending (retry, attempts + 1)
                              -> escalated (attempts + 1)

    Ownership of a record is decided by a compare-and-set UPDATE on the
    `status` column, so any number of sweeper processes can race on the same
    backlog and each record still has at most one owner.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store_circuit: StoreCircuitExecutor,
        *,
        metrics: Optional[Any] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self._circuit = store_circuit
        self.metrics = metrics
        self._clock = clock

    async def upsert_failure(self, record: FailureInput) -> None:
        """Record a failed refund. Never re-opens a resolved record."""
        now = self._clock()
        table = CreditRefundFailure.__table__

        async def _operation() -> None:
            async with self._session_maker() as session:
                async with session.begin():
                    statement = dialect_insert(session, table).values(
                        refund_key=record.refund_key,
                        user_id=record.user_id,
                        amount=int(record.amount),
                        reason=record.reason,
                        status=REFUND_STATUS_PENDING,
                        attempts=0,
                        last_error=_truncate_error(record.last_error),
                        metadata_json=record.metadata or {},
                        created_at=now,
                        updated_at=now,
                    )
                    statement = statement.on_conflict_do_update(
                        index_elements=["refund_key"],
                        set_={
                            "user_id": statement.excluded.user_id,
                            "amount": statement.excluded.amount,
                            "reason": statement.excluded.reason,
                            "last_error": statement.excluded.last_error,
                            "metadata_json": statement.excluded.metadata_json,
                            "status": REFUND_STATUS_PENDING,
                            "updated_at": now,
                        },
                        where=table.c.status != REFUND_STATUS_RESOLVED,
                    )
                    await session.execute(statement)

        await self._circuit.execute_write("credits.refundFailures.upsert", _operation)
        logger.warning(
            "Recorded refund failure key=%s user=%s amount=%s error=%s",
            record.refund_key,
            record.user_id,
            record.amount,
            record.last_error,
        )

    async def claim_next_pending(
        self, max_attempts: int, scan_limit: int, exclude: Collection[str] = ()
    ) -> Optional[RefundFailure]:
        """Claim the oldest eligible pending record, or return None.

        `exclude` lets one sweep skip records it already retried this run.
        """
        max_attempts = max(int(max_attempts), 1)
        scan_limit = max(int(scan_limit), 1)

        async def _scan() -> List[CreditRefundFailure]:
            async with self._session_maker() as session:
                query = select(CreditRefundFailure).where(CreditRefundFailure.status == REFUND_STATUS_PENDING)
                if exclude:
                    query = query.where(CreditRefundFailure.refund_key.notin_(list(exclude)))
                result = await session.execute(
                    query.order_by(CreditRefundFailure.updated_at.asc(), CreditRefundFailure.created_at.asc()).limit(
                        scan_limit
                    )
                )
                return list(result.scalars().all())

        candidates = await self._circuit.execute_read("credits.refundFailures.scanPending", _scan)

        for candidate in candidates:
            if int(candidate.attempts or 0) >= max_attempts:
                escalated = await self._transition(
                    candidate.refund_key,
                    expected_status=REFUND_STATUS_PENDING,
                    values={
                        "status": REFUND_STATUS_ESCALATED,
                        "escalated_at": self._clock(),
                        "updated_at": self._clock(),
                    },
                    operation_name="credits.refundFailures.escalateExhausted",
                )
                if escalated:
                    logger.error(
                        "Refund %s exhausted %s attempts before claim; escalated",
                        candidate.refund_key,
                        candidate.attempts,
                    )
                    if self.metrics is not None:
                        self.metrics.record_alert(
                            "credit_refund_escalated",
                            {
                                "refund_key": candidate.refund_key,
                                "user_id": candidate.user_id,
                                "amount": int(candidate.amount),
                                "attempts": int(candidate.attempts or 0),
                            },
                        )
                continue

            now = self._clock()
            claimed = await self._transition(
                candidate.refund_key,
                expected_status=REFUND_STATUS_PENDING,
                values={
                    "status": REFUND_STATUS_PROCESSING,
                    "processing_started_at": now,
                    "updated_at": now,
                },
                operation_name="credits.refundFailures.claim",
            )
            if claimed:
                return await self.get(candidate.refund_key)

        return None

    async def mark_resolved(self, refund_key: str) -> None:
        now = self._clock()
        await self._transition(
            refund_key,
            expected_status=None,
            values={"status": REFUND_STATUS_RESOLVED, "resolved_at": now, "updated_at": now},
            operation_name="credits.refundFailures.resolve",
        )

    async def release_for_retry(self, refund_key: str, last_error: Optional[str]) -> None:
        await self._transition(
            refund_key,
            expected_status=REFUND_STATUS_PROCESSING,
            values={
                "status": REFUND_STATUS_PENDING,
                "attempts": CreditRefundFailure.attempts + 1,
                "last_error": _truncate_error(last_error),
                "updated_at": self._clock(),
            },
            operation_name="credits.refundFailures.release",
        )

    async def mark_escalated(self, refund_key: str, last_error: Optional[str]) -> None:
        now = self._clock()
        await self._transition(
            refund_key,
            expected_status=None,
            values={
                "status": REFUND_STATUS_ESCALATED,
                "attempts": CreditRefundFailure.attempts + 1,
                "last_error": _truncate_error(last_error),
                "escalated_at": now,
                "updated_at": now,
            },
            operation_name="credits.refundFailures.escalate",
        )

    async def release_stale_processing(self, older_than_seconds: int) -> int:
        """Return claims stranded by a crashed worker to the pending queue."""
        now = self._clock()
        cutoff = now - timedelta(seconds=max(int(older_than_seconds), 1))

        async def _operation() -> int:
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CreditRefundFailure)
                        .where(
                            CreditRefundFailure.status == REFUND_STATUS_PROCESSING,
                            CreditRefundFailure.processing_started_at < cutoff,
                        )
                        .values(
                            status=REFUND_STATUS_PENDING,
                            attempts=CreditRefundFailure.attempts + 1,
                            last_error="processing claim expired",
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    return int(result.rowcount or 0)

        released = await self._circuit.execute_write("credits.refundFailures.releaseStale", _operation)
        if released:
            logger.warning("Released %s stale refund claims back to pending", released)
        return released

    async def get(self, refund_key: str) -> Optional[RefundFailure]:
        async def _operation() -> Optional[RefundFailure]:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(CreditRefundFailure).where(CreditRefundFailure.refund_key == refund_key)
                )
                row = result.scalar_one_or_none()
                return RefundFailure.from_row(row) if row else None

        return await self._circuit.execute_read("credits.refundFailures.get", _operation)

    async def list_by_status(self, status: str, limit: int = 50) -> List[RefundFailure]:
        async def _operation() -> List[RefundFailure]:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(CreditRefundFailure)
                    .where(CreditRefundFailure.status == status)
                    .order_by(CreditRefundFailure.updated_at.asc())
                    .limit(max(int(limit), 1))
                )
                return [RefundFailure.from_row(row) for row in result.scalars().all()]

        return await self._circuit.execute_read("credits.refundFailures.list", _operation)

    async def count_by_status(self) -> Dict[str, int]:
        async def _operation() -> Dict[str, int]:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(CreditRefundFailure.status, func.count()).group_by(CreditRefundFailure.status)
                )
                return {status: int(count) for status, count in result.all()}

        return await self._circuit.execute_read("credits.refundFailures.count", _operation)

    async def _transition(
        self,
        refund_key: str,
        *,
        expected_status: Optional[str],
        values: Dict[str, Any],
        operation_name: str,
    ) -> bool:
        async def _operation() -> bool:
            async with self._session_maker() as session:
                async with session.begin():
                    statement = update(CreditRefundFailure).where(CreditRefundFailure.refund_key == refund_key)
                    if expected_status is not None:
                        statement = statement.where(CreditRefundFailure.status == expected_status)
                    result = await session.execute(
                        statement.values(**values).execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1

        return await self._circuit.execute_write(operation_name, _operation)
