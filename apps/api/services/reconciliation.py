"""Audit user balances against the credit transaction ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import dialect_insert
from models.credit_transaction import CreditTransaction
from models.reconciliation import (
    INCREMENTAL_CHECKPOINT_ID,
    ReconciliationAdjustment,
    ReconciliationCheckpoint,
)
from models.user import User
from services.store_circuit import StoreCircuitExecutor

logger = logging.getLogger(__name__)

SCOPE_INCREMENTAL = "incremental"
SCOPE_FULL = "full"

ADJUSTMENT_AUTO_APPLIED = "auto_applied"
ADJUSTMENT_PENDING_APPROVAL = "pending_approval"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconciliationRunResult:
    scope: str
    scanned_items: int = 0
    processed_users: int = 0
    positive_corrections: int = 0
    negative_corrections: int = 0
    checkpoint_updated: bool = False


class CreditReconciliationService:
    """
    Compares each user's `credits` with the sum of their ledger entries.

    - ledger > balance: credits were lost; the difference is restored
      automatically through a compare-and-set correction.
    - ledger < balance: credits may have been over-granted; the adjustment is
      queued for manual approval and nothing is deducted.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        ledger,
        store_circuit: StoreCircuitExecutor,
        *,
        incremental_scan_limit: int = 500,
        full_pass_page_size: int = 200,
        metrics=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self.ledger = ledger
        self._circuit = store_circuit
        self.incremental_scan_limit = max(int(incremental_scan_limit), 1)
        self.full_pass_page_size = max(int(full_pass_page_size), 1)
        self.metrics = metrics
        self._clock = clock

    async def run_incremental_pass(self) -> ReconciliationRunResult:
        result = ReconciliationRunResult(scope=SCOPE_INCREMENTAL)
        checkpoint = await self._load_checkpoint()

        async def _scan() -> List[Tuple[str, str, datetime]]:
            async with self._session_maker() as session:
                query = select(CreditTransaction.id, CreditTransaction.user_id, CreditTransaction.created_at)
                if checkpoint is not None:
                    last_created_at, last_id = checkpoint
                    query = query.where(
                        or_(
                            CreditTransaction.created_at > last_created_at,
                            and_(
                                CreditTransaction.created_at == last_created_at,
                                CreditTransaction.id > last_id,
                            ),
                        )
                    )
                rows = await session.execute(
                    query.order_by(CreditTransaction.created_at.asc(), CreditTransaction.id.asc()).limit(
                        self.incremental_scan_limit
                    )
                )
                return [tuple(row) for row in rows.all()]

        transactions = await self._circuit.execute_read("credits.reconciliation.scanIncremental", _scan)
        if not transactions:
            return result

        impacted: List[str] = []
        seen: Set[str] = set()
        for _, user_id, _ in transactions:
            if user_id not in seen:
                seen.add(user_id)
                impacted.append(user_id)

        for user_id in impacted:
            diff = await self._reconcile_user(user_id, SCOPE_INCREMENTAL)
            self._count(result, diff)

        last_id, _, last_created_at = transactions[-1]
        await self._store_checkpoint(last_created_at, last_id)
        result.scanned_items = len(transactions)
        result.processed_users = len(impacted)
        result.checkpoint_updated = True
        return result

    async def run_full_pass(self) -> ReconciliationRunResult:
        result = ReconciliationRunResult(scope=SCOPE_FULL)
        cursor: Optional[str] = None

        while True:

            async def _page(after: Optional[str] = cursor) -> List[str]:
                async with self._session_maker() as session:
                    query = select(User.id).order_by(User.id.asc()).limit(self.full_pass_page_size)
                    if after is not None:
                        query = query.where(User.id > after)
                    rows = await session.execute(query)
                    return list(rows.scalars().all())

            user_ids = await self._circuit.execute_read("credits.reconciliation.scanUsers", _page)
            if not user_ids:
                break

            for user_id in user_ids:
                result.scanned_items += 1
                diff = await self._reconcile_user(user_id, SCOPE_FULL)
                if diff is None:
                    continue
                result.processed_users += 1
                self._count(result, diff)

            if len(user_ids) < self.full_pass_page_size:
                break
            cursor = user_ids[-1]

        return result

    async def _reconcile_user(self, user_id: str, scope: str) -> Optional[int]:
        async def _read() -> Optional[Tuple[int, int]]:
            async with self._session_maker() as session:
                ledger_sum = (
                    select(func.coalesce(func.sum(CreditTransaction.delta_credits), 0))
                    .where(CreditTransaction.user_id == user_id)
                    .scalar_subquery()
                )
                row = (await session.execute(select(User.credits, ledger_sum).where(User.id == user_id))).first()
                if row is None:
                    return None
                return int(row[0] or 0), int(row[1] or 0)

        snapshot = await self._circuit.execute_read("credits.reconciliation.readUser", _read)
        if snapshot is None:
            return None

        current_balance, ledger_balance = snapshot
        diff = ledger_balance - current_balance
        if diff == 0:
            return 0

        if diff > 0:
            applied = await self.ledger.apply_correction(user_id, current_balance, diff)
            if not applied:
                # Balance moved since the read; the next pass re-evaluates.
                logger.info("Skipped reconciliation correction for user=%s; balance changed concurrently", user_id)
                return 0
            await self._record_adjustment(
                user_id, scope, current_balance, ledger_balance, diff, ADJUSTMENT_AUTO_APPLIED, False
            )
            logger.warning(
                "Applied positive credit reconciliation correction user=%s balance=%s ledger=%s diff=%s",
                user_id,
                current_balance,
                ledger_balance,
                diff,
            )
            self._alert("credit_reconciliation_positive_correction", user_id, diff, scope)
            return diff

        await self._record_adjustment(
            user_id, scope, current_balance, ledger_balance, diff, ADJUSTMENT_PENDING_APPROVAL, True
        )
        logger.warning(
            "Queued negative credit reconciliation correction for manual approval user=%s balance=%s ledger=%s diff=%s",
            user_id,
            current_balance,
            ledger_balance,
            diff,
        )
        self._alert("credit_reconciliation_negative_correction_queued", user_id, diff, scope)
        return diff

    async def list_pending_adjustments(self, limit: int = 100) -> List[ReconciliationAdjustment]:
        async def _operation() -> List[ReconciliationAdjustment]:
            async with self._session_maker() as session:
                rows = await session.execute(
                    select(ReconciliationAdjustment)
                    .where(ReconciliationAdjustment.status == ADJUSTMENT_PENDING_APPROVAL)
                    .order_by(ReconciliationAdjustment.created_at.asc())
                    .limit(max(int(limit), 1))
                )
                return list(rows.scalars().all())

        return await self._circuit.execute_read("credits.reconciliation.listPending", _operation)

    async def _load_checkpoint(self) -> Optional[Tuple[datetime, str]]:
        async def _operation() -> Optional[Tuple[datetime, str]]:
            async with self._session_maker() as session:
                row = await session.get(ReconciliationCheckpoint, INCREMENTAL_CHECKPOINT_ID)
                if row is None or row.last_created_at is None or not row.last_transaction_id:
                    return None
                return row.last_created_at, row.last_transaction_id

        return await self._circuit.execute_read("credits.reconciliation.loadCheckpoint", _operation)

    async def _store_checkpoint(self, last_created_at: datetime, last_transaction_id: str) -> None:
        now = self._clock()

        async def _operation() -> None:
            async with self._session_maker() as session:
                async with session.begin():
                    statement = dialect_insert(session, ReconciliationCheckpoint.__table__).values(
                        id=INCREMENTAL_CHECKPOINT_ID,
                        last_created_at=last_created_at,
                        last_transaction_id=last_transaction_id,
                        updated_at=now,
                    )
                    await session.execute(
                        statement.on_conflict_do_update(
                            index_elements=["id"],
                            set_={
                                "last_created_at": statement.excluded.last_created_at,
                                "last_transaction_id": statement.excluded.last_transaction_id,
                                "updated_at": now,
                            },
                        )
                    )

        await self._circuit.execute_write("credits.reconciliation.storeCheckpoint", _operation)

    async def _record_adjustment(
        self,
        user_id: str,
        scope: str,
        current_balance: int,
        ledger_balance: int,
        diff: int,
        status: str,
        requires_manual_approval: bool,
    ) -> None:
        now = self._clock()

        async def _operation() -> None:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(
                        ReconciliationAdjustment(
                            user_id=user_id,
                            scope=scope,
                            current_balance=current_balance,
                            ledger_balance=ledger_balance,
                            diff=diff,
                            status=status,
                            requires_manual_approval=requires_manual_approval,
                            created_at=now,
                            updated_at=now,
                        )
                    )

        await self._circuit.execute_write("credits.reconciliation.recordAdjustment", _operation)

    def _alert(self, name: str, user_id: str, diff: int, scope: str) -> None:
        if self.metrics is not None:
            self.metrics.record_alert(name, {"user_id": user_id, "diff": diff, "scope": scope})

    @staticmethod
    def _count(result: ReconciliationRunResult, diff: Optional[int]) -> None:
        if diff is None:
            return
        if diff > 0:
            result.positive_corrections += 1
        elif diff < 0:
            result.negative_corrections += 1
