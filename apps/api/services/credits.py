"""Credit ledger: atomic reserve/refund/balance operations over the users table."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import dialect_insert
from models.credit_transaction import CreditTransaction
from models.user import User
from services.billing_errors import LedgerUnavailableError, StoreCircuitOpenError
from services.store_circuit import StoreCircuitExecutor

logger = logging.getLogger(__name__)

ENTRY_STARTER_GRANT = "starter_grant"
ENTRY_RESERVE = "reserve"
ENTRY_REFUND = "refund"
ENTRY_PURCHASE = "purchase"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerService:
    """
    Authoritative credit balance operations.

    Every balance change is a guarded single-statement increment executed in
    the same database transaction as its `credit_transactions` row, so the
    balance and the ledger can only drift through out-of-band writes (which
    reconciliation repairs). Multiple API processes may run this concurrently;
    correctness relies on the database, never on in-process locks.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store_circuit: StoreCircuitExecutor,
        *,
        starter_credits: int = 0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self._circuit = store_circuit
        self.starter_credits = max(int(starter_credits), 0)
        self._clock = clock

    async def reserve(self, user_id: str, cost: int) -> bool:
        """Deduct `cost` credits if and only if the balance covers it."""
        cost = int(cost)
        if cost < 0:
            raise ValueError("cost must be non-negative")
        if cost == 0:
            return True

        async def _operation() -> bool:
            async with self._session_maker() as session:
                async with session.begin():
                    await self._ensure_account(session, user_id)
                    result = await session.execute(
                        update(User)
                        .where(User.id == user_id, User.credits >= cost)
                        .values(credits=User.credits - cost, updated_at=self._clock())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        return False
                    balance_after = await self._read_balance(session, user_id)
                    session.add(
                        CreditTransaction(
                            user_id=user_id,
                            entry_type=ENTRY_RESERVE,
                            delta_credits=-cost,
                            balance_after=balance_after,
                            reason="reservation",
                            created_at=self._clock(),
                        )
                    )
                    return True

        reserved = await self._run_write("credits.reserve", user_id, _operation)
        if not reserved:
            logger.info("Credit reservation rejected for user=%s cost=%s (insufficient credits)", user_id, cost)
        return reserved

    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        refund_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Credit `amount` back. Idempotent per `refund_key`."""
        amount = int(amount)
        if amount <= 0:
            logger.warning("Ignoring non-positive refund for user=%s amount=%s key=%s", user_id, amount, refund_key)
            return False

        async def _operation() -> bool:
            async with self._session_maker() as session:
                async with session.begin():
                    if refund_key and await self._transaction_exists(session, refund_key):
                        logger.info("Refund %s already applied for user=%s; skipping", refund_key, user_id)
                        return True
                    await self._ensure_account(session, user_id)
                    await self._increment(session, user_id, amount)
                    session.add(
                        CreditTransaction(
                            user_id=user_id,
                            entry_type=ENTRY_REFUND,
                            delta_credits=amount,
                            balance_after=await self._read_balance(session, user_id),
                            reason=reason,
                            idempotency_key=refund_key,
                            created_at=self._clock(),
                        )
                    )
                    return True

        try:
            return await self._run_write("credits.refund", user_id, _operation)
        except IntegrityError:
            # A concurrent refund with the same key committed first.
            logger.info("Refund %s raced a duplicate for user=%s; treating as applied", refund_key, user_id)
            return True

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        *,
        entry_type: str = ENTRY_PURCHASE,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Grant purchased credits and return the resulting balance."""
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be greater than 0")

        async def _operation() -> int:
            async with self._session_maker() as session:
                async with session.begin():
                    if idempotency_key and await self._transaction_exists(session, idempotency_key):
                        return await self._read_balance(session, user_id)
                    await self._ensure_account(session, user_id)
                    await self._increment(session, user_id, amount)
                    balance_after = await self._read_balance(session, user_id)
                    session.add(
                        CreditTransaction(
                            user_id=user_id,
                            entry_type=entry_type,
                            delta_credits=amount,
                            balance_after=balance_after,
                            reason=reason,
                            idempotency_key=idempotency_key,
                            created_at=self._clock(),
                        )
                    )
                    return balance_after

        try:
            return await self._run_write("credits.add", user_id, _operation)
        except IntegrityError:
            return await self.get_balance(user_id)

    async def get_balance(self, user_id: str) -> int:
        async def _operation() -> int:
            async with self._session_maker() as session:
                return await self._read_balance(session, user_id)

        return await self._run_read("credits.getBalance", user_id, _operation)

    async def get_summary(self, user_id: str, limit: int = 30) -> Dict[str, Any]:
        async def _operation() -> Dict[str, Any]:
            async with self._session_maker() as session:
                balance = await self._read_balance(session, user_id)
                result = await session.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.user_id == user_id)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                    .limit(max(int(limit), 1))
                )
                entries = result.scalars().all()
                return {
                    "balance": balance,
                    "recent_entries": [
                        {
                            "id": entry.id,
                            "entry_type": entry.entry_type,
                            "delta_credits": entry.delta_credits,
                            "balance_after": entry.balance_after,
                            "reason": entry.reason,
                            "created_at": entry.created_at.isoformat() if entry.created_at else None,
                        }
                        for entry in entries
                    ],
                }

        return await self._run_read("credits.getSummary", user_id, _operation)

    async def apply_correction(self, user_id: str, expected_balance: int, diff: int) -> bool:
        """Compare-and-set balance correction used by reconciliation only."""

        async def _operation() -> bool:
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(User)
                        .where(User.id == user_id, User.credits == int(expected_balance))
                        .values(credits=User.credits + int(diff), updated_at=self._clock())
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1

        return await self._run_write("credits.applyCorrection", user_id, _operation)

    async def _ensure_account(self, session: AsyncSession, user_id: str) -> None:
        now = self._clock()
        result = await session.execute(
            dialect_insert(session, User.__table__)
            .values(id=user_id, credits=self.starter_credits, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        if result.rowcount == 1 and self.starter_credits > 0:
            session.add(
                CreditTransaction(
                    user_id=user_id,
                    entry_type=ENTRY_STARTER_GRANT,
                    delta_credits=self.starter_credits,
                    balance_after=self.starter_credits,
                    reason="Starter credits grant",
                    created_at=now,
                )
            )

    async def _increment(self, session: AsyncSession, user_id: str, amount: int) -> None:
        await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def _read_balance(session: AsyncSession, user_id: str) -> int:
        result = await session.execute(select(func.coalesce(User.credits, 0)).where(User.id == user_id))
        return int(result.scalar() or 0)

    @staticmethod
    async def _transaction_exists(session: AsyncSession, idempotency_key: str) -> bool:
        result = await session.execute(
            select(CreditTransaction.id).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none() is not None

    async def _run_write(self, operation_name: str, user_id: str, operation):
        try:
            return await self._circuit.execute_write(operation_name, operation)
        except IntegrityError:
            raise
        except (SQLAlchemyError, StoreCircuitOpenError, OSError) as exc:
            logger.error("Ledger write %s failed for user=%s: %s", operation_name, user_id, exc)
            raise LedgerUnavailableError(operation=operation_name) from exc

    async def _run_read(self, operation_name: str, user_id: str, operation):
        try:
            return await self._circuit.execute_read(operation_name, operation)
        except (SQLAlchemyError, StoreCircuitOpenError, OSError) as exc:
            logger.error("Ledger read %s failed for user=%s: %s", operation_name, user_id, exc)
            raise LedgerUnavailableError(operation=operation_name) from exc
