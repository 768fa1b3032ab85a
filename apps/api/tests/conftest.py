from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
import models  # noqa: F401
from services.credits import CreditLedgerService
from services.metrics import MetricsService
from services.refund_failures import RefundFailureStore
from services.store_circuit import StoreCircuitExecutor


class FakeClock:
    """Deterministic wall clock for stores and workers."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsService()


@pytest.fixture
def store_circuit(metrics):
    return StoreCircuitExecutor(
        failure_threshold=5,
        reset_timeout_seconds=15,
        max_retries=2,
        retry_base_delay_seconds=0,
        retry_jitter_seconds=0,
        metrics=metrics,
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 10})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest.fixture
def ledger(session_maker, store_circuit, clock):
    return CreditLedgerService(session_maker, store_circuit, starter_credits=25, clock=clock)


@pytest.fixture
def failure_store(session_maker, store_circuit, metrics, clock):
    return RefundFailureStore(session_maker, store_circuit, metrics=metrics, clock=clock)
