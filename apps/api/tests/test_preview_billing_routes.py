import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from config import settings
from main import create_app
from models.credit_refund_failure import REFUND_STATUS_PENDING
from routers.rate_limit import consume_quota
from services.billing_errors import LedgerUnavailableError
from services.generation import BaseGenerationProvider, GenerationProviderError, GenerationResult
from services.session_token import create_session_token


PREVIEW_USER_ID = "preview-user"
OTHER_USER_ID = "preview-user-other"
PREVIEW_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(PREVIEW_USER_ID)['token']}"}


class _FakeProvider(BaseGenerationProvider):
    provider_name = "fake"

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls = []
        self.gate = asyncio.Event()
        self.gate.set()

    async def generate(self, request):
        self.calls.append(request)
        await self.gate.wait()
        if self.fail:
            raise GenerationProviderError("provider down")
        return GenerationResult(asset_url="https://cdn.example.com/preview.webp", provider="fake")


@pytest_asyncio.fixture
async def preview_app(session_maker):
    provider = _FakeProvider()
    app = create_app(settings, session_maker=session_maker, generation_provider=provider)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, app, provider
    app.state.coalescer.clear()


@pytest_asyncio.fixture
async def topup_app(session_maker):
    app_settings = settings.model_copy(update={"MANUAL_TOPUP_ENABLED": True})
    app = create_app(app_settings, session_maker=session_maker, generation_provider=_FakeProvider())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, app
    app.state.coalescer.clear()


@pytest.mark.asyncio
async def test_preview_generation_charges_credits(preview_app):
    client, app, provider = preview_app

    response = await client.post("/preview/generate", json={"prompt": "neon alley"}, headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["asset_url"] == "https://cdn.example.com/preview.webp"
    assert body["credits_charged"] == settings.CREDIT_COST_PREVIEW_IMAGE
    assert response.headers["x-credits-charged"] == str(settings.CREDIT_COST_PREVIEW_IMAGE)
    assert len(provider.calls) == 1

    balance = await app.state.billing.ledger.get_balance(PREVIEW_USER_ID)
    assert balance == settings.FREE_TIER_STARTER_CREDITS - settings.CREDIT_COST_PREVIEW_IMAGE


@pytest.mark.asyncio
async def test_preview_requires_session_token(preview_app):
    client, _, provider = preview_app

    response = await client.post("/preview/generate", json={"prompt": "neon alley"})

    assert response.status_code == 401
    assert provider.calls == []


@pytest.mark.asyncio
async def test_insufficient_credits_never_calls_provider(preview_app):
    client, app, provider = preview_app
    ledger = app.state.billing.ledger
    assert await ledger.reserve(PREVIEW_USER_ID, settings.FREE_TIER_STARTER_CREDITS) is True

    response = await client.post(
        "/preview/generate", json={"prompt": "neon alley", "mode": "video"}, headers=PREVIEW_AUTH_HEADER
    )

    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "INSUFFICIENT_CREDITS"
    assert provider.calls == []
    assert await ledger.get_balance(PREVIEW_USER_ID) == 0


@pytest.mark.asyncio
async def test_provider_failure_refunds_reserved_credits(preview_app):
    client, app, provider = preview_app
    provider.fail = True

    response = await client.post(
        "/preview/generate",
        json={"prompt": "neon alley"},
        headers={**PREVIEW_AUTH_HEADER, "x-request-id": "req-preview-1"},
    )

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["code"] == "GENERATION_FAILED"
    assert detail["details"]["refund"] == "refunded"
    assert detail["details"]["request_id"] == "req-preview-1"
    assert detail["details"]["refund_key"].startswith("refund_")
    assert await app.state.billing.ledger.get_balance(PREVIEW_USER_ID) == settings.FREE_TIER_STARTER_CREDITS


@pytest.mark.asyncio
async def test_failed_refund_is_queued_for_sweeper(preview_app):
    client, app, provider = preview_app
    provider.fail = True
    billing = app.state.billing

    with patch.object(billing.ledger, "refund", AsyncMock(side_effect=LedgerUnavailableError())):
        response = await client.post(
            "/preview/generate",
            json={"prompt": "neon alley"},
            headers={**PREVIEW_AUTH_HEADER, "x-request-id": "req-preview-2"},
        )

    assert response.status_code == 502
    assert response.json()["detail"]["details"]["refund"] == "queued"
    record = await billing.failure_store.get(response.json()["detail"]["details"]["refund_key"])
    assert record.status == REFUND_STATUS_PENDING
    assert record.amount == settings.CREDIT_COST_PREVIEW_IMAGE
    assert record.metadata["request_id"] == "req-preview-2"

    result = await billing.refund_sweeper.run_once()
    assert result.resolved == 1
    assert await billing.ledger.get_balance(PREVIEW_USER_ID) == settings.FREE_TIER_STARTER_CREDITS


@pytest.mark.asyncio
async def test_reused_request_id_refunds_every_failed_charge(preview_app):
    client, app, provider = preview_app
    provider.fail = True
    headers = {**PREVIEW_AUTH_HEADER, "x-request-id": "client-retry-id"}

    first = await client.post("/preview/generate", json={"prompt": "neon alley"}, headers=headers)
    second = await client.post("/preview/generate", json={"prompt": "neon alley at dawn"}, headers=headers)

    assert [first.status_code, second.status_code] == [502, 502]
    assert len(provider.calls) == 2
    first_key = first.json()["detail"]["details"]["refund_key"]
    second_key = second.json()["detail"]["details"]["refund_key"]
    assert first_key != second_key
    assert await app.state.billing.ledger.get_balance(PREVIEW_USER_ID) == settings.FREE_TIER_STARTER_CREDITS


@pytest.mark.asyncio
async def test_reservation_is_retried_once_then_503(preview_app):
    client, app, provider = preview_app
    reserve = AsyncMock(side_effect=LedgerUnavailableError(operation="credits.reserve"))

    with patch.object(app.state.billing.ledger, "reserve", reserve):
        response = await client.post("/preview/generate", json={"prompt": "neon alley"}, headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "LEDGER_UNAVAILABLE"
    assert reserve.await_count == 2
    assert provider.calls == []


@pytest.mark.asyncio
async def test_reservation_retry_can_succeed(preview_app):
    client, app, provider = preview_app
    reserve = AsyncMock(side_effect=[LedgerUnavailableError(), True])

    with patch.object(app.state.billing.ledger, "reserve", reserve):
        response = await client.post("/preview/generate", json={"prompt": "neon alley"}, headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 200
    assert reserve.await_count == 2


@pytest.mark.asyncio
async def test_duplicate_concurrent_previews_charge_once(preview_app):
    client, app, provider = preview_app
    provider.gate.clear()

    first = asyncio.create_task(
        client.post("/preview/generate", json={"prompt": "neon alley", "mode": "image"}, headers=PREVIEW_AUTH_HEADER)
    )
    for _ in range(200):
        if provider.calls:
            break
        await asyncio.sleep(0.01)
    second = asyncio.create_task(
        client.post("/preview/generate", json={"mode": "image", "prompt": "neon alley"}, headers=PREVIEW_AUTH_HEADER)
    )
    for _ in range(200):
        if app.state.coalescer.get_stats()["coalesced"]:
            break
        await asyncio.sleep(0.01)
    provider.gate.set()
    responses = await asyncio.gather(first, second)

    assert [response.status_code for response in responses] == [200, 200]
    assert responses[0].json() == responses[1].json()
    assert len(provider.calls) == 1
    balance = await app.state.billing.ledger.get_balance(PREVIEW_USER_ID)
    assert balance == settings.FREE_TIER_STARTER_CREDITS - settings.CREDIT_COST_PREVIEW_IMAGE


@pytest.mark.asyncio
async def test_credits_summary_and_topup(topup_app):
    client, _ = topup_app

    topup = await client.post(
        "/billing/topup",
        json={"credits": 40, "billing_reference": "invoice-7"},
        headers=PREVIEW_AUTH_HEADER,
    )
    repeat = await client.post(
        "/billing/topup",
        json={"credits": 40, "billing_reference": "invoice-7"},
        headers=PREVIEW_AUTH_HEADER,
    )
    summary = await client.get("/billing/credits", headers=PREVIEW_AUTH_HEADER)

    assert topup.status_code == 200
    assert topup.json()["balance_after"] == settings.FREE_TIER_STARTER_CREDITS + 40
    assert repeat.json()["balance_after"] == settings.FREE_TIER_STARTER_CREDITS + 40
    assert summary.status_code == 200
    assert summary.json()["balance"] == settings.FREE_TIER_STARTER_CREDITS + 40
    assert len(summary.json()["recent_entries"]) == 2


@pytest.mark.asyncio
async def test_manual_topup_is_disabled_by_default(preview_app):
    client, app, _ = preview_app

    response = await client.post("/billing/topup", json={"credits": 10000}, headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 403
    assert await app.state.billing.ledger.get_balance(PREVIEW_USER_ID) == 0


@pytest.mark.asyncio
async def test_manual_topup_refuses_billing_without_stripe(session_maker):
    app_settings = settings.model_copy(update={"MANUAL_TOPUP_ENABLED": True, "BILLING_ENABLED": True})
    app = create_app(app_settings, session_maker=session_maker, generation_provider=_FakeProvider())

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/billing/topup", json={"credits": 5}, headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 503
    assert await app.state.billing.ledger.get_balance(PREVIEW_USER_ID) == 0


@pytest.mark.asyncio
async def test_credits_summary_rejects_cross_user_scope(preview_app):
    client, _, _ = preview_app

    response = await client.get(f"/billing/credits?user_id={OTHER_USER_ID}", headers=PREVIEW_AUTH_HEADER)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_write_gate_rejects_writes_while_circuit_is_open(preview_app):
    client, app, provider = preview_app
    circuit = app.state.store_circuit

    async def _broken():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    for _ in range(circuit.failure_threshold):
        with pytest.raises(OperationalError):
            await circuit.execute_write("test.broken", _broken, retries=0)

    response = await client.post("/preview/generate", json={"prompt": "neon alley"}, headers=PREVIEW_AUTH_HEADER)
    ready = await client.get("/health/ready")
    live = await client.get("/health/live")

    assert response.status_code == 503
    assert response.json()["code"] == "WRITES_TEMPORARILY_UNAVAILABLE"
    assert int(response.headers["retry-after"]) >= 1
    assert provider.calls == []
    assert ready.status_code == 503
    assert live.status_code == 200


@pytest.mark.asyncio
async def test_health_and_metrics_expose_billing_state(preview_app):
    client, app, _ = preview_app
    app.state.metrics.record_alert("credit_refund_escalated", {"refund_key": "refund_x"})

    health = await client.get("/health")
    metrics = await client.get("/metrics")

    assert health.status_code == 200
    payload = health.json()
    assert payload["database"] == "up"
    assert payload["store_circuit"]["state"] == "closed"
    assert set(payload["workers"]) == {"credit_refund_sweeper", "credit_reconciliation_worker"}
    assert "active_pending" in payload["coalescing"]
    assert metrics.status_code == 200
    assert 'alerts_total{alert="credit_refund_escalated"} 1.0' in metrics.text


@pytest.mark.asyncio
async def test_topup_quota_resets_after_window():
    key = "vpb:rate:test_topup_window:10.0.0.9"

    assert await consume_quota(key, limit=2, window_seconds=60, now=1000.0) is True
    assert await consume_quota(key, limit=2, window_seconds=60, now=1001.0) is True
    assert await consume_quota(key, limit=2, window_seconds=60, now=1002.0) is False
    assert await consume_quota(key, limit=2, window_seconds=60, now=1061.0) is True
