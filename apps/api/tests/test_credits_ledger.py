import asyncio

import pytest
from sqlalchemy import select, update

from conftest import MASTER_KEY
from models.client import Client
from models.credit_log import CreditLogEntry
from services.credits import check_ledger_integrity, grant_credits, spend_credits
from services.errors import InsufficientFunds, NotFoundError, ValidationError

ADMIN_HEADERS = {"X-App-Master-Key": MASTER_KEY}


async def _grant(client, client_id, amount):
    response = await client.post(
        "/admin/credits/add",
        json={"client_id": client_id, "amount": amount, "reason": "test_topup"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_admin_grant_creates_client_and_logs_entry(ledger_client):
    client, session_maker = ledger_client

    assert await _grant(client, "c1", 100) == {"success": True, "new_balance": 100}
    assert await _grant(client, "c1", 25) == {"success": True, "new_balance": 125}

    async with session_maker() as session:
        entries = (
            await session.execute(select(CreditLogEntry).order_by(CreditLogEntry.balance_before.asc()))
        ).scalars().all()
    assert [(e.delta, e.balance_before, e.balance_after) for e in entries] == [(100, 0, 100), (25, 100, 125)]
    assert {e.source for e in entries} == {"admin"}
    assert entries[0].reason == "test_topup"


@pytest.mark.asyncio
async def test_admin_endpoints_require_master_key(ledger_client, monkeypatch):
    client, _ = ledger_client

    missing = await client.post("/admin/credits/add", json={"client_id": "c1", "amount": 5})
    wrong = await client.post(
        "/admin/credits/add",
        json={"client_id": "c1", "amount": 5},
        headers={"X-App-Master-Key": "nope"},
    )
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["error"] == "unauthorized"

    from config import settings

    monkeypatch.setattr(settings, "APP_MASTER_KEY", "")
    unset = await client.post("/admin/credits/add", json={"client_id": "c1", "amount": 5}, headers=ADMIN_HEADERS)
    assert unset.status_code == 500
    assert unset.json()["error"] == "server_misconfigured"


@pytest.mark.asyncio
async def test_spend_decrements_and_rejects_overdraft(ledger_client):
    client, _ = ledger_client
    await _grant(client, "c1", 50)

    spent = await client.post("/credits/use", json={"client_id": "c1", "amount": 20})
    assert spent.status_code == 200
    assert spent.json() == {"success": True, "new_balance": 30}

    overdraft = await client.post("/credits/use", json={"client_id": "c1", "amount": 31})
    assert overdraft.status_code == 402
    body = overdraft.json()
    assert body["success"] is False
    assert body["error"] == "insufficient_funds"
    assert body["balance"] == 30

    balance = await client.get("/credits", params={"client_id": "c1"})
    assert balance.json()["credits"] == 30


@pytest.mark.asyncio
async def test_spend_to_exactly_zero_is_allowed(ledger_client):
    client, _ = ledger_client
    await _grant(client, "c1", 10)

    spent = await client.post("/credits/use", json={"client_id": "c1", "amount": 10})

    assert spent.json() == {"success": True, "new_balance": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", 1.5, True, None])
async def test_spend_rejects_non_positive_or_non_integer_amounts(ledger_client, amount):
    client, _ = ledger_client
    await _grant(client, "c1", 10)

    response = await client.post("/credits/use", json={"client_id": "c1", "amount": amount})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_amount"
    balance = await client.get("/credits", params={"client_id": "c1"})
    assert balance.json()["credits"] == 10


@pytest.mark.asyncio
async def test_spend_for_unknown_client_is_not_found(ledger_client):
    client, _ = ledger_client

    response = await client.post("/credits/use", json={"client_id": "ghost", "amount": 1})

    assert response.status_code == 404
    assert response.json()["error"] == "customer_not_found"


@pytest.mark.asyncio
async def test_balance_lookup_errors(ledger_client):
    client, _ = ledger_client

    missing_id = await client.get("/credits")
    unknown = await client.get("/credits", params={"client_id": "ghost"})

    assert missing_id.status_code == 400
    assert missing_id.json()["error"] == "missing_client_id"
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "customer_not_found"


@pytest.mark.asyncio
async def test_concurrent_spends_never_overdraw(ledger_client):
    client, session_maker = ledger_client
    await _grant(client, "c1", 100)

    responses = await asyncio.gather(
        *[client.post("/credits/use", json={"client_id": "c1", "amount": 30}) for _ in range(5)]
    )

    statuses = sorted(r.status_code for r in responses)
    assert statuses == [200, 200, 200, 402, 402]
    balance = await client.get("/credits", params={"client_id": "c1"})
    assert balance.json()["credits"] == 10

    async with session_maker() as session:
        report = await check_ledger_integrity(session, "c1")
    assert report.ok, report.problems


@pytest.mark.asyncio
async def test_history_lists_newest_first(ledger_client):
    client, _ = ledger_client
    await _grant(client, "c1", 40)
    await client.post("/credits/use", json={"client_id": "c1", "amount": 15, "reason": "report"})

    response = await client.get("/credits/history", params={"client_id": "c1", "limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["credits"] == 25
    assert [entry["delta"] for entry in body["entries"]] == [-15, 40]
    assert body["entries"][0]["source"] == "spend"
    assert body["entries"][0]["reason"] == "report"


@pytest.mark.asyncio
async def test_integrity_endpoint_flags_tampered_balance(ledger_client):
    client, session_maker = ledger_client
    await _grant(client, "c1", 60)
    await client.post("/credits/use", json={"client_id": "c1", "amount": 10})

    healthy = await client.get("/admin/credits/integrity", params={"client_id": "c1"}, headers=ADMIN_HEADERS)
    assert healthy.status_code == 200
    assert healthy.json()["ok"] is True
    assert healthy.json()["ledger_sum"] == 50
    assert healthy.json()["entries_checked"] == 2

    async with session_maker() as session:
        await session.execute(update(Client).where(Client.client_id == "c1").values(credits=999))
        await session.commit()

    tampered = await client.get("/admin/credits/integrity", params={"client_id": "c1"}, headers=ADMIN_HEADERS)
    assert tampered.json()["ok"] is False
    assert any("999" in problem for problem in tampered.json()["problems"])


@pytest.mark.asyncio
async def test_service_level_spend_and_grant(ledger_client):
    _, session_maker = ledger_client

    async with session_maker() as session:
        result = await grant_credits(session, "svc", "7", actor="ops", reason="goodwill")
        assert result.new_balance == 7
        assert result.balance_before == 0

        with pytest.raises(InsufficientFunds):
            await spend_credits(session, "svc", 8)
        with pytest.raises(ValidationError):
            await grant_credits(session, "svc", 0)
        with pytest.raises(NotFoundError):
            await spend_credits(session, "nobody", 1)

        result = await spend_credits(session, "svc", 7)
        assert result.new_balance == 0


@pytest.mark.asyncio
async def test_spend_rate_limit_falls_back_to_local_counters(ledger_client):
    import redis.asyncio as redis
    from unittest.mock import AsyncMock, patch

    from main import app
    from routers import credits as credits_router
    from routers.rate_limit import rate_limit

    client, _ = ledger_client
    await _grant(client, "c1", 100)
    app.state.disable_rate_limits = False
    app.dependency_overrides[credits_router.limit_spends] = rate_limit("credits_use_test", limit=2, window_seconds=60)
    try:
        with patch("routers.rate_limit._redis_hit", AsyncMock(side_effect=redis.ConnectionError("down"))):
            responses = [
                await client.post("/credits/use", json={"client_id": "c1", "amount": 1}) for _ in range(3)
            ]
    finally:
        app.dependency_overrides.pop(credits_router.limit_spends, None)

    assert [r.status_code for r in responses] == [200, 200, 429]
    assert responses[2].json()["error"] == "rate_limited"
    assert int(responses[2].headers["Retry-After"]) >= 1


async def _spend_with_forwarded_for(client, addresses):
    import redis.asyncio as redis
    from unittest.mock import AsyncMock, patch

    from main import app
    from routers import credits as credits_router
    from routers.rate_limit import rate_limit

    app.state.disable_rate_limits = False
    app.dependency_overrides[credits_router.limit_spends] = rate_limit("credits_use_xff", limit=2, window_seconds=60)
    try:
        with patch("routers.rate_limit._redis_hit", AsyncMock(side_effect=redis.ConnectionError("down"))):
            return [
                await client.post(
                    "/credits/use",
                    json={"client_id": "c1", "amount": 1},
                    headers={"X-Forwarded-For": address},
                )
                for address in addresses
            ]
    finally:
        app.dependency_overrides.pop(credits_router.limit_spends, None)


@pytest.mark.asyncio
async def test_rotating_forwarded_for_does_not_reset_the_spend_quota(ledger_client):
    client, _ = ledger_client
    await _grant(client, "c1", 100)

    responses = await _spend_with_forwarded_for(client, ["10.0.0.1", "10.0.0.2", "10.0.0.3"])

    assert [r.status_code for r in responses] == [200, 200, 429]


@pytest.mark.asyncio
async def test_forwarded_for_keys_the_quota_behind_a_trusted_proxy(ledger_client, monkeypatch):
    from config import settings

    client, _ = ledger_client
    await _grant(client, "c1", 100)
    # ASGITransport reports the peer as 127.0.0.1.
    monkeypatch.setattr(settings, "TRUSTED_PROXY_IPS", ["127.0.0.1"])

    spread = await _spend_with_forwarded_for(client, ["10.0.0.1", "10.0.0.2", "10.0.0.3"])
    repeated = await _spend_with_forwarded_for(client, ["10.0.0.9, 127.0.0.1"] * 3)

    assert [r.status_code for r in spread] == [200, 200, 200]
    assert [r.status_code for r in repeated] == [200, 200, 429]
