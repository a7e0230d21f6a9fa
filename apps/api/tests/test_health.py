import pytest

from config import settings


@pytest.mark.asyncio
async def test_liveness_and_root(ledger_client):
    client, _ = ledger_client

    live = await client.get("/health/live")
    root = await client.get("/")

    assert live.json() == {"alive": True}
    assert root.json()["status"] == "running"


@pytest.mark.asyncio
async def test_readiness_reports_missing_secrets(ledger_client, monkeypatch):
    client, _ = ledger_client

    ready = await client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"ready": True}

    monkeypatch.setattr(settings, "APP_MASTER_KEY", "")
    not_ready = await client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["missing"] == ["APP_MASTER_KEY"]


def test_payment_settings_validation_rejects_weak_master_key(monkeypatch):
    from config import validate_payment_settings

    validate_payment_settings()
    monkeypatch.setattr(settings, "APP_MASTER_KEY", "short")
    with pytest.raises(ValueError):
        validate_payment_settings()
