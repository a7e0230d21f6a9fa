import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from routers.admin import get_session_maker
from routers.deps import get_payment_provider
from services.paystack import VerificationResult

WEBHOOK_SECRET = "whsec_test_0123456789abcdef"
MASTER_KEY = "master-key-for-tests-0123456789"


class FakePaystack:
    """In-memory stand-in for PaystackClient; statuses are set per reference."""

    def __init__(self):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.verify_calls: List[str] = []
        self.initialized: List[Dict[str, Any]] = []
        self.charges: List[Dict[str, Any]] = []
        self.verify_error: Optional[Exception] = None

    def settle(self, reference: str, status: str = "success", amount: Optional[int] = None) -> None:
        self.transactions[reference] = {"status": status, "amount": amount}

    async def verify_transaction(self, reference: str) -> VerificationResult:
        self.verify_calls.append(reference)
        if self.verify_error is not None:
            raise self.verify_error
        tx = self.transactions.get(reference)
        if tx is None:
            return VerificationResult(reference=reference, status="not_found", raw={"status": False})
        return VerificationResult(
            reference=reference,
            status=tx["status"],
            amount_minor_units=tx["amount"],
            currency="KES",
            raw={"status": True, "data": {"reference": reference, "status": tx["status"], "amount": tx["amount"]}},
        )

    async def initialize_transaction(self, **kwargs) -> Dict[str, Any]:
        self.initialized.append(kwargs)
        return {
            "authorization_url": f"https://checkout.paystack.com/{kwargs['reference']}",
            "access_code": "ac_test",
            "reference": kwargs["reference"],
        }

    async def charge_mobile_money(self, **kwargs) -> Dict[str, Any]:
        self.charges.append(kwargs)
        return {
            "status": True,
            "message": "Charge attempted",
            "data": {"reference": kwargs["reference"], "status": "pay_offline", "display_text": "Check your phone"},
        }

    async def aclose(self) -> None:
        return None


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def charge_success_body(reference: str, event_id: Optional[str] = None, amount: int = 5000) -> bytes:
    payload: Dict[str, Any] = {
        "event": "charge.success",
        "data": {"id": 302961, "reference": reference, "status": "success", "amount": amount},
    }
    if event_id:
        payload["id"] = event_id
    return json.dumps(payload).encode("utf-8")


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._fallback.clear()
    yield
    rate_limit._fallback.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def payment_secrets(monkeypatch):
    monkeypatch.setattr(settings, "PAYSTACK_SECRET_KEY", "sk_test_0123456789abcdef")
    monkeypatch.setattr(settings, "PAYSTACK_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "APP_MASTER_KEY", MASTER_KEY)


@pytest.fixture(autouse=True)
def no_worker_enqueue():
    """Order creation schedules a worker drain; keep Redis out of the tests."""
    with patch("services.orders.enqueue_retry_drain") as enqueue:
        yield enqueue


@pytest.fixture
def fake_paystack():
    return FakePaystack()


@pytest_asyncio.fixture
async def ledger_client(tmp_path, fake_paystack):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: fake_paystack
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_provider, None)
    app.dependency_overrides.pop(get_session_maker, None)
    await engine.dispose()
