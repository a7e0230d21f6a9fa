import json

import httpx
import pytest

from services.errors import UpstreamError
from services.paystack import PaystackClient


def _client(handler):
    return PaystackClient(
        "sk_test_key",
        base_url="https://api.paystack.test",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_initialize_transaction_sends_bearer_and_returns_data():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x", "reference": "dc-1-ab"},
            },
        )

    client = _client(handler)
    try:
        data = await client.initialize_transaction(
            email="c1@example.com", amount_minor_units=5000, reference="dc-1-ab", metadata={"client_id": "c1"}
        )
    finally:
        await client.aclose()

    assert data["authorization_url"] == "https://checkout.paystack.com/x"
    assert seen["auth"] == "Bearer sk_test_key"
    assert seen["path"] == "/transaction/initialize"
    assert seen["body"] == {
        "email": "c1@example.com",
        "amount": 5000,
        "reference": "dc-1-ab",
        "metadata": {"client_id": "c1"},
    }


@pytest.mark.asyncio
async def test_initialize_rejection_is_not_retryable():
    def handler(request):
        return httpx.Response(400, json={"status": False, "message": "Invalid key"})

    client = _client(handler)
    try:
        with pytest.raises(UpstreamError) as excinfo:
            await client.initialize_transaction(email="a@b.c", amount_minor_units=100, reference="r1")
    finally:
        await client.aclose()

    assert excinfo.value.kind == "paystack_init_failed"
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_charge_mobile_money_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": True, "data": {"status": "pay_offline"}})

    client = _client(handler)
    try:
        body = await client.charge_mobile_money(
            email="c1@example.com", amount_minor_units=1500, reference="dc-2-cd", phone="254712345678"
        )
    finally:
        await client.aclose()

    assert body["data"]["status"] == "pay_offline"
    assert seen["path"] == "/charge"
    assert seen["body"]["currency"] == "KES"
    assert seen["body"]["mobile_money"] == {"phone": "254712345678", "provider": "mpesa"}


@pytest.mark.asyncio
async def test_verify_transaction_parses_status_and_amount():
    def handler(request):
        assert request.url.path == "/transaction/verify/dc-3-ef"
        return httpx.Response(
            200,
            json={"status": True, "data": {"reference": "dc-3-ef", "status": "SUCCESS", "amount": 5000, "currency": "KES"}},
        )

    client = _client(handler)
    try:
        result = await client.verify_transaction("dc-3-ef")
    finally:
        await client.aclose()

    assert result.successful
    assert result.amount_minor_units == 5000
    assert result.currency == "KES"


@pytest.mark.asyncio
async def test_verify_unknown_reference_is_not_found():
    def handler(request):
        return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})

    client = _client(handler)
    try:
        result = await client.verify_transaction("missing")
    finally:
        await client.aclose()

    assert result.status == "not_found"
    assert not result.successful
    assert not result.definitively_failed


@pytest.mark.asyncio
async def test_timeout_and_server_errors_are_retryable():
    def timeout_handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    def server_error_handler(request):
        return httpx.Response(503, text="unavailable")

    timeout_client = _client(timeout_handler)
    error_client = _client(server_error_handler)
    try:
        with pytest.raises(UpstreamError) as timed_out:
            await timeout_client.verify_transaction("dc-4")
        with pytest.raises(UpstreamError) as server_error:
            await error_client.verify_transaction("dc-4")
    finally:
        await timeout_client.aclose()
        await error_client.aclose()

    assert timed_out.value.timeout is True
    assert timed_out.value.retryable is True
    assert timed_out.value.status_code == 504
    assert server_error.value.retryable is True
    assert server_error.value.kind == "provider_error"


@pytest.mark.asyncio
async def test_verify_not_found_message_on_400_is_not_found():
    def handler(request):
        return httpx.Response(400, json={"status": False, "message": "Transaction reference not found."})

    client = _client(handler)
    try:
        result = await client.verify_transaction("dc-missing")
    finally:
        await client.aclose()

    assert result.status == "not_found"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,message",
    [(401, "Invalid key"), (403, "Forbidden"), (400, "Invalid reference format")],
)
async def test_verify_auth_and_request_errors_are_retryable_not_missing(status_code, message):
    def handler(request):
        return httpx.Response(status_code, json={"status": False, "message": message})

    client = _client(handler)
    try:
        with pytest.raises(UpstreamError) as rejected:
            await client.verify_transaction("dc-5")
    finally:
        await client.aclose()

    assert rejected.value.kind == "provider_rejected"
    assert rejected.value.retryable is True
    assert rejected.value.extra["detail"] == {"status": False, "message": message}
