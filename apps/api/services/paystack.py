"""
Paystack API client for transaction initialization, mobile-money charges and
transaction verification.

Every call is bounded by the configured timeout. Timeouts and 5xx responses
raise a retryable UpstreamError; they never mean "payment failed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import settings
from services.errors import UpstreamError

logger = logging.getLogger(__name__)

SUCCESS_STATUS = "success"
FAILED_STATUSES = frozenset({"failed", "reversed", "abandoned"})


@dataclass
class VerificationResult:
    """Provider's authoritative view of a transaction."""

    reference: str
    status: str
    amount_minor_units: Optional[int] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def successful(self) -> bool:
        return self.status == SUCCESS_STATUS

    @property
    def definitively_failed(self) -> bool:
        return self.status in FAILED_STATUSES


class PaystackClient:
    """Thin async wrapper over the Paystack REST API."""

    def __init__(
        self,
        secret_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not secret_key:
            raise ValueError("Paystack secret key must be provided")
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.PAYSTACK_BASE_URL).rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds or settings.PAYSTACK_TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Paystack %s %s timed out", method, path)
            raise UpstreamError("provider_timeout", "Payment provider timed out.", timeout=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("Paystack %s %s failed: %s", method, path, exc)
            raise UpstreamError("provider_unreachable", "Payment provider is unreachable.") from exc

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("Paystack %s %s returned %s", method, path, response.status_code)
            raise UpstreamError("provider_error", f"Payment provider returned {response.status_code}.")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError("provider_bad_response", "Payment provider returned non-JSON content.") from exc
        if not isinstance(body, dict):
            raise UpstreamError("provider_bad_response", "Payment provider returned an unexpected body.")
        return body

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor_units: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a hosted checkout; returns Paystack's `data` object."""
        payload: Dict[str, Any] = {"email": email, "amount": int(amount_minor_units), "reference": reference}
        if callback_url:
            payload["callback_url"] = callback_url
        if metadata:
            payload["metadata"] = metadata

        response = await self._request("POST", "/transaction/initialize", json=payload)
        body = self._json(response)
        data = body.get("data")
        if response.is_error or not body.get("status") or not isinstance(data, dict):
            logger.error("Paystack initialize rejected reference %s: %s", reference, body.get("message"))
            raise UpstreamError(
                "paystack_init_failed",
                str(body.get("message") or "Paystack initialize failed."),
                retryable=False,
                detail=body,
            )
        return data

    async def charge_mobile_money(
        self,
        *,
        email: str,
        amount_minor_units: int,
        reference: str,
        phone: str,
        currency: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a mobile-money (STK push) charge; returns the full response body."""
        payload = {
            "email": email,
            "amount": int(amount_minor_units),
            "currency": currency or settings.MOBILE_MONEY_CURRENCY,
            "mobile_money": {"phone": phone, "provider": provider or settings.MOBILE_MONEY_PROVIDER},
            "reference": reference,
        }
        logger.info("Starting mobile-money charge for reference %s", reference)
        response = await self._request("POST", "/charge", json=payload)
        body = self._json(response)
        if response.is_error:
            logger.warning("Paystack charge returned %s for %s", response.status_code, reference)
            raise UpstreamError(
                "paystack_charge_failed",
                str(body.get("message") or "Paystack charge failed."),
                retryable=False,
                detail=body,
            )
        return body

    async def verify_transaction(self, reference: str) -> VerificationResult:
        """Look up the authoritative status of a transaction by reference."""
        response = await self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        body = self._json(response)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}

        if response.is_error or not body.get("status"):
            message = str(body.get("message") or "")
            if response.status_code == 404 or "not found" in message.lower():
                return VerificationResult(reference=reference, status="not_found", raw=body)
            # Bad key, forbidden or malformed lookup says nothing about the payment itself.
            logger.error(
                "Paystack verify for %s rejected with %s: %s", reference, response.status_code, message
            )
            raise UpstreamError(
                "provider_rejected",
                f"Payment provider rejected verification ({response.status_code}).",
                retryable=True,
                detail=body,
            )

        amount = data.get("amount")
        return VerificationResult(
            reference=str(data.get("reference") or reference),
            status=str(data.get("status") or "unknown").lower(),
            amount_minor_units=int(amount) if isinstance(amount, (int, float)) else None,
            currency=data.get("currency"),
            raw=body,
        )
