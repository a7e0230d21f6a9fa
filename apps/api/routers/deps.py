"""Shared router dependencies: injected provider client, reconciler and admin auth."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from config import settings
from services.errors import AuthError, ConfigurationError
from services.paystack import PaystackClient
from services.reconciler import Reconciler

logger = logging.getLogger(__name__)


def get_payment_provider(request: Request) -> PaystackClient:
    """Return the provider client created once in the application lifespan."""
    provider = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        raise ConfigurationError("paystack_not_configured", "Payment provider is not configured.")
    return provider


def get_reconciler(provider: PaystackClient = Depends(get_payment_provider)) -> Reconciler:
    return Reconciler(provider)


async def require_admin_key(
    x_app_master_key: Optional[str] = Header(default=None, alias="X-App-Master-Key"),
) -> None:
    """Authenticate admin calls with the shared master key header."""
    expected = (settings.APP_MASTER_KEY or "").strip()
    if not expected:
        logger.error("APP_MASTER_KEY is not configured; admin endpoints are disabled")
        raise ConfigurationError("server_misconfigured", "missing APP_MASTER_KEY")
    if not x_app_master_key or not hmac.compare_digest(x_app_master_key.strip(), expected):
        raise AuthError("unauthorized", "Invalid or missing admin key.")
