"""Error taxonomy shared by the ledger, order registry and reconciler."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class carrying a machine-readable error kind and an HTTP status."""

    status_code = 500
    default_kind = "internal_error"

    def __init__(self, kind: Optional[str] = None, message: Optional[str] = None, **extra: Any):
        self.kind = kind or self.default_kind
        self.message = message or self.kind
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(LedgerError):
    status_code = 400
    default_kind = "invalid_payload"


class AuthError(LedgerError):
    status_code = 401
    default_kind = "unauthorized"


class NotFoundError(LedgerError):
    status_code = 404
    default_kind = "not_found"


class ConflictError(LedgerError):
    """Duplicate provider event; callers treat it as an already-handled success."""

    status_code = 409
    default_kind = "duplicate"


class InsufficientFunds(LedgerError):
    status_code = 402
    default_kind = "insufficient_funds"

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["success"] = False
        return payload


class RateLimited(LedgerError):
    status_code = 429
    default_kind = "rate_limited"


class ConfigurationError(LedgerError):
    status_code = 500
    default_kind = "server_misconfigured"


class StorageError(LedgerError):
    status_code = 500
    default_kind = "storage_error"
    retryable = True


class UpstreamError(LedgerError):
    """Payment provider failure. Timeouts are always retryable."""

    status_code = 502
    default_kind = "provider_error"

    def __init__(
        self,
        kind: Optional[str] = None,
        message: Optional[str] = None,
        *,
        retryable: bool = True,
        timeout: bool = False,
        **extra: Any,
    ):
        super().__init__(kind, message, **extra)
        self.retryable = retryable or timeout
        self.timeout = timeout
        if timeout:
            self.status_code = 504


def coerce_positive_int(value: Any, kind: str = "invalid_amount") -> int:
    """Return value as a positive integer or raise ValidationError."""
    message = "amount must be a positive integer"
    if isinstance(value, bool) or value is None:
        raise ValidationError(kind, message)
    if isinstance(value, str):
        value = value.strip()
        try:
            value = float(value) if "." in value else int(value)
        except ValueError as exc:
            raise ValidationError(kind, message) from exc
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(kind, message)
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(kind, message)
    return value


def require_client_id(value: Any) -> str:
    client_id = str(value or "").strip()
    if not client_id:
        raise ValidationError("missing_client_id", "client_id is required")
    return client_id
