"""Routers package."""

from . import (
    health,
    credits,
    payments,
    webhooks,
    admin,
)
