"""Routers package."""

from . import (
    health,
    billing,
    consumption,
    tenants,
    webhooks,
)
