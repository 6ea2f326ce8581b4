"""Typed failures raised by the ledger services.

Expected outcomes (insufficient credits, duplicate charges, replayed webhooks)
are result values, not exceptions. Only conditions the caller has to act on
are raised.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""


class TenantNotFound(LedgerError):
    def __init__(self, tenant_id: str):
        super().__init__(f"No account exists for tenant {tenant_id!r}.")
        self.tenant_id = tenant_id


class TenantDisabled(LedgerError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Metered feature is disabled for tenant {tenant_id!r}.")
        self.tenant_id = tenant_id


class UnknownPlan(LedgerError):
    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan {plan_id!r}.")
        self.plan_id = plan_id


class InvalidPurchase(LedgerError):
    """Purchase request that cannot be priced (e.g. custom pack below minimum)."""


class LedgerConflict(LedgerError):
    """Store-level contention that persisted after the bounded retries."""


class WebhookPayloadInvalid(LedgerError):
    """Subscription webhook body that cannot be interpreted."""


class UnknownReservation(LedgerError):
    """Outcome reported for a reservation the tenant never received."""

    def __init__(self, tenant_id: str, reservation_id: str):
        super().__init__(f"No reservation {reservation_id!r} exists for tenant {tenant_id!r}.")
        self.tenant_id = tenant_id
        self.reservation_id = reservation_id


class DailyLimitReached(LedgerError):
    def __init__(self, tenant_id: str, customer_id: str, limit: int):
        super().__init__(f"Customer {customer_id!r} reached the daily limit of {limit} for tenant {tenant_id!r}.")
        self.tenant_id = tenant_id
        self.customer_id = customer_id
        self.limit = limit
