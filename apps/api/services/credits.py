"""Credit balance summaries for the billing UI."""

from __future__ import annotations

from typing import Any, Dict

from config import settings
from models.account import Account
from services.errors import TenantNotFound
from services.ledger import Ledger
from services.renewal import RenewalPolicy
from services.usage import list_audit_entries


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "tenant_id": account.tenant_id,
        "balance": int(account.balance),
        "monthly_quota": int(account.monthly_quota),
        "last_reset_period": account.last_reset_period,
        "lifetime_credits": int(account.lifetime_credits),
        "total_consumed": int(account.total_consumed),
        "total_conversions": int(account.total_conversions),
        "subscription_status": account.subscription_status,
        "subscription_id": account.subscription_id,
        "is_enabled": bool(account.is_enabled),
        "max_tries_per_user": int(account.max_tries_per_user or 0),
    }


async def get_credit_summary(ledger: Ledger, db_session_maker, tenant_id: str) -> Dict[str, Any]:
    """Renew the account if a period rolled over, then describe it."""
    await RenewalPolicy(ledger).apply(tenant_id)
    account = await ledger.get_account(tenant_id)
    if account is None:
        raise TenantNotFound(tenant_id)

    async with db_session_maker() as db:
        recent = await list_audit_entries(db, tenant_id, limit=30)

    return {
        **serialize_account(account),
        "period_key": ledger.current_period(),
        "free_tier_quota": max(int(settings.FREE_TIER_QUOTA), 0),
        "recent_entries": recent,
    }
