"""Purchase accumulator: credit a confirmed plan purchase exactly once per charge."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.purchase_event import PurchaseEvent
from services.errors import InvalidPurchase
from services.ledger import Ledger, apply_credit, ensure_account_row, insert_or_ignore, read_account
from services.plans import Plan, resolve_plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    balance: int
    quota_set: int
    credits_added: int
    duplicate: bool = False


class PurchaseAccumulator:
    """Translate purchase confirmations into additive ledger credits.

    The charge id is claimed with an insert-or-ignore in the same transaction
    as the credit, so a retried confirmation (even a concurrent one) finds the
    claim and returns the current balance instead of crediting again.
    """

    def __init__(self, ledger: Ledger, plans: Optional[Mapping[str, Plan]] = None):
        self._ledger = ledger
        self._plans = plans

    async def confirm(
        self,
        tenant_id: str,
        plan_id: str,
        charge_id: str,
        *,
        custom_credits: Optional[int] = None,
    ) -> PurchaseResult:
        charge = (charge_id or "").strip()
        if not charge:
            raise InvalidPurchase("charge_id is required.")
        plan = resolve_plan(plan_id, custom_credits=custom_credits, catalog=self._plans)
        period = self._ledger.current_period()

        async def _confirm(session: AsyncSession) -> PurchaseResult:
            await ensure_account_row(session, tenant_id, period)
            claimed = await insert_or_ignore(
                session,
                PurchaseEvent,
                {
                    "id": str(uuid.uuid4()),
                    "charge_id": charge,
                    "tenant_id": tenant_id,
                    "plan_id": plan.id,
                    "credits": plan.credits,
                },
                ["charge_id"],
            )
            if not claimed:
                account = await read_account(session, tenant_id)
                return PurchaseResult(
                    balance=int(account.balance),
                    quota_set=int(account.monthly_quota),
                    credits_added=0,
                    duplicate=True,
                )
            balance = await apply_credit(session, tenant_id, plan.credits, monthly_quota=plan.credits)
            return PurchaseResult(balance=balance, quota_set=plan.credits, credits_added=plan.credits)

        result = await self._ledger.run_atomic(_confirm)
        if result.duplicate:
            logger.warning("purchase_duplicate_charge tenant=%s charge=%s", tenant_id, charge)
        else:
            logger.info(
                "purchase_credited tenant=%s plan=%s charge=%s credits=%s balance=%s",
                tenant_id,
                plan.id,
                charge,
                plan.credits,
                result.balance,
            )
        return result
