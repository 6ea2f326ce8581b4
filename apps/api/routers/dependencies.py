"""FastAPI dependencies wiring ledger services to the request's store handle."""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import get_session_maker
from services.consumption import ConsumptionGate
from services.daily_limit import CustomerDailyLimit
from services.ledger import Ledger
from services.purchases import PurchaseAccumulator
from services.subscriptions import WebhookReconciler


def get_ledger(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> Ledger:
    return Ledger(session_maker)


def get_daily_limit(request: Request) -> Optional[CustomerDailyLimit]:
    if getattr(request.app.state, "disable_rate_limits", False):
        return None
    return CustomerDailyLimit(settings.REDIS_URL)


def get_consumption_gate(
    ledger: Ledger = Depends(get_ledger),
    daily_limit: Optional[CustomerDailyLimit] = Depends(get_daily_limit),
) -> ConsumptionGate:
    return ConsumptionGate(ledger, daily_limit=daily_limit)


def get_purchase_accumulator(ledger: Ledger = Depends(get_ledger)) -> PurchaseAccumulator:
    return PurchaseAccumulator(ledger)


def get_webhook_reconciler(ledger: Ledger = Depends(get_ledger)) -> WebhookReconciler:
    return WebhookReconciler(ledger)
