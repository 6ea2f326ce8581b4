"""Billing and credits router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_session_maker
from routers.dependencies import get_ledger, get_purchase_accumulator
from services.credits import get_credit_summary
from services.ledger import Ledger
from services.plans import DEFAULT_PLANS
from services.purchases import PurchaseAccumulator

router = APIRouter()


class PurchaseConfirmation(BaseModel):
    tenant_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    charge_id: str = Field(min_length=1)
    custom_credits: Optional[int] = Field(default=None, ge=1)


@router.get("/plans")
async def list_plans():
    return {"plans": [plan.to_dict() for plan in DEFAULT_PLANS.values()]}


@router.get("/credits/{tenant_id}")
async def credits_summary(
    tenant_id: str,
    ledger: Ledger = Depends(get_ledger),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
):
    return await get_credit_summary(ledger, session_maker, tenant_id)


@router.post("/purchase")
async def confirm_purchase(
    request: PurchaseConfirmation,
    purchases: PurchaseAccumulator = Depends(get_purchase_accumulator),
):
    result = await purchases.confirm(
        request.tenant_id,
        request.plan_id,
        request.charge_id,
        custom_credits=request.custom_credits,
    )
    return {
        "ok": True,
        "balance": result.balance,
        "quota_set": result.quota_set,
        "credits_added": result.credits_added,
        "duplicate": result.duplicate,
    }
