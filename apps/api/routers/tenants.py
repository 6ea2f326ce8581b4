"""Tenant registration and feature flag router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.dependencies import get_ledger
from services.credits import serialize_account
from services.errors import TenantNotFound
from services.ledger import Ledger

router = APIRouter()


class MaxTriesUpdate(BaseModel):
    max_tries_per_user: int = Field(ge=0, le=1000)


class EnabledUpdate(BaseModel):
    enabled: bool


@router.post("/{tenant_id}")
async def register_tenant(tenant_id: str, ledger: Ledger = Depends(get_ledger)):
    account = await ledger.ensure_account(tenant_id)
    return serialize_account(account)


@router.get("/{tenant_id}")
async def get_tenant(tenant_id: str, ledger: Ledger = Depends(get_ledger)):
    account = await ledger.get_account(tenant_id)
    if account is None:
        raise TenantNotFound(tenant_id)
    return serialize_account(account)


@router.put("/{tenant_id}/enabled")
async def set_tenant_enabled(tenant_id: str, update: EnabledUpdate, ledger: Ledger = Depends(get_ledger)):
    account = await ledger.set_enabled(tenant_id, update.enabled)
    return serialize_account(account)


@router.put("/{tenant_id}/max-tries")
async def set_tenant_max_tries(tenant_id: str, update: MaxTriesUpdate, ledger: Ledger = Depends(get_ledger)):
    account = await ledger.set_max_tries_per_user(tenant_id, update.max_tries_per_user)
    return serialize_account(account)
