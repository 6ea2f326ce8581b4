"""Metered consumption router: reserve credits and report outcomes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_session_maker
from routers.dependencies import get_consumption_gate, get_ledger
from services.consumption import ConsumptionGate
from services.ledger import Ledger
from services.usage import (
    get_daily_success_counts,
    get_top_products,
    get_usage_summary,
    list_audit_entries,
)

router = APIRouter()


class ReservationRequest(BaseModel):
    customer_id: Optional[str] = Field(default=None, max_length=255)
    product_id: Optional[str] = None


def _end_customer(request: Request, body: Optional[ReservationRequest]) -> str:
    """End customer the daily allowance is counted for; the shopper's IP when none is given."""
    if body is not None and body.customer_id and body.customer_id.strip():
        return body.customer_id.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class OutcomeReport(BaseModel):
    reservation_id: str = Field(min_length=1)
    success: bool
    latency_ms: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None
    result_ref: Optional[str] = None
    product_id: Optional[str] = None


@router.post("/{tenant_id}/reserve")
async def reserve_credit(
    tenant_id: str,
    request: Request,
    body: Optional[ReservationRequest] = None,
    gate: ConsumptionGate = Depends(get_consumption_gate),
):
    result = await gate.try_consume(
        tenant_id,
        customer_id=_end_customer(request, body),
        product_id=body.product_id if body is not None else None,
    )
    if not result.granted:
        return JSONResponse(
            status_code=402,
            content={"granted": False, "error": "Insufficient credits", "credits": result.remaining},
        )
    return {
        "granted": True,
        "remaining": result.remaining,
        "reservation_id": result.reservation.reservation_id,
    }


@router.post("/{tenant_id}/outcomes")
async def report_outcome(
    tenant_id: str,
    report: OutcomeReport,
    gate: ConsumptionGate = Depends(get_consumption_gate),
):
    recorded = await gate.record_outcome(
        tenant_id,
        report.reservation_id,
        success=report.success,
        latency_ms=report.latency_ms,
        error_message=report.error_message,
        result_ref=report.result_ref,
        product_id=report.product_id,
    )
    return {"recorded": recorded}


@router.post("/{tenant_id}/conversions")
async def record_conversion(tenant_id: str, ledger: Ledger = Depends(get_ledger)):
    total = await ledger.record_conversion(tenant_id)
    return {"tenant_id": tenant_id, "total_conversions": total}


@router.get("/{tenant_id}/audit")
async def audit_entries(
    tenant_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
):
    async with session_maker() as db:
        entries = await list_audit_entries(db, tenant_id, start=start, end=end, limit=limit)
    return {"tenant_id": tenant_id, "entries": entries}


@router.get("/{tenant_id}/usage")
async def usage_summary(
    tenant_id: str,
    period: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    ledger: Ledger = Depends(get_ledger),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
):
    resolved_period = period or ledger.current_period()
    async with session_maker() as db:
        try:
            summary = await get_usage_summary(db, tenant_id, resolved_period)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        summary["top_products"] = await get_top_products(db, tenant_id)
        summary["daily"] = await get_daily_success_counts(db, tenant_id, now=ledger.now())
    return summary
