"""Read-only usage analytics over the consumption audit trail."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.consumption_audit import ConsumptionAuditEntry


def period_bounds(period: str) -> Tuple[datetime, datetime]:
    """Return the [start, end) UTC datetimes of a ``YYYY-MM`` period."""
    try:
        start = datetime.strptime(period, "%Y-%m").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise ValueError("period must use the YYYY-MM format") from exc
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def _entry_status(entry: ConsumptionAuditEntry) -> str:
    if entry.success is None:
        return "pending"
    return "succeeded" if entry.success else "failed"


def serialize_audit_entry(entry: ConsumptionAuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "tenant_id": entry.tenant_id,
        "customer_id": entry.customer_id,
        "status": _entry_status(entry),
        "success": None if entry.success is None else bool(entry.success),
        "latency_ms": entry.latency_ms,
        "error_message": entry.error_message,
        "result_ref": entry.result_ref,
        "product_id": entry.product_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "completed_at": entry.completed_at.isoformat() if entry.completed_at else None,
    }


async def list_audit_entries(
    db: AsyncSession,
    tenant_id: str,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    stmt = select(ConsumptionAuditEntry).where(ConsumptionAuditEntry.tenant_id == tenant_id)
    if start is not None:
        stmt = stmt.where(ConsumptionAuditEntry.created_at >= start)
    if end is not None:
        stmt = stmt.where(ConsumptionAuditEntry.created_at < end)
    stmt = stmt.order_by(ConsumptionAuditEntry.created_at.desc()).limit(max(int(limit), 1))
    result = await db.execute(stmt)
    return [serialize_audit_entry(entry) for entry in result.scalars().all()]


async def get_usage_summary(db: AsyncSession, tenant_id: str, period: str) -> Dict[str, Any]:
    """Attempts are granted reservations; pending ones have no reported outcome yet."""
    start, end = period_bounds(period)
    result = await db.execute(
        select(
            func.count(ConsumptionAuditEntry.id),
            func.coalesce(func.sum(case((ConsumptionAuditEntry.success.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((ConsumptionAuditEntry.success.is_(False), 1), else_=0)), 0),
            func.avg(ConsumptionAuditEntry.latency_ms),
        ).where(
            ConsumptionAuditEntry.tenant_id == tenant_id,
            ConsumptionAuditEntry.created_at >= start,
            ConsumptionAuditEntry.created_at < end,
        )
    )
    attempts, successes, failures, avg_latency = result.one()
    attempts = int(attempts or 0)
    successes = int(successes or 0)
    failures = int(failures or 0)
    reported = successes + failures
    return {
        "tenant_id": tenant_id,
        "period": period,
        "attempts": attempts,
        "successes": successes,
        "failures": failures,
        "pending": attempts - reported,
        "success_rate": round(successes / reported, 4) if reported else 0.0,
        "avg_latency_ms": round(float(avg_latency), 1) if avg_latency is not None else None,
    }


async def get_top_products(db: AsyncSession, tenant_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    count = func.count(ConsumptionAuditEntry.id).label("uses")
    result = await db.execute(
        select(ConsumptionAuditEntry.product_id, count)
        .where(
            ConsumptionAuditEntry.tenant_id == tenant_id,
            ConsumptionAuditEntry.success.is_(True),
            ConsumptionAuditEntry.product_id.is_not(None),
        )
        .group_by(ConsumptionAuditEntry.product_id)
        .order_by(count.desc())
        .limit(max(int(limit), 1))
    )
    return [{"product_id": product_id, "uses": int(uses)} for product_id, uses in result.all()]


async def get_daily_success_counts(
    db: AsyncSession,
    tenant_id: str,
    *,
    days: int = 30,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    current = now or datetime.now(timezone.utc)
    since = current - timedelta(days=max(int(days), 1))
    day = func.date(ConsumptionAuditEntry.created_at).label("day")
    result = await db.execute(
        select(day, func.count(ConsumptionAuditEntry.id))
        .where(
            ConsumptionAuditEntry.tenant_id == tenant_id,
            ConsumptionAuditEntry.success.is_(True),
            ConsumptionAuditEntry.created_at >= since,
        )
        .group_by(day)
        .order_by(day)
    )
    return [{"date": str(value), "count": int(total)} for value, total in result.all()]
