"""Consumption gate for the metered feature.

A credit is reserved before the external call is made and is not refunded if
that call fails. The reservation is stored as a pending audit entry in the
same transaction that takes the credit; the caller reports the outcome once.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.consumption_audit import ConsumptionAuditEntry
from services.daily_limit import CustomerDailyLimit, day_key
from services.errors import DailyLimitReached, TenantDisabled, TenantNotFound, UnknownReservation
from services.ledger import ConsumeResult, Ledger, execute_update, increment_counter, take_credit
from services.renewal import RenewalPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    tenant_id: str
    reserved_at: datetime
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class GateResult:
    granted: bool
    remaining: int
    reservation: Optional[Reservation] = None

    @property
    def insufficient_credits(self) -> bool:
        return not self.granted


class ConsumptionGate:
    def __init__(
        self,
        ledger: Ledger,
        renewal: Optional[RenewalPolicy] = None,
        *,
        daily_limit: Optional[CustomerDailyLimit] = None,
    ):
        self._ledger = ledger
        self._renewal = renewal or RenewalPolicy(ledger)
        self._daily_limit = daily_limit

    async def try_consume(
        self,
        tenant_id: str,
        *,
        customer_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> GateResult:
        """Renew if a period boundary was crossed, then reserve one credit.

        With a daily limit configured, an end customer who already used the
        tenant's ``max_tries_per_user`` today is refused before any credit is
        taken. Only granted reservations count towards that allowance.
        """
        account = await self._ledger.get_account(tenant_id)
        if account is None:
            raise TenantNotFound(tenant_id)
        if not account.is_enabled:
            raise TenantDisabled(tenant_id)

        await self._renewal.apply(tenant_id)

        day = day_key(self._ledger.now())
        counted = self._daily_limit is not None and bool(customer_id)
        if counted:
            max_tries = int(account.max_tries_per_user or 0)
            if max_tries > 0:
                used = await self._daily_limit.used(tenant_id, customer_id, day)
                if used >= max_tries:
                    logger.info(
                        "consumption_daily_limit tenant=%s customer=%s used=%s limit=%s",
                        tenant_id,
                        customer_id,
                        used,
                        max_tries,
                    )
                    raise DailyLimitReached(tenant_id, customer_id, max_tries)

        reservation_id = str(uuid.uuid4())
        reserved_at = self._ledger.now()

        async def _reserve(session: AsyncSession) -> ConsumeResult:
            result = await take_credit(session, tenant_id)
            if result.granted:
                session.add(
                    ConsumptionAuditEntry(
                        id=reservation_id,
                        tenant_id=tenant_id,
                        customer_id=customer_id,
                        product_id=product_id,
                        created_at=reserved_at,
                    )
                )
                await session.flush()
            return result

        result = await self._ledger.run_atomic(_reserve)
        if not result.granted:
            logger.info("consumption_denied tenant=%s remaining=%s", tenant_id, result.remaining)
            return GateResult(granted=False, remaining=result.remaining)

        if counted:
            await self._daily_limit.record(tenant_id, customer_id, day)
        reservation = Reservation(
            reservation_id=reservation_id,
            tenant_id=tenant_id,
            reserved_at=reserved_at,
            customer_id=customer_id,
        )
        return GateResult(granted=True, remaining=result.remaining, reservation=reservation)

    async def record_outcome(
        self,
        tenant_id: str,
        reservation_id: str,
        *,
        success: bool,
        latency_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        result_ref: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> bool:
        """Complete the pending audit entry of a reservation.

        Returns False when the outcome was already recorded. Raises
        ``UnknownReservation`` for ids this tenant was never granted.
        """
        completed_at = self._ledger.now()
        values: Dict[str, Any] = {
            "success": bool(success),
            "latency_ms": latency_ms,
            "error_message": error_message,
            "result_ref": result_ref,
            "completed_at": completed_at,
        }
        if product_id is not None:
            values["product_id"] = product_id

        async def _record(session: AsyncSession) -> bool:
            completed = await execute_update(
                session,
                update(ConsumptionAuditEntry)
                .where(
                    ConsumptionAuditEntry.id == reservation_id,
                    ConsumptionAuditEntry.tenant_id == tenant_id,
                    ConsumptionAuditEntry.success.is_(None),
                )
                .values(**values),
            )
            if completed:
                if success:
                    await increment_counter(session, tenant_id, "total_consumed")
                return True
            existing = await session.execute(
                select(ConsumptionAuditEntry.id).where(
                    ConsumptionAuditEntry.id == reservation_id,
                    ConsumptionAuditEntry.tenant_id == tenant_id,
                )
            )
            if existing.scalar_one_or_none() is None:
                raise UnknownReservation(tenant_id, reservation_id)
            return False

        recorded = await self._ledger.run_atomic(_record)
        if not recorded:
            logger.warning("consumption_outcome_duplicate tenant=%s reservation=%s", tenant_id, reservation_id)
        elif not success:
            logger.warning(
                "consumption_failed tenant=%s reservation=%s error=%s", tenant_id, reservation_id, error_message
            )
        return recorded

    async def run_metered(
        self,
        tenant_id: str,
        operation: Callable[[], Awaitable[Optional[str]]],
        *,
        customer_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Tuple[GateResult, Optional[str]]:
        """Reserve a credit, run ``operation`` outside any transaction, record the outcome.

        ``operation`` is never awaited without a granted reservation. Its
        exceptions propagate after the failure has been audited.
        """
        gate = await self.try_consume(tenant_id, customer_id=customer_id, product_id=product_id)
        if not gate.granted:
            return gate, None

        reservation_id = gate.reservation.reservation_id
        started = time.monotonic()
        try:
            result_ref = await operation()
        except Exception as exc:
            await self.record_outcome(
                tenant_id,
                reservation_id,
                success=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                error_message=str(exc) or exc.__class__.__name__,
                product_id=product_id,
            )
            raise

        await self.record_outcome(
            tenant_id,
            reservation_id,
            success=True,
            latency_ms=int((time.monotonic() - started) * 1000),
            result_ref=result_ref,
            product_id=product_id,
        )
        return gate, result_ref
