"""Atomic credit ledger primitives over the accounts table.

Every balance mutation here is one conditional UPDATE executed inside its own
short transaction. Callers never read a balance and write a derived value
back; the database evaluates the condition and the new value together, so
concurrent requests for the same tenant cannot overspend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

from sqlalchemy import case, delete, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config import settings
from models.account import Account, SubscriptionStatus
from models.consumption_audit import ConsumptionAuditEntry
from models.purchase_event import PurchaseEvent
from models.subscription_event import SubscriptionEvent
from services.errors import LedgerConflict, TenantNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]

_TRANSIENT_SQLSTATES = {"40001", "40P01"}
_TRANSIENT_MARKERS = ("database is locked", "could not serialize", "deadlock detected")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_key(moment: Optional[datetime] = None) -> str:
    """Billing period token (UTC calendar month) for ``moment``."""
    current = moment or utc_now()
    if current.tzinfo is not None:
        current = current.astimezone(timezone.utc)
    return current.strftime("%Y-%m")


@dataclass(frozen=True)
class ConsumeResult:
    granted: bool
    remaining: int


def _is_transient_conflict(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def insert_or_ignore(
    session: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    index_elements: Iterable[str],
) -> bool:
    """Insert a row unless the unique key already exists. Returns True if inserted."""
    dialect_name = session.get_bind().dialect.name
    dialect_insert = postgresql.insert if dialect_name == "postgresql" else sqlite.insert
    stmt = dialect_insert(model.__table__).values(**values).on_conflict_do_nothing(
        index_elements=list(index_elements)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def ensure_account_row(session: AsyncSession, tenant_id: str, period: str) -> bool:
    """Create an empty account for ``tenant_id`` if none exists."""
    created = await insert_or_ignore(
        session,
        Account,
        {
            "tenant_id": tenant_id,
            "balance": 0,
            "monthly_quota": 0,
            "last_reset_period": period,
            "lifetime_credits": 0,
            "total_consumed": 0,
            "total_conversions": 0,
            "subscription_status": SubscriptionStatus.NONE.value,
            "is_enabled": True,
            "max_tries_per_user": int(settings.DEFAULT_MAX_TRIES_PER_USER),
        },
        ["tenant_id"],
    )
    if created:
        logger.info("ledger_account_created tenant=%s period=%s", tenant_id, period)
    return created


async def read_account(session: AsyncSession, tenant_id: str, *, for_update: bool = False) -> Optional[Account]:
    stmt = select(Account).where(Account.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def read_balance(session: AsyncSession, tenant_id: str) -> Optional[int]:
    result = await session.execute(select(Account.balance).where(Account.tenant_id == tenant_id))
    balance = result.scalar_one_or_none()
    return None if balance is None else int(balance)


async def execute_update(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


async def take_credit(session: AsyncSession, tenant_id: str) -> ConsumeResult:
    """Decrement the balance by one if, and only if, it is positive."""
    granted = await execute_update(
        session,
        update(Account)
        .where(Account.tenant_id == tenant_id, Account.balance > 0)
        .values(balance=Account.balance - 1),
    )
    remaining = await read_balance(session, tenant_id)
    if remaining is None:
        raise TenantNotFound(tenant_id)
    return ConsumeResult(granted=granted == 1, remaining=remaining)


async def apply_credit(
    session: AsyncSession,
    tenant_id: str,
    amount: int,
    *,
    monthly_quota: Optional[int] = None,
) -> int:
    """Add ``amount`` to the balance (and optionally set the quota) in place."""
    values: Dict[str, Any] = {
        "balance": Account.balance + amount,
        "lifetime_credits": Account.lifetime_credits + amount,
    }
    if monthly_quota is not None:
        values["monthly_quota"] = monthly_quota
    updated = await execute_update(
        session, update(Account).where(Account.tenant_id == tenant_id).values(**values)
    )
    if updated != 1:
        raise TenantNotFound(tenant_id)
    return await read_balance(session, tenant_id) or 0


async def apply_activation(
    session: AsyncSession,
    tenant_id: str,
    quota: int,
    *,
    subscription_id: Optional[str] = None,
) -> int:
    """Set the plan quota and raise the balance to at least that quota."""
    raised = Account.balance < quota
    updated = await execute_update(
        session,
        update(Account)
        .where(Account.tenant_id == tenant_id)
        .values(
            balance=case((raised, quota), else_=Account.balance),
            lifetime_credits=case(
                (raised, Account.lifetime_credits + (quota - Account.balance)),
                else_=Account.lifetime_credits,
            ),
            monthly_quota=quota,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            subscription_id=subscription_id,
        ),
    )
    if updated != 1:
        raise TenantNotFound(tenant_id)
    return await read_balance(session, tenant_id) or 0


async def apply_demotion(
    session: AsyncSession,
    tenant_id: str,
    free_tier_quota: int,
    status: SubscriptionStatus,
    *,
    subscription_id: Optional[str] = None,
) -> int:
    """Drop the tenant to the free tier, capping the balance at its quota."""
    updated = await execute_update(
        session,
        update(Account)
        .where(Account.tenant_id == tenant_id)
        .values(
            balance=case((Account.balance > free_tier_quota, free_tier_quota), else_=Account.balance),
            monthly_quota=free_tier_quota,
            subscription_status=status.value,
            subscription_id=subscription_id,
        ),
    )
    if updated != 1:
        raise TenantNotFound(tenant_id)
    return await read_balance(session, tenant_id) or 0


async def increment_counter(session: AsyncSession, tenant_id: str, column: str) -> int:
    """Bump one of the advisory lifetime counters."""
    attribute = getattr(Account, column)
    updated = await execute_update(
        session,
        update(Account).where(Account.tenant_id == tenant_id).values({column: attribute + 1}),
    )
    if updated != 1:
        raise TenantNotFound(tenant_id)
    result = await session.execute(select(attribute).where(Account.tenant_id == tenant_id))
    return int(result.scalar_one())


class Ledger:
    """Account store handle exposing the atomic ledger operations.

    The ledger owns no connection: each call checks a session out of the
    injected factory, runs one transaction and returns it to the pool.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
    ):
        self._session_maker = session_maker
        self._clock = clock or utc_now
        self._max_attempts = max(int(max_attempts or settings.LEDGER_MAX_ATTEMPTS), 1)

    def now(self) -> datetime:
        return self._clock()

    def current_period(self) -> str:
        return period_key(self._clock())

    async def run_atomic(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``operation`` in a fresh transaction, retrying transient conflicts.

        The operation must be safe to re-run from scratch: each attempt gets a
        new session and re-evaluates its conditions against the store.
        """

        @retry(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.02, max=0.5),
            retry=retry_if_exception(_is_transient_conflict),
            reraise=True,
        )
        async def _attempt() -> T:
            async with self._session_maker() as session:
                async with session.begin():
                    return await operation(session)

        try:
            return await _attempt()
        except DBAPIError as exc:
            if _is_transient_conflict(exc):
                logger.warning("ledger_conflict_exhausted attempts=%s error=%s", self._max_attempts, exc)
                raise LedgerConflict(f"Ledger update conflicted {self._max_attempts} times.") from exc
            raise

    async def get_account(self, tenant_id: str) -> Optional[Account]:
        async with self._session_maker() as session:
            return await read_account(session, tenant_id)

    async def ensure_account(self, tenant_id: str) -> Account:
        period = self.current_period()

        async def _ensure(session: AsyncSession) -> Account:
            await ensure_account_row(session, tenant_id, period)
            return await read_account(session, tenant_id)

        return await self.run_atomic(_ensure)

    async def consume(self, tenant_id: str) -> ConsumeResult:
        """Take one credit if, and only if, the balance is positive."""

        async def _consume(session: AsyncSession) -> ConsumeResult:
            return await take_credit(session, tenant_id)

        return await self.run_atomic(_consume)

    async def credit(self, tenant_id: str, amount: int, *, monthly_quota: Optional[int] = None) -> int:
        """Add credits, creating the account on first sight of the tenant."""
        if int(amount) < 0:
            raise ValueError("credit amount must be >= 0")
        if monthly_quota is not None and int(monthly_quota) < 0:
            raise ValueError("monthly_quota must be >= 0")
        period = self.current_period()

        async def _credit(session: AsyncSession) -> int:
            await ensure_account_row(session, tenant_id, period)
            return await apply_credit(session, tenant_id, int(amount), monthly_quota=monthly_quota)

        return await self.run_atomic(_credit)

    async def reset_to_quota(self, tenant_id: str, period: str) -> int:
        """Replace the balance with the plan quota once per billing period.

        A period token equal to (or older than) the stored one leaves the
        account untouched and returns the current balance.
        """

        async def _reset(session: AsyncSession) -> int:
            applied = await execute_update(
                session,
                update(Account)
                .where(
                    Account.tenant_id == tenant_id,
                    or_(Account.last_reset_period.is_(None), Account.last_reset_period < period),
                )
                .values(balance=Account.monthly_quota, last_reset_period=period),
            )
            remaining = await read_balance(session, tenant_id)
            if remaining is None:
                raise TenantNotFound(tenant_id)
            if applied:
                logger.info("ledger_reset tenant=%s period=%s balance=%s", tenant_id, period, remaining)
            return remaining

        return await self.run_atomic(_reset)

    async def reset_all_to_quota(self, period: str) -> int:
        """Apply the period reset to every account still on an older period."""

        async def _reset_all(session: AsyncSession) -> int:
            return await execute_update(
                session,
                update(Account)
                .where(or_(Account.last_reset_period.is_(None), Account.last_reset_period < period))
                .values(balance=Account.monthly_quota, last_reset_period=period),
            )

        return await self.run_atomic(_reset_all)

    async def record_conversion(self, tenant_id: str) -> int:
        async def _convert(session: AsyncSession) -> int:
            return await increment_counter(session, tenant_id, "total_conversions")

        return await self.run_atomic(_convert)

    async def set_enabled(self, tenant_id: str, enabled: bool) -> Account:
        async def _toggle(session: AsyncSession) -> Account:
            updated = await execute_update(
                session,
                update(Account).where(Account.tenant_id == tenant_id).values(is_enabled=bool(enabled)),
            )
            if updated != 1:
                raise TenantNotFound(tenant_id)
            return await read_account(session, tenant_id)

        return await self.run_atomic(_toggle)

    async def set_max_tries_per_user(self, tenant_id: str, max_tries: int) -> Account:
        """Set the per end-customer daily cap; 0 removes the cap."""
        if int(max_tries) < 0:
            raise ValueError("max_tries_per_user must be >= 0")

        async def _set(session: AsyncSession) -> Account:
            updated = await execute_update(
                session,
                update(Account).where(Account.tenant_id == tenant_id).values(max_tries_per_user=int(max_tries)),
            )
            if updated != 1:
                raise TenantNotFound(tenant_id)
            return await read_account(session, tenant_id)

        return await self.run_atomic(_set)

    async def offboard_tenant(self, tenant_id: str) -> Dict[str, int]:
        """Remove the account and every audit or idempotency row of the tenant."""

        async def _offboard(session: AsyncSession) -> Dict[str, int]:
            removed: Dict[str, int] = {}
            for model in (ConsumptionAuditEntry, PurchaseEvent, SubscriptionEvent, Account):
                result = await session.execute(
                    delete(model)
                    .where(model.tenant_id == tenant_id)
                    .execution_options(synchronize_session=False)
                )
                removed[model.__tablename__] = int(result.rowcount or 0)
            return removed

        removed = await self.run_atomic(_offboard)
        logger.info("ledger_tenant_offboarded tenant=%s removed=%s", tenant_id, removed)
        return removed

    async def redact_customer(self, tenant_id: str, customer_ids: Iterable[str]) -> int:
        """Delete the audit entries recorded for one end customer of a tenant."""
        identifiers = [str(value) for value in customer_ids if value]
        if not identifiers:
            return 0

        async def _redact(session: AsyncSession) -> int:
            result = await session.execute(
                delete(ConsumptionAuditEntry)
                .where(
                    ConsumptionAuditEntry.tenant_id == tenant_id,
                    ConsumptionAuditEntry.customer_id.in_(identifiers),
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        removed = await self.run_atomic(_redact)
        logger.info("ledger_customer_redacted tenant=%s removed=%s", tenant_id, removed)
        return removed
