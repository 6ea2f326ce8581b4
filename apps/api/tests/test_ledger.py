import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from models.account import Account
from models.consumption_audit import ConsumptionAuditEntry
from models.purchase_event import PurchaseEvent
from services.errors import LedgerConflict, TenantNotFound
from services.ledger import Ledger, _is_transient_conflict, period_key
from services.purchases import PurchaseAccumulator


TENANT = "demo-store.myshopify.com"


@pytest.fixture
def ledger(session_maker, clock):
    return Ledger(session_maker, clock=clock)


@pytest.mark.asyncio
async def test_credit_creates_account_stamped_with_current_period(ledger):
    assert await ledger.get_account(TENANT) is None

    balance = await ledger.credit(TENANT, 5)

    account = await ledger.get_account(TENANT)
    assert balance == 5
    assert account.balance == 5
    assert account.monthly_quota == 0
    assert account.last_reset_period == "2024-01"
    assert account.lifetime_credits == 5
    assert account.subscription_status == "NONE"
    assert account.is_enabled is True


@pytest.mark.asyncio
async def test_credit_is_additive_and_can_set_quota(ledger):
    await ledger.credit(TENANT, 2)
    balance = await ledger.credit(TENANT, 50, monthly_quota=50)

    account = await ledger.get_account(TENANT)
    assert balance == 52
    assert account.monthly_quota == 50
    assert account.lifetime_credits == 52


@pytest.mark.asyncio
async def test_credit_of_zero_is_a_noop_that_still_creates_the_account(ledger):
    assert await ledger.credit(TENANT, 0) == 0
    assert (await ledger.get_account(TENANT)).balance == 0


@pytest.mark.asyncio
async def test_credit_rejects_negative_amount(ledger):
    with pytest.raises(ValueError):
        await ledger.credit(TENANT, -1)


@pytest.mark.asyncio
async def test_consume_decrements_until_empty(ledger):
    await ledger.credit(TENANT, 2)

    first = await ledger.consume(TENANT)
    second = await ledger.consume(TENANT)
    third = await ledger.consume(TENANT)

    assert (first.granted, first.remaining) == (True, 1)
    assert (second.granted, second.remaining) == (True, 0)
    assert (third.granted, third.remaining) == (False, 0)
    assert (await ledger.get_account(TENANT)).balance == 0


@pytest.mark.asyncio
async def test_consume_on_empty_balance_leaves_store_unchanged(ledger):
    await ledger.ensure_account(TENANT)
    before = await ledger.get_account(TENANT)

    result = await ledger.consume(TENANT)

    after = await ledger.get_account(TENANT)
    assert result.granted is False
    assert result.remaining == 0
    assert after.balance == before.balance == 0
    assert after.lifetime_credits == before.lifetime_credits
    assert after.last_reset_period == before.last_reset_period


@pytest.mark.asyncio
async def test_consume_and_reset_require_existing_account(ledger):
    with pytest.raises(TenantNotFound):
        await ledger.consume("ghost.myshopify.com")
    with pytest.raises(TenantNotFound):
        await ledger.reset_to_quota("ghost.myshopify.com", "2024-02")


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overspend(ledger):
    await ledger.credit(TENANT, 5)

    results = await asyncio.gather(*(ledger.consume(TENANT) for _ in range(20)))

    granted = [result for result in results if result.granted]
    assert len(granted) == 5
    assert len(results) - len(granted) == 15
    assert all(result.remaining >= 0 for result in results)
    assert (await ledger.get_account(TENANT)).balance == 0


@pytest.mark.asyncio
async def test_consumes_for_different_tenants_are_independent(ledger):
    await ledger.credit("a.myshopify.com", 3)
    await ledger.credit("b.myshopify.com", 1)

    await asyncio.gather(
        *(ledger.consume("a.myshopify.com") for _ in range(4)),
        *(ledger.consume("b.myshopify.com") for _ in range(4)),
    )

    assert (await ledger.get_account("a.myshopify.com")).balance == 0
    assert (await ledger.get_account("b.myshopify.com")).balance == 0


@pytest.mark.asyncio
async def test_reset_to_quota_is_idempotent_within_a_period(ledger):
    await ledger.credit(TENANT, 7, monthly_quota=20)

    first = await ledger.reset_to_quota(TENANT, "2024-02")
    await ledger.consume(TENANT)
    second = await ledger.reset_to_quota(TENANT, "2024-02")

    account = await ledger.get_account(TENANT)
    assert first == 20
    assert second == 19
    assert account.balance == 19
    assert account.last_reset_period == "2024-02"


@pytest.mark.asyncio
async def test_reset_to_quota_never_moves_period_backwards(ledger):
    await ledger.credit(TENANT, 7, monthly_quota=20)
    await ledger.reset_to_quota(TENANT, "2024-03")

    await ledger.consume(TENANT)
    balance = await ledger.reset_to_quota(TENANT, "2024-02")

    account = await ledger.get_account(TENANT)
    assert balance == 19
    assert account.last_reset_period == "2024-03"


@pytest.mark.asyncio
async def test_record_conversion_and_enable_flag(ledger):
    await ledger.ensure_account(TENANT)

    assert await ledger.record_conversion(TENANT) == 1
    assert await ledger.record_conversion(TENANT) == 2

    account = await ledger.set_enabled(TENANT, False)
    assert account.is_enabled is False
    assert account.total_conversions == 2

    with pytest.raises(TenantNotFound):
        await ledger.set_enabled("ghost.myshopify.com", True)


@pytest.mark.asyncio
async def test_offboard_tenant_removes_account_and_history(ledger, session_maker):
    await PurchaseAccumulator(ledger).confirm(TENANT, "starter", "charge-1")
    await PurchaseAccumulator(ledger).confirm("other.myshopify.com", "starter", "charge-2")
    async with session_maker() as session:
        session.add(ConsumptionAuditEntry(id="r-1", tenant_id=TENANT, success=True, created_at=ledger.now()))
        await session.commit()

    removed = await ledger.offboard_tenant(TENANT)

    assert removed["accounts"] == 1
    assert removed["purchase_events"] == 1
    assert removed["consumption_audit_entries"] == 1
    assert await ledger.get_account(TENANT) is None
    async with session_maker() as session:
        remaining_purchases = await session.execute(select(func.count(PurchaseEvent.id)))
        remaining_accounts = await session.execute(select(func.count(Account.tenant_id)))
    assert remaining_purchases.scalar() == 1
    assert remaining_accounts.scalar() == 1


@pytest.mark.asyncio
async def test_run_atomic_retries_transient_conflicts(ledger):
    attempts = {"count": 0}

    async def flaky(session):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        return "ok"

    assert await ledger.run_atomic(flaky) == "ok"
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_run_atomic_surfaces_exhausted_conflicts(session_maker, clock):
    ledger = Ledger(session_maker, clock=clock, max_attempts=2)
    attempts = {"count": 0}

    async def always_locked(session):
        attempts["count"] += 1
        raise OperationalError("UPDATE accounts", {}, Exception("could not serialize access"))

    with pytest.raises(LedgerConflict):
        await ledger.run_atomic(always_locked)
    assert attempts["count"] == 2


def test_transient_conflict_detection():
    assert _is_transient_conflict(OperationalError("x", {}, Exception("database is locked")))
    assert not _is_transient_conflict(OperationalError("x", {}, Exception("no such table: accounts")))
    assert not _is_transient_conflict(ValueError("database is locked"))


def test_period_key_uses_utc_calendar_month():
    late_new_year_eve = datetime(2024, 12, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert period_key(late_new_year_eve) == "2025-01"
    assert period_key(datetime(2024, 2, 1)) == "2024-02"


@pytest.mark.asyncio
async def test_new_accounts_carry_default_daily_cap(ledger):
    account = await ledger.ensure_account(TENANT)
    assert account.max_tries_per_user == 5

    updated = await ledger.set_max_tries_per_user(TENANT, 12)
    assert updated.max_tries_per_user == 12

    with pytest.raises(ValueError):
        await ledger.set_max_tries_per_user(TENANT, -1)
    with pytest.raises(TenantNotFound):
        await ledger.set_max_tries_per_user("ghost.myshopify.com", 3)
