import asyncio
from types import SimpleNamespace

import pytest

import main
from services.consumption import ConsumptionGate
from services.errors import TenantNotFound
from services.ledger import Ledger
from services.plans import Plan
from services.purchases import PurchaseAccumulator
from services.renewal import RenewalPolicy


TENANT = "renewal-store.myshopify.com"
PLANS = {"growth": Plan("growth", "Growth", 50, 19.00)}


@pytest.fixture
def ledger(session_maker, clock):
    return Ledger(session_maker, clock=clock)


@pytest.mark.asyncio
async def test_purchase_then_rollover_replaces_balance_with_quota(ledger, clock):
    await ledger.credit(TENANT, 2)
    account = await ledger.get_account(TENANT)
    assert (account.balance, account.monthly_quota, account.last_reset_period) == (2, 0, "2024-01")

    purchase = await PurchaseAccumulator(ledger, plans=PLANS).confirm(TENANT, "growth", "c1")
    assert (purchase.balance, purchase.quota_set) == (52, 50)

    clock.set(2024, 2)
    result = await ConsumptionGate(ledger).try_consume(TENANT)

    account = await ledger.get_account(TENANT)
    assert result.granted is True
    assert result.remaining == 49
    assert account.balance == 49
    assert account.last_reset_period == "2024-02"


@pytest.mark.asyncio
async def test_purchased_credits_are_discarded_by_the_next_renewal(ledger, clock):
    # Additive purchases and replace-on-renewal combine: leftovers do not carry over.
    await PurchaseAccumulator(ledger, plans=PLANS).confirm(TENANT, "growth", "c1")
    await PurchaseAccumulator(ledger, plans=PLANS).confirm(TENANT, "growth", "c2")
    assert (await ledger.get_account(TENANT)).balance == 100

    clock.set(2024, 2)
    assert await RenewalPolicy(ledger).apply(TENANT) == 50


@pytest.mark.asyncio
async def test_renewal_without_plan_clamps_balance_to_zero(ledger, clock):
    await ledger.credit(TENANT, 3)

    clock.set(2024, 2)
    assert await RenewalPolicy(ledger).apply(TENANT) == 0

    account = await ledger.get_account(TENANT)
    assert account.balance == 0
    assert account.last_reset_period == "2024-02"


@pytest.mark.asyncio
async def test_renewal_is_noop_within_the_same_period(ledger):
    await ledger.credit(TENANT, 3, monthly_quota=10)

    assert await RenewalPolicy(ledger).apply(TENANT) == 3
    assert (await ledger.get_account(TENANT)).balance == 3


@pytest.mark.asyncio
async def test_renewal_requires_existing_account(ledger):
    with pytest.raises(TenantNotFound):
        await RenewalPolicy(ledger).apply("ghost.myshopify.com")


@pytest.mark.asyncio
async def test_concurrent_gate_calls_reset_only_once(ledger, clock):
    await ledger.credit(TENANT, 52, monthly_quota=50)

    clock.set(2024, 2)
    gate = ConsumptionGate(ledger)
    results = await asyncio.gather(*(gate.try_consume(TENANT) for _ in range(10)))

    assert all(result.granted for result in results)
    assert (await ledger.get_account(TENANT)).balance == 40


@pytest.mark.asyncio
async def test_sweep_renews_only_stale_accounts(ledger, clock):
    await ledger.credit("stale.myshopify.com", 9, monthly_quota=25)
    await ledger.credit("idle.myshopify.com", 4)

    clock.set(2024, 2)
    await ledger.credit("fresh.myshopify.com", 7, monthly_quota=25)

    policy = RenewalPolicy(ledger)
    assert await policy.sweep() == 2
    assert await policy.sweep() == 0

    assert (await ledger.get_account("stale.myshopify.com")).balance == 25
    assert (await ledger.get_account("idle.myshopify.com")).balance == 0
    assert (await ledger.get_account("fresh.myshopify.com")).balance == 7


@pytest.mark.asyncio
async def test_periodic_sweep_waits_one_interval_before_first_tick(monkeypatch):
    calls = []

    class RecordingPolicy:
        async def sweep(self):
            calls.append("sweep")
            return 0

    async def fake_sleep(seconds):
        calls.append(("sleep", seconds))
        if len(calls) >= 3:
            raise asyncio.CancelledError()

    monkeypatch.setattr(main.settings, "RENEWAL_SWEEP_INTERVAL_MINUTES", 60)
    monkeypatch.setattr(main, "asyncio", SimpleNamespace(sleep=fake_sleep))

    with pytest.raises(asyncio.CancelledError):
        await main._periodic_renewal_sweep(RecordingPolicy())

    assert calls == [("sleep", 3600), "sweep", ("sleep", 3600)]
