"""Integration tests for the billing cycle runner"""

import asyncio
import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from types import MappingProxyType
from unittest.mock import MagicMock
from bison_billing.domain.exceptions import ConflictError, StoreUnavailableError
from bison_billing.domain.ledger import apply_recharge
from bison_billing.domain.models import AccountState, BillingConfig, ResourcePrice, TransactionKind
from bison_billing.engine.billing_cycle import BillingCycleRunner
from bison_billing.infrastructure.database.models import AccountRecord

CPU_ONLY = BillingConfig(
    pricing=MappingProxyType({"cpu": ResourcePrice(price=Decimal("0.05"), unit="core-hour")}),
    warning_threshold=Decimal("50"),
)


def _charges(store, entity_id):
    return [t for t in store.list_transactions(entity_id) if t.kind == TransactionKind.CHARGE and t.reason != "seed"]


@pytest.mark.asyncio
async def test_charge_example_100_to_97_50(engine, store, make_account, usage_source, clock):
    """50 core-hours at 0.05 leaves 97.50, one charge, still Active"""
    make_account("team-a", balance=Decimal("100.00"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(CPU_ONLY)

    [outcome] = report.outcomes
    assert outcome.status == "charged"
    assert outcome.amount == Decimal("2.50")
    assert outcome.state == AccountState.ACTIVE

    account = store.get_account("team-a")
    assert account.balance == Decimal("97.50")
    assert account.last_billed_at == clock()
    [charge] = _charges(store, "team-a")
    assert charge.amount == Decimal("-2.50")
    assert charge.resulting_balance == Decimal("97.50")


@pytest.mark.asyncio
async def test_second_run_without_time_passing_is_a_no_op(engine, store, make_account, usage_source, clock):
    """Re-running over the same window sees a zero-length window and charges nothing"""
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)

    await engine.runner.run_cycle(CPU_ONLY)
    report = await engine.runner.run_cycle(CPU_ONLY)

    assert report.outcomes[0].status == "skipped"
    assert store.get_account("team-a").balance == Decimal("97.50")
    assert len(_charges(store, "team-a")) == 1
    assert len(usage_source.calls) == 1


@pytest.mark.asyncio
async def test_fetch_error_skips_team_and_bills_union_window_later(engine, store, make_account, usage_source, clock):
    """One team's usage failure never blocks the others and no usage is lost"""
    make_account("team-a", balance=Decimal("100"))
    make_account("team-b", balance=Decimal("100"))
    usage_source.rates = {"team-a": {"cpu": Decimal("10")}, "team-b": {"cpu": Decimal("10")}}
    usage_source.failures.add("team-a")
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(CPU_ONLY)

    statuses = {o.entity_id: o.status for o in report.outcomes}
    assert statuses == {"team-a": "fetch_error", "team-b": "charged"}
    assert store.get_account("team-a").last_billed_at == clock() - timedelta(hours=1)

    usage_source.failures.clear()
    clock.advance(hours=1)
    await engine.runner.run_cycle(CPU_ONLY)

    # Two hours of 10 core-hours at 0.05
    assert store.get_account("team-a").balance == Decimal("99.00")
    assert store.get_account("team-b").balance == Decimal("99.00")


@pytest.mark.asyncio
async def test_fetch_timeout_is_transient(store, make_account, engine, clock):
    class SlowUsageSource:
        async def get_usage(self, entity_id, window_start, window_end):
            await asyncio.sleep(10)

    make_account("team-a", balance=Decimal("100"))
    runner = BillingCycleRunner(store, SlowUsageSource(), engine.suspension, fetch_timeout=0.01, clock=clock)
    clock.advance(hours=1)

    report = await runner.run_cycle(CPU_ONLY)

    assert report.outcomes[0].status == "fetch_error"
    assert "timed out" in report.outcomes[0].error


@pytest.mark.asyncio
async def test_invalid_price_flags_only_teams_using_it(engine, store, make_account, usage_source, clock):
    config = BillingConfig(
        pricing=MappingProxyType(
            {"cpu": ResourcePrice(price=Decimal("0.05")), "gpu": ResourcePrice(price=None)}
        )
    )
    make_account("team-gpu", balance=Decimal("100"))
    make_account("team-cpu", balance=Decimal("100"))
    usage_source.rates = {
        "team-gpu": {"cpu": Decimal("1"), "gpu": Decimal("1")},
        "team-cpu": {"cpu": Decimal("20")},
    }
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(config)

    statuses = {o.entity_id: o.status for o in report.outcomes}
    assert statuses == {"team-gpu": "config_error", "team-cpu": "charged"}
    assert store.get_account("team-gpu").balance == Decimal("100")
    assert store.get_account("team-cpu").balance == Decimal("99.00")


@pytest.mark.asyncio
async def test_malformed_account_policy_is_flagged(engine, store, make_account, session_factory, clock):
    make_account("team-a", balance=Decimal("100"))
    with session_factory() as db:
        db.get(AccountRecord, "team-a").grace_period_seconds = -60
        db.commit()
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(CPU_ONLY)

    assert report.outcomes[0].status == "config_error"
    assert store.get_account("team-a").last_billed_at == clock() - timedelta(hours=1)


@pytest.mark.asyncio
async def test_recharge_during_fetch_is_not_lost(engine, store, make_account, usage_source, clock):
    """A manual recharge landing mid-cycle forces one retry; both changes are kept"""
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)

    def recharge_once(entity_id):
        usage_source.on_fetch = None
        account = store.get_account(entity_id)
        updated, transaction = apply_recharge(account, Decimal("10"), clock(), operator="admin")
        store.compare_and_swap(entity_id, account.version, updated, transaction)

    usage_source.on_fetch = recharge_once

    report = await engine.runner.run_cycle(CPU_ONLY)

    assert report.outcomes[0].status == "charged"
    assert store.get_account("team-a").balance == Decimal("107.50")
    assert len(_charges(store, "team-a")) == 1
    # The window did not move, so usage was not fetched again
    assert len(usage_source.calls) == 1
    assert store.ledger_total("team-a") == store.get_account("team-a").balance


@pytest.mark.asyncio
async def test_concurrent_cycles_charge_exactly_once(engine, store, make_account, usage_source, clock):
    """Two overlapping runners: one commits, the other sees the window already billed"""
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    other_runner = BillingCycleRunner(store, usage_source, engine.suspension, clock=clock)
    clock.advance(hours=1)

    first, second = await asyncio.gather(
        engine.runner.run_cycle(CPU_ONLY),
        other_runner.run_cycle(CPU_ONLY),
    )

    statuses = sorted([first.outcomes[0].status, second.outcomes[0].status])
    assert statuses == ["charged", "skipped"]
    assert store.get_account("team-a").balance == Decimal("97.50")
    assert len(_charges(store, "team-a")) == 1


@pytest.mark.asyncio
async def test_repeated_conflicts_defer_to_next_cycle(engine, store, make_account, usage_source, clock, monkeypatch):
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)
    monkeypatch.setattr(store, "compare_and_swap", MagicMock(side_effect=ConflictError("version moved")))

    report = await engine.runner.run_cycle(CPU_ONLY)

    assert report.outcomes[0].status == "deferred"
    monkeypatch.undo()
    account = store.get_account("team-a")
    assert account.balance == Decimal("100")
    assert account.last_billed_at == clock() - timedelta(hours=1)


@pytest.mark.asyncio
async def test_store_outage_fails_the_cycle(engine, store, monkeypatch):
    monkeypatch.setattr(store, "list_accounts", MagicMock(side_effect=StoreUnavailableError("down")))
    with pytest.raises(StoreUnavailableError):
        await engine.runner.run_cycle(CPU_ONLY)


@pytest.mark.asyncio
async def test_disabled_billing_charges_nothing(engine, store, make_account, usage_source, clock):
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(replace(CPU_ONLY, enabled=False))

    assert report.enabled is False
    assert report.outcomes == []
    assert store.get_account("team-a").balance == Decimal("100")


@pytest.mark.asyncio
async def test_charge_into_negative_starts_grace(engine, store, make_account, usage_source, clock):
    make_account("team-a", balance=Decimal("1"))
    usage_source.rates["team-a"] = {"cpu": Decimal("50")}
    clock.advance(hours=1)

    report = await engine.runner.run_cycle(CPU_ONLY)

    account = store.get_account("team-a")
    assert account.balance == Decimal("-1.50")
    assert account.overdue_at == clock()
    assert report.outcomes[0].state == AccountState.GRACE
    assert not account.suspended


@pytest.mark.asyncio
async def test_cancelled_cycle_persists_nothing(store, make_account, engine, clock):
    """Cancelling mid-fetch leaves every account exactly as it was"""
    blocked = asyncio.Event()

    class BlockingUsageSource:
        async def get_usage(self, entity_id, window_start, window_end):
            blocked.set()
            await asyncio.Event().wait()

    make_account("team-a", balance=Decimal("100"))
    make_account("team-b", balance=Decimal("100"))
    runner = BillingCycleRunner(store, BlockingUsageSource(), engine.suspension, clock=clock)
    clock.advance(hours=1)

    task = asyncio.create_task(runner.run_cycle(CPU_ONLY))
    await blocked.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    for entity_id in ("team-a", "team-b"):
        account = store.get_account(entity_id)
        assert account.balance == Decimal("100")
        assert account.last_billed_at == clock() - timedelta(hours=1)
        assert _charges(store, entity_id) == []


@pytest.mark.asyncio
async def test_unexpected_workload_error_does_not_fail_cycle(
    engine, store, make_account, usage_source, workload, clock, monkeypatch
):
    make_account("team-a", balance=Decimal("-10"), overdue_at=clock())
    make_account("team-b", balance=Decimal("100"))
    usage_source.rates["team-b"] = {"cpu": Decimal("10")}
    clock.advance(days=4)

    async def broken_suspend(entity_id):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(workload, "suspend", broken_suspend)

    report = await engine.runner.run_cycle(CPU_ONLY)

    outcomes = {o.entity_id: o for o in report.outcomes}
    assert outcomes["team-a"].error == "unexpected"
    assert outcomes["team-a"].action is None
    assert store.get_account("team-a").suspended is False
    # 960 core-hours at 0.05
    assert outcomes["team-b"].status == "charged"
    assert outcomes["team-b"].amount == Decimal("48")
    assert store.get_account("team-b").balance == Decimal("52")
