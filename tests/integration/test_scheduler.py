"""Integration tests for the background scheduler"""

import asyncio
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from bison_billing.domain.exceptions import StoreUnavailableError
from bison_billing.domain.models import BillingConfig
from bison_billing.engine.scheduler import ALERT_TASK, AUTO_RECHARGE_TASK, BILLING_TASK, Scheduler

@pytest.mark.asyncio
async def test_execute_records_failure(engine):
    async def broken():
        raise StoreUnavailableError("database is down")

    execution = await engine.scheduler.execute(BILLING_TASK, broken)

    assert execution.status == "failed"
    assert execution.error == "database is down"
    assert engine.scheduler.get_executions() == [execution]

@pytest.mark.asyncio
async def test_executions_most_recent_first(engine, clock):
    async def ok():
        return "success"

    await engine.scheduler.execute(BILLING_TASK, ok)
    clock.advance(minutes=1)
    await engine.scheduler.execute(ALERT_TASK, ok)
    clock.advance(minutes=1)
    await engine.scheduler.execute(BILLING_TASK, ok)

    executions = engine.scheduler.get_executions()
    assert [e.task_name for e in executions] == [BILLING_TASK, ALERT_TASK, BILLING_TASK]
    assert executions[0].start_time > executions[-1].start_time
    assert len(engine.scheduler.get_executions(task_name=BILLING_TASK)) == 2
    assert len(engine.scheduler.get_executions(limit=1)) == 1

@pytest.mark.asyncio
async def test_run_billing_now_returns_report(engine, make_account, usage_source, clock):
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("10")}
    clock.advance(hours=1)

    execution, report = await engine.scheduler.run_billing_now()

    assert execution.status == "success"
    assert execution.task_name == BILLING_TASK
    assert report.total_charged == Decimal("1")
    assert engine.scheduler.last_report is report


@pytest.mark.asyncio
async def test_run_billing_now_ignores_cycle_finishing_meanwhile(engine, make_account, usage_source, clock, monkeypatch):
    """A scheduled cycle completing before the response is built does not replace this run's report"""
    make_account("team-a", balance=Decimal("100"))
    usage_source.rates["team-a"] = {"cpu": Decimal("10")}
    clock.advance(hours=1)
    notify_cycle = engine.dispatcher.notify_cycle
    notified = []

    async def notify_then_scheduled_cycle(report, config):
        notified.append(report)
        await notify_cycle(report, config)
        if len(notified) == 1:
            usage_source.rates["team-a"] = {"cpu": Decimal("20")}
            clock.advance(hours=1)
            await engine.scheduler.run_billing()

    monkeypatch.setattr(engine.dispatcher, "notify_cycle", notify_then_scheduled_cycle)

    execution, report = await engine.scheduler.run_billing_now()

    assert execution.status == "success"
    assert report.total_charged == Decimal("1")
    assert engine.scheduler.last_report.total_charged == Decimal("2")

@pytest.mark.asyncio
async def test_disabled_billing_is_skipped(engine):
    engine.config_repo.save_billing_config(BillingConfig(enabled=False))

    execution, _ = await engine.scheduler.run_billing_now()

    assert execution.status == "skipped"

@pytest.mark.asyncio
async def test_store_outage_marks_billing_failed(engine, monkeypatch):
    monkeypatch.setattr(engine.store, "list_accounts", MagicMock(side_effect=StoreUnavailableError("down")))

    execution, _ = await engine.scheduler.run_billing_now()

    assert execution.status == "failed"
    assert "down" in execution.error

@pytest.mark.asyncio
async def test_loops_run_until_stopped(engine):
    scheduler = Scheduler(
        engine.runner,
        engine.evaluator,
        engine.dispatcher,
        engine.config_repo,
        auto_recharge_interval=0.01,
        alert_interval=0.01,
        clock=engine.scheduler.clock,
    )

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.running
    names = {e.task_name for e in scheduler.get_executions(limit=0)}
    assert {AUTO_RECHARGE_TASK, ALERT_TASK} <= names
    # Billing interval comes from the billing configuration (one hour)
    assert BILLING_TASK not in names

@pytest.mark.asyncio
async def test_failing_loop_keeps_retrying(engine):
    scheduler = Scheduler(
        engine.runner,
        engine.evaluator,
        engine.dispatcher,
        engine.config_repo,
        auto_recharge_interval=0.01,
        alert_interval=3600,
        backoff_base=0.5,
        clock=engine.scheduler.clock,
    )
    scheduler.run_auto_recharge = AsyncMock(side_effect=StoreUnavailableError("down"))

    await scheduler.start()
    await asyncio.sleep(0.2)
    await scheduler.stop()

    # Backoff never exceeds the loop interval
    failed = scheduler.get_executions(limit=0, task_name=AUTO_RECHARGE_TASK)
    assert len(failed) >= 2
    assert all(e.status == "failed" for e in failed)
