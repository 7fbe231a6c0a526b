"""Integration tests for alert delivery and history"""

import pytest
from decimal import Decimal
from bison_billing.domain.exceptions import NotificationError
from bison_billing.domain.ledger import apply_transaction
from bison_billing.domain.models import AlertConfig, BillingConfig, NotifyChannel, TransactionKind

WEBHOOK = NotifyChannel(id="ch-1", type="webhook", name="ops-webhook", config={"url": "http://hooks.local/ops"})
DINGTALK = NotifyChannel(id="ch-2", type="dingtalk", name="ops-dingtalk", config={"url": "http://ding.local/robot"})


@pytest.mark.asyncio
async def test_failing_channel_does_not_block_others(engine, make_account, sender):
    make_account("team-a", balance=Decimal("-5"))
    sender.failing.add("ops-webhook")
    config = AlertConfig(channels=(WEBHOOK, DINGTALK))

    [alert] = await engine.dispatcher.check_and_notify(config)

    assert alert.type == "negative_balance"
    assert alert.severity == "critical"
    assert alert.sent is True
    assert alert.channels == ["ops-dingtalk"]
    assert "500" in alert.errors["ops-webhook"]
    assert [name for name, _ in sender.sent] == ["ops-dingtalk"]

    [recorded] = engine.alert_repo.history()
    assert recorded.id == alert.id
    assert recorded.channels == ["ops-dingtalk"]
    assert "ops-webhook" in recorded.errors


@pytest.mark.asyncio
async def test_all_channels_failing_marks_alert_unsent(engine, make_account, sender):
    make_account("team-a", balance=Decimal("-5"))
    sender.failing.update({"ops-webhook", "ops-dingtalk"})

    [alert] = await engine.dispatcher.check_and_notify(AlertConfig(channels=(WEBHOOK, DINGTALK)))

    assert alert.sent is False
    assert alert.sent_at is None
    assert set(alert.errors) == {"ops-webhook", "ops-dingtalk"}
    assert engine.alert_repo.history()[0].sent is False


@pytest.mark.asyncio
async def test_disabled_channel_is_skipped(engine, make_account, sender):
    make_account("team-a", balance=Decimal("10"))
    muted = NotifyChannel(id="ch-3", type="wechat", name="muted", enabled=False)

    [alert] = await engine.dispatcher.check_and_notify(AlertConfig(channels=(WEBHOOK, muted)))

    assert alert.type == "low_balance"
    assert alert.severity == "warning"
    assert alert.channels == ["ops-webhook"]
    assert alert.errors == {}


@pytest.mark.asyncio
async def test_healthy_team_gets_no_alert(engine, make_account, sender):
    make_account("team-a", balance=Decimal("500"))

    alerts = await engine.dispatcher.check_and_notify(AlertConfig(channels=(WEBHOOK,)))

    assert alerts == []
    assert sender.sent == []


@pytest.mark.asyncio
async def test_critical_percent_of_daily_consumption(engine, store, make_account, clock):
    make_account("team-a", balance=Decimal("200"))
    clock.advance(hours=12)
    account = store.get_account("team-a")
    updated, transaction = apply_transaction(account, Decimal("-50"), TransactionKind.CHARGE, clock(), reason="usage")
    store.compare_and_swap("team-a", account.version, updated, transaction)
    clock.advance(hours=12)

    # 50 per day consumed, 150 left; critical below 400% of a day
    config = AlertConfig(critical_percent=Decimal("400"), channels=(WEBHOOK,))
    [alert] = await engine.dispatcher.check_and_notify(config)

    assert alert.type == "low_balance"
    assert alert.severity == "critical"


@pytest.mark.asyncio
async def test_notify_cycle_sends_suspension_notice(engine, make_account, sender, clock):
    make_account("team-a", balance=Decimal("-10"), overdue_at=clock())
    make_account("team-b", balance=Decimal("50"))
    make_account("team-c", balance=Decimal("500"))
    clock.advance(days=4)
    report = await engine.runner.run_cycle(BillingConfig())

    alerts = await engine.dispatcher.notify_cycle(report, AlertConfig(channels=(WEBHOOK,)))

    by_target = {a.target: a for a in alerts}
    assert set(by_target) == {"team-a", "team-b"}
    assert by_target["team-a"].type == "suspended"
    assert by_target["team-a"].severity == "critical"
    assert "-10.00" in by_target["team-a"].message
    assert by_target["team-b"].type == "low_balance"


@pytest.mark.asyncio
async def test_alert_without_channels_is_still_recorded(engine, make_account):
    make_account("team-a", balance=Decimal("-1"))

    [alert] = await engine.dispatcher.check_and_notify(AlertConfig())

    assert alert.sent is False
    assert len(engine.alert_repo.history()) == 1


@pytest.mark.asyncio
async def test_channel_test_delivers_info_message(engine, sender):
    await engine.dispatcher.test_channel(WEBHOOK)

    [(name, alert)] = sender.sent
    assert name == "ops-webhook"
    assert alert.type == "test"
    assert alert.severity == "info"


@pytest.mark.asyncio
async def test_channel_test_raises_on_failure(engine, sender):
    sender.failing.add("ops-webhook")
    with pytest.raises(NotificationError):
        await engine.dispatcher.test_channel(WEBHOOK)
