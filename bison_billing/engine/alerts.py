"""Alert dispatcher - threshold checks, suspension notices and per-channel delivery"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Collection, List, Optional, Sequence

from bison_billing.domain.alerts import estimate_daily_consumption, evaluate_balance_alert, suspension_alert
from bison_billing.domain.exceptions import NotificationError, StoreUnavailableError
from bison_billing.domain.models import Alert, AlertConfig, CycleReport, NotifyChannel
from bison_billing.engine.ports import NotificationSender
from bison_billing.infrastructure.database.repositories import AlertRepository, LedgerStore
from bison_billing.infrastructure.observability.metrics import alert_delivery_counter
from bison_billing.utils.date_utils import utcnow

# Transactions considered when estimating daily consumption
CONSUMPTION_HISTORY_LIMIT = 500


class AlertDispatcher:
    """
    Sends alerts to every enabled channel.

    Channels are independent: a failing channel is recorded on the alert
    and never prevents delivery through the others. Failed deliveries are
    not queued for later cycles.
    """

    def __init__(
        self,
        store: LedgerStore,
        alerts: AlertRepository,
        sender: NotificationSender,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.alerts = alerts
        self.sender = sender
        self.clock = clock

    async def send_alert(self, alert: Alert, channels: Sequence[NotifyChannel]) -> Alert:
        enabled = [c for c in channels if c.enabled]
        results = await asyncio.gather(
            *(self._deliver(channel, alert) for channel in enabled),
            return_exceptions=True,
        )

        for channel, result in zip(enabled, results):
            if result is None:
                alert.channels.append(channel.name)
            else:
                alert.errors[channel.name] = str(result)

        alert.sent = bool(alert.channels)
        alert.sent_at = self.clock() if alert.sent else None

        try:
            self.alerts.record(alert)
        except StoreUnavailableError as e:
            logging.error(f"Failed to record alert: {e}", extra={"alert_type": alert.type, "target": alert.target})

        return alert

    async def _deliver(self, channel: NotifyChannel, alert: Alert) -> Optional[str]:
        try:
            await self.sender.send(channel, alert)
        except NotificationError as e:
            alert_delivery_counter.labels(channel_type=channel.type, result="error").inc()
            logging.warning(
                f"Alert delivery failed: {e}",
                extra={"channel": channel.name, "alert_type": alert.type, "target": alert.target},
            )
            return str(e)

        alert_delivery_counter.labels(channel_type=channel.type, result="sent").inc()
        return None

    async def check_and_notify(
        self, config: AlertConfig, now: datetime | None = None, exclude: Collection[str] = ()
    ) -> List[Alert]:
        """Evaluate balance thresholds for every team and send the resulting alerts"""
        now = now or self.clock()
        sent: List[Alert] = []
        for account in self.store.list_all():
            if account.id in exclude:
                continue
            transactions = self.store.list_transactions(account.id, limit=CONSUMPTION_HISTORY_LIMIT)
            daily = estimate_daily_consumption(transactions, now)
            alert = evaluate_balance_alert(account, daily, config, now)
            if alert is not None:
                sent.append(await self.send_alert(alert, config.channels))
        return sent

    async def notify_cycle(self, report: CycleReport, config: AlertConfig, now: datetime | None = None) -> List[Alert]:
        """
        Post-cycle alerts.

        Teams suspended during the cycle get a critical notice regardless of
        thresholds; every other team is checked against the thresholds.
        """
        now = now or self.clock()
        sent: List[Alert] = []
        suspended = [o.entity_id for o in report.suspended]
        for outcome in report.suspended:
            alert = suspension_alert(outcome.entity_id, outcome.balance, now)
            sent.append(await self.send_alert(alert, config.channels))
        sent.extend(await self.check_and_notify(config, now, exclude=set(suspended)))
        return sent

    async def test_channel(self, channel: NotifyChannel) -> None:
        """
        Send a test message through one channel.

        Raises:
            NotificationError: Delivery failed
        """
        alert = Alert(
            type="test",
            severity="info",
            target=channel.name,
            message="This is a test notification from Bison billing",
            timestamp=self.clock(),
        )
        await self.sender.send(channel, alert)
