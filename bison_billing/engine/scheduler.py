"""Background scheduler running the billing, auto-recharge and alert loops"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, Deque, List, Optional, Tuple

from bison_billing.config import settings
from bison_billing.domain.models import BillingConfig, CycleReport, TaskExecution
from bison_billing.engine.alerts import AlertDispatcher
from bison_billing.engine.auto_recharge import AutoRechargeEvaluator
from bison_billing.engine.billing_cycle import BillingCycleRunner
from bison_billing.infrastructure.database.repositories import ConfigRepository
from bison_billing.utils.date_utils import utcnow

BILLING_TASK = "billing"
AUTO_RECHARGE_TASK = "auto_recharge"
ALERT_TASK = "balance_alert"

MAX_EXECUTIONS = 1000


class Scheduler:
    """
    Owns the three periodic loops.

    A failed run is recorded and retried with exponential backoff capped at
    the loop interval. Stopping cancels any in-flight run; partially
    processed cycles lose nothing because each team's update is atomic.
    """

    def __init__(
        self,
        runner: BillingCycleRunner,
        evaluator: AutoRechargeEvaluator,
        dispatcher: AlertDispatcher,
        config_repo: ConfigRepository,
        auto_recharge_interval: float | None = None,
        alert_interval: float | None = None,
        backoff_base: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runner = runner
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.config_repo = config_repo
        self.auto_recharge_interval = auto_recharge_interval or settings.auto_recharge_interval_seconds
        self.alert_interval = alert_interval or settings.alert_interval_seconds
        self.backoff_base = backoff_base if backoff_base is not None else settings.store_backoff_base
        self.clock = clock

        self._billing_interval = BillingConfig().interval.total_seconds()
        self.last_report: Optional[CycleReport] = None
        self._executions: Deque[TaskExecution] = deque(maxlen=MAX_EXECUTIONS)
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(BILLING_TASK, lambda: self._billing_interval, self.run_billing)),
            asyncio.create_task(self._loop(AUTO_RECHARGE_TASK, lambda: self.auto_recharge_interval, self.run_auto_recharge)),
            asyncio.create_task(self._loop(ALERT_TASK, lambda: self.alert_interval, self.run_alerts)),
        ]
        logging.info("Scheduler started")

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logging.info("Scheduler stopped")

    async def _loop(self, name: str, interval: Callable[[], float], job: Callable[[], Awaitable[str]]) -> None:
        failures = 0
        while True:
            delay = interval()
            if failures:
                delay = min(self.backoff_base * (2 ** (failures - 1)), delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            execution = await self.execute(name, job)
            failures = failures + 1 if execution.status == "failed" else 0

    async def execute(self, name: str, job: Callable[[], Awaitable[str]]) -> TaskExecution:
        """Run one job and record its execution"""
        execution = TaskExecution(task_name=name, start_time=self.clock())
        try:
            execution.status = await job()
        except Exception as e:
            execution.status = "failed"
            execution.error = str(e)
            logging.error(f"Scheduled task {name} failed: {e}", extra={"task": name})
        execution.end_time = self.clock()
        self._executions.append(execution)
        return execution

    async def run_billing(self, on_report: Callable[[CycleReport], None] | None = None) -> str:
        config = self.config_repo.load_billing_config()
        self._billing_interval = config.interval.total_seconds()
        report = await self.runner.run_cycle(config)
        self.last_report = report
        if on_report is not None:
            on_report(report)
        if not report.enabled:
            return "skipped"
        await self.dispatcher.notify_cycle(report, self.config_repo.load_alert_config())
        return "success"

    async def run_auto_recharge(self) -> str:
        await self.evaluator.run(self.config_repo.load_billing_config())
        return "success"

    async def run_alerts(self) -> str:
        await self.dispatcher.check_and_notify(self.config_repo.load_alert_config())
        return "success"

    async def run_billing_now(self) -> Tuple[TaskExecution, Optional[CycleReport]]:
        """
        Run one billing cycle immediately, outside the timer.

        Returns the execution record together with the report of this run,
        which is None when the cycle failed before producing one.
        """
        produced: List[CycleReport] = []
        execution = await self.execute(BILLING_TASK, lambda: self.run_billing(on_report=produced.append))
        return execution, (produced[0] if produced else None)

    def get_executions(self, limit: int = 50, task_name: str | None = None) -> List[TaskExecution]:
        """Recorded executions, most recent first"""
        executions = [e for e in reversed(self._executions) if task_name is None or e.task_name == task_name]
        return executions[:limit] if limit > 0 else executions

