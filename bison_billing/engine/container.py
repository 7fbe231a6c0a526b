"""Wires stores, clients and engine components together"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from bison_billing.engine.accounts import AccountService
from bison_billing.engine.alerts import AlertDispatcher
from bison_billing.engine.auto_recharge import AutoRechargeEvaluator
from bison_billing.engine.billing_cycle import BillingCycleRunner
from bison_billing.engine.ports import NotificationSender, UsageSource, WorkloadController
from bison_billing.engine.scheduler import Scheduler
from bison_billing.engine.suspension import SuspensionController
from bison_billing.infrastructure.database.repositories import AlertRepository, ConfigRepository, LedgerStore
from bison_billing.utils.date_utils import utcnow


@dataclass
class Engine:
    store: LedgerStore
    config_repo: ConfigRepository
    alert_repo: AlertRepository
    suspension: SuspensionController
    runner: BillingCycleRunner
    evaluator: AutoRechargeEvaluator
    dispatcher: AlertDispatcher
    accounts: AccountService
    scheduler: Scheduler


def build_engine(
    session_factory: sessionmaker,
    usage_source: UsageSource,
    workload: WorkloadController,
    sender: NotificationSender,
    clock: Callable[[], datetime] = utcnow,
) -> Engine:
    store = LedgerStore(session_factory)
    config_repo = ConfigRepository(session_factory)
    alert_repo = AlertRepository(session_factory)

    suspension = SuspensionController(store, workload, clock=clock)
    runner = BillingCycleRunner(store, usage_source, suspension, clock=clock)
    evaluator = AutoRechargeEvaluator(store, suspension, clock=clock)
    dispatcher = AlertDispatcher(store, alert_repo, sender, clock=clock)

    return Engine(
        store=store,
        config_repo=config_repo,
        alert_repo=alert_repo,
        suspension=suspension,
        runner=runner,
        evaluator=evaluator,
        dispatcher=dispatcher,
        accounts=AccountService(store, suspension, clock=clock),
        scheduler=Scheduler(runner, evaluator, dispatcher, config_repo, clock=clock),
    )
