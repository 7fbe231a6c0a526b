"""Auto-recharge evaluator - applies scheduled credits at most once per occurrence"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List

from bison_billing.config import settings
from bison_billing.domain.exceptions import AccountNotFoundError, ConflictError, StoreUnavailableError
from bison_billing.domain.ledger import apply_recharge
from bison_billing.domain.models import BillingConfig, EntityOutcome, TransactionKind
from bison_billing.domain.recharge_schedule import is_due
from bison_billing.engine.concurrency import run_bounded
from bison_billing.engine.suspension import SuspensionController
from bison_billing.infrastructure.database.repositories import LedgerStore
from bison_billing.infrastructure.observability.metrics import auto_recharge_counter, ledger_conflict_counter
from bison_billing.utils.date_utils import local_date, utcnow

RECHARGE_ATTEMPTS = 2


class AutoRechargeEvaluator:
    """
    Credits teams whose policy is due today.

    The occurrence key (today's date in the configured timezone) is stored
    as last_executed in the same compare-and-swap as the credit, so a
    repeated or concurrent evaluation never applies the same occurrence twice.
    """

    def __init__(
        self,
        store: LedgerStore,
        suspension: SuspensionController,
        timezone_name: str | None = None,
        max_concurrency: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.suspension = suspension
        self.timezone_name = timezone_name or settings.timezone
        self.max_concurrency = max_concurrency or settings.max_concurrency
        self.clock = clock

    async def run(self, config: BillingConfig, now: datetime | None = None) -> List[EntityOutcome]:
        now = now or self.clock()
        entity_ids = self.store.list_accounts()
        outcomes = await run_bounded(
            entity_ids,
            lambda entity_id: self._evaluate(entity_id, config, now),
            self.max_concurrency,
        )
        executed = [o for o in outcomes if o.status == "recharged"]
        if executed:
            logging.info(
                "Auto-recharge run completed",
                extra={"step": "auto_recharge_complete", "recharged": [o.entity_id for o in executed]},
            )
        return outcomes

    async def _evaluate(self, entity_id: str, config: BillingConfig, now: datetime) -> EntityOutcome:
        today = local_date(now, self.timezone_name)
        try:
            account = self.store.get_account(entity_id)
            if account.config_error:
                return EntityOutcome(entity_id=entity_id, status="config_error", error=account.config_error)

            for _ in range(RECHARGE_ATTEMPTS):
                policy = account.auto_recharge
                if not is_due(policy, today):
                    return EntityOutcome(entity_id=entity_id, status="not_due", balance=account.balance)

                updated, transaction = apply_recharge(
                    account,
                    policy.amount,
                    now,
                    reason=f"Auto recharge ({policy.schedule})",
                    kind=TransactionKind.AUTO_RECHARGE,
                )
                updated = replace(updated, auto_recharge=replace(policy, last_executed=today))
                try:
                    account = self.store.compare_and_swap(entity_id, account.version, updated, transaction)
                except ConflictError:
                    ledger_conflict_counter.labels(operation="auto_recharge").inc()
                    account = self.store.get_account(entity_id)
                    continue

                auto_recharge_counter.labels(schedule=policy.schedule).inc()
                logging.info(
                    "Auto recharge applied",
                    extra={
                        "entity_id": entity_id,
                        "amount": str(policy.amount),
                        "balance": str(account.balance),
                        "occurrence": today.isoformat(),
                    },
                )
                try:
                    result = await self.suspension.reconcile(account, config, now)
                except (AccountNotFoundError, StoreUnavailableError):
                    raise
                except Exception as e:
                    # The credit is committed; suspension catches up on the next pass
                    logging.error(f"Unexpected error reconciling suspension: {e}", extra={"entity_id": entity_id})
                    return EntityOutcome(
                        entity_id=entity_id,
                        status="recharged",
                        amount=transaction.amount,
                        balance=account.balance,
                        error=str(e),
                    )
                return EntityOutcome(
                    entity_id=entity_id,
                    status="recharged",
                    amount=transaction.amount,
                    balance=result.account.balance,
                    state=result.state,
                    action=result.action,
                    error=result.error,
                )

            return EntityOutcome(entity_id=entity_id, status="deferred", error="concurrent updates")

        except AccountNotFoundError:
            return EntityOutcome(entity_id=entity_id, status="skipped", error="account deleted")