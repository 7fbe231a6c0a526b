"""Administrative account operations: provisioning, manual recharge and per-team settings"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from bison_billing.config import settings
from bison_billing.domain.alerts import estimate_daily_consumption, estimate_overdue_at
from bison_billing.domain.exceptions import ConflictError, InvalidAmountError
from bison_billing.domain.ledger import apply_recharge
from bison_billing.domain.models import (
    Account,
    AccountState,
    AutoRechargePolicy,
    BillingConfig,
    Transaction,
)
from bison_billing.domain.recharge_schedule import next_execution
from bison_billing.domain.suspension import effective_grace_period, evaluate, grace_remaining
from bison_billing.engine.alerts import CONSUMPTION_HISTORY_LIMIT
from bison_billing.engine.suspension import SuspensionController, SuspensionResult
from bison_billing.infrastructure.database.repositories import LedgerStore
from bison_billing.infrastructure.observability.metrics import ledger_conflict_counter
from bison_billing.utils.date_utils import local_date, utcnow

# Admin writes race with the engine loops; retry a few times before giving up
MAX_WRITE_ATTEMPTS = 3


@dataclass
class AccountView:
    """Account with derived state and consumption estimates"""

    account: Account
    state: AccountState
    daily_consumption: Decimal
    estimated_overdue_at: Optional[datetime]
    grace_remaining: str
    next_auto_recharge: Optional[date]


@dataclass
class RechargeResult:
    account: Account
    transaction: Transaction
    suspension: SuspensionResult


class AccountService:
    """Admin-facing operations; every write goes through compare-and-swap"""

    def __init__(
        self,
        store: LedgerStore,
        suspension: SuspensionController,
        timezone_name: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.suspension = suspension
        self.timezone_name = timezone_name or settings.timezone
        self.clock = clock

    def provision(self, entity_id: str, grace_period: Optional[timedelta] = None) -> Account:
        if grace_period is not None and grace_period < timedelta(0):
            raise InvalidAmountError("Grace period must not be negative")
        account = self.store.create_account(entity_id, self.clock(), grace_period=grace_period)
        logging.info("Account provisioned", extra={"entity_id": entity_id})
        return account

    def describe(self, account: Account, config: BillingConfig, now: datetime | None = None) -> AccountView:
        now = now or self.clock()
        grace_period = effective_grace_period(account, config.grace_period)
        transactions = self.store.list_transactions(account.id, limit=CONSUMPTION_HISTORY_LIMIT)
        daily = estimate_daily_consumption(transactions, now)

        policy = account.auto_recharge
        next_recharge = (
            next_execution(policy, local_date(now, self.timezone_name)) if policy is not None and policy.enabled else None
        )

        return AccountView(
            account=account,
            state=evaluate(account, config.warning_threshold, grace_period, now).state,
            daily_consumption=daily,
            estimated_overdue_at=estimate_overdue_at(account.balance, daily, now),
            grace_remaining=grace_remaining(account.overdue_at, grace_period, now),
            next_auto_recharge=next_recharge,
        )

    def view(self, entity_id: str, config: BillingConfig) -> AccountView:
        return self.describe(self.store.get_account(entity_id), config)

    async def recharge(
        self,
        entity_id: str,
        amount: Decimal,
        config: BillingConfig,
        operator: str = "admin",
        reason: Optional[str] = None,
    ) -> RechargeResult:
        """
        Credit a team and reconcile its suspension state immediately.

        Raises:
            InvalidAmountError: Amount is not positive
            AccountNotFoundError: No such team
            ConflictError: The account kept changing during every attempt
        """
        now = self.clock()
        account, transaction = self._update(
            entity_id,
            lambda a: apply_recharge(a, amount, now, operator=operator, reason=reason or "Manual recharge"),
            operation="recharge",
        )
        logging.info(
            "Manual recharge applied",
            extra={"entity_id": entity_id, "amount": str(transaction.amount), "balance": str(account.balance), "operator": operator},
        )

        result = await self.suspension.reconcile(account, config, now)
        return RechargeResult(account=result.account, transaction=transaction, suspension=result)

    def set_auto_recharge(self, entity_id: str, policy: Optional[AutoRechargePolicy]) -> Account:
        """
        Replace or clear the auto-recharge policy.

        The last executed occurrence is carried over so re-saving a policy on
        a scheduled day does not credit the team twice. Writing settings also
        clears a previous per-account configuration error.
        """

        def _apply(account: Account) -> Tuple[Account, None]:
            new_policy = policy
            if new_policy is not None and account.auto_recharge is not None:
                new_policy = replace(new_policy, last_executed=account.auto_recharge.last_executed)
            return replace(account, auto_recharge=new_policy, config_error=None), None

        account, _ = self._update(entity_id, _apply, operation="settings")
        logging.info("Auto-recharge policy updated", extra={"entity_id": entity_id, "enabled": bool(policy and policy.enabled)})
        return account

    def set_grace_period(self, entity_id: str, grace_period: Optional[timedelta]) -> Account:
        """Set or clear the per-team grace period override"""
        if grace_period is not None and grace_period < timedelta(0):
            raise InvalidAmountError("Grace period must not be negative")
        account, _ = self._update(
            entity_id,
            lambda a: (replace(a, grace_period=grace_period, config_error=None), None),
            operation="settings",
        )
        return account

    def delete(self, entity_id: str) -> None:
        self.store.delete_account(entity_id)
        logging.info("Account deleted", extra={"entity_id": entity_id})

    def low_balance(self, threshold: Decimal) -> List[Account]:
        return self.store.low_balance_accounts(threshold)

    def _update(self, entity_id: str, mutate, operation: str):
        """Read, mutate and compare-and-swap with bounded retries"""
        for _ in range(MAX_WRITE_ATTEMPTS):
            account = self.store.get_account(entity_id)
            updated, transaction = mutate(account)
            try:
                return self.store.compare_and_swap(entity_id, account.version, updated, transaction), transaction
            except ConflictError:
                ledger_conflict_counter.labels(operation=operation).inc()
        raise ConflictError(f"Account {entity_id} kept changing, {operation} not applied")
