"""Suspension controller - drives workload actions from the derived account state"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Tuple

from bison_billing.config import settings
from bison_billing.domain.exceptions import ActionError, ConflictError, ResumeRefusedError
from bison_billing.domain.ledger import overdue_after
from bison_billing.domain.models import Account, AccountState, BillingConfig
from bison_billing.domain.suspension import (
    RESUME,
    SUSPEND,
    effective_grace_period,
    evaluate,
    state_after_action,
)
from bison_billing.engine.ports import WorkloadController
from bison_billing.infrastructure.database.repositories import LedgerStore
from bison_billing.infrastructure.observability.metrics import ledger_conflict_counter, workload_action_counter
from bison_billing.utils.date_utils import utcnow


@dataclass
class SuspensionResult:
    """State of one team after reconciliation"""

    account: Account
    state: AccountState
    action: Optional[str] = None  # suspended | resumed
    error: Optional[str] = None


class SuspensionController:
    """
    Reconciles the suspended flag with the state derived from the ledger.

    The flag is only written after the workload controller confirms, so a
    failed suspend leaves the team in Grace and a failed resume leaves it
    Suspended; the next reconciliation retries.
    """

    def __init__(
        self,
        store: LedgerStore,
        workload: WorkloadController,
        action_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.workload = workload
        self.action_timeout = action_timeout or settings.workload_timeout_seconds
        self.clock = clock

    async def reconcile(self, account: Account, config: BillingConfig, now: datetime | None = None) -> SuspensionResult:
        now = now or self.clock()

        # Repair a record whose overdue timestamp disagrees with its balance
        if (account.balance < 0) != (account.overdue_at is not None):
            try:
                account = self._persist(
                    account,
                    lambda a: replace(a, overdue_at=overdue_after(a.overdue_at, a.balance, now)),
                )
            except ConflictError as e:
                logging.warning("Overdue timestamp repair deferred", extra={"entity_id": account.id, "error": str(e)})

        grace_period = effective_grace_period(account, config.grace_period)
        evaluation = evaluate(account, config.warning_threshold, grace_period, now)
        if evaluation.action is None:
            return SuspensionResult(account=account, state=evaluation.state)

        call = self.workload.suspend if evaluation.action == SUSPEND else self.workload.resume
        try:
            await asyncio.wait_for(call(account.id), timeout=self.action_timeout)
        except asyncio.TimeoutError:
            error = f"Workload {evaluation.action} timed out after {self.action_timeout}s"
        except ActionError as e:
            error = str(e)
        else:
            error = None

        if error is not None:
            workload_action_counter.labels(action=evaluation.action, result="error").inc()
            logging.warning(
                f"Workload {evaluation.action} failed, will retry next cycle",
                extra={"entity_id": account.id, "state": evaluation.state.value, "error": error},
            )
            return SuspensionResult(account=account, state=evaluation.state, error=error)

        workload_action_counter.labels(action=evaluation.action, result="ok").inc()
        suspended = evaluation.action == SUSPEND
        try:
            account, recorded = self._record_action(account, suspended, config, now)
        except ConflictError as e:
            # Workloads already changed; the flag catches up on the next pass
            logging.warning(
                "Suspended flag not written after repeated conflicts",
                extra={"entity_id": account.id, "error": str(e)},
            )
            return SuspensionResult(account=account, state=evaluation.state, error=str(e))

        if not recorded:
            return await self._undo_suspend(account, config, now)

        state = state_after_action(evaluation, account, config.warning_threshold)
        action = "suspended" if suspended else "resumed"
        if suspended:
            logging.warning(
                "Team suspended after grace period expired",
                extra={"entity_id": account.id, "balance": str(account.balance), "overdue_at": str(account.overdue_at)},
            )
        else:
            logging.info("Team resumed", extra={"entity_id": account.id, "balance": str(account.balance)})
        return SuspensionResult(account=account, state=state, action=action)

    async def resume(self, entity_id: str, config: BillingConfig) -> SuspensionResult:
        """
        Administrative resume.

        Raises:
            ResumeRefusedError: The balance is still negative
            AccountNotFoundError: No such team
        """
        account = self.store.get_account(entity_id)
        if account.balance < 0:
            raise ResumeRefusedError(f"Cannot resume team {entity_id} with negative balance {account.balance}")
        return await self.reconcile(account, config)

    def _record_action(
        self, account: Account, suspended: bool, config: BillingConfig, now: datetime
    ) -> Tuple[Account, bool]:
        """
        Write the suspended flag once the workload controller has confirmed.

        On conflict the fresh record is evaluated again and a suspension is
        only written while it is still due. Returns the latest account and
        whether the flag now matches the confirmed action.
        """
        try:
            return self.store.compare_and_swap(account.id, account.version, replace(account, suspended=suspended)), True
        except ConflictError:
            ledger_conflict_counter.labels(operation="suspension").inc()

        fresh = self.store.get_account(account.id)
        if fresh.suspended == suspended:
            return fresh, True
        if suspended:
            grace_period = effective_grace_period(fresh, config.grace_period)
            if evaluate(fresh, config.warning_threshold, grace_period, now).action != SUSPEND:
                return fresh, False
        return self.store.compare_and_swap(fresh.id, fresh.version, replace(fresh, suspended=suspended)), True

    async def _undo_suspend(self, account: Account, config: BillingConfig, now: datetime) -> SuspensionResult:
        """A recharge landed while the suspend call was in flight; bring the workloads back"""
        grace_period = effective_grace_period(account, config.grace_period)
        state = evaluate(account, config.warning_threshold, grace_period, now).state
        logging.warning(
            "Suspension superseded by a concurrent update, resuming workloads",
            extra={"entity_id": account.id, "balance": str(account.balance)},
        )
        try:
            await asyncio.wait_for(self.workload.resume(account.id), timeout=self.action_timeout)
        except asyncio.TimeoutError:
            error = f"Workload resume timed out after {self.action_timeout}s"
        except ActionError as e:
            error = str(e)
        else:
            workload_action_counter.labels(action=RESUME, result="ok").inc()
            return SuspensionResult(account=account, state=state)

        workload_action_counter.labels(action=RESUME, result="error").inc()
        error = f"Workloads left suspended for a team that is no longer overdue: {error}"
        logging.error(error, extra={"entity_id": account.id, "state": state.value})
        return SuspensionResult(account=account, state=state, error=error)

    def _persist(self, account: Account, mutate: Callable[[Account], Account]) -> Account:
        """Write a flag change, retrying once against a fresh read on conflict"""
        try:
            return self.store.compare_and_swap(account.id, account.version, mutate(account))
        except ConflictError:
            ledger_conflict_counter.labels(operation="suspension").inc()
            fresh = self.store.get_account(account.id)
            return self.store.compare_and_swap(fresh.id, fresh.version, mutate(fresh))
