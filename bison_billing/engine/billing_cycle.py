"""Billing cycle runner - charges every team for usage since its last billed timestamp"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Tuple

from bison_billing.config import settings
from bison_billing.domain.exceptions import (
    AccountNotFoundError,
    ConfigError,
    ConflictError,
    StoreUnavailableError,
    TransientFetchError,
)
from bison_billing.domain.ledger import apply_charge
from bison_billing.domain.models import Account, BillingConfig, CycleReport, EntityOutcome, UsageReport, Window
from bison_billing.domain.pricing import compute_charge
from bison_billing.engine.concurrency import run_bounded
from bison_billing.engine.ports import UsageSource
from bison_billing.engine.suspension import SuspensionController
from bison_billing.infrastructure.database.repositories import LedgerStore
from bison_billing.infrastructure.observability.logging import log_charge, log_cycle_summary
from bison_billing.infrastructure.observability.metrics import (
    cycle_duration_histogram,
    ledger_conflict_counter,
    record_outcome,
    usage_fetch_failures_counter,
)
from bison_billing.utils.date_utils import utcnow

# One retry after a version conflict; a second conflict defers the team
CHARGE_ATTEMPTS = 2


class BillingCycleRunner:
    """
    Runs one billing cycle over all teams.

    Flow per team:
    1. Read the account and derive the window [last_billed_at, now)
    2. Fetch usage for the window and price it
    3. Commit charge + last_billed_at through compare-and-swap
    4. Reconcile suspension state

    Each team is processed independently; only a store outage aborts the cycle.
    """

    def __init__(
        self,
        store: LedgerStore,
        usage_source: UsageSource,
        suspension: SuspensionController,
        max_concurrency: int | None = None,
        fetch_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.usage_source = usage_source
        self.suspension = suspension
        self.max_concurrency = max_concurrency or settings.max_concurrency
        self.fetch_timeout = fetch_timeout or settings.usage_timeout_seconds
        self.clock = clock

    async def run_cycle(self, config: BillingConfig, now: datetime | None = None) -> CycleReport:
        """
        Bill every team up to `now` using one configuration snapshot.

        Raises:
            StoreUnavailableError: The store cannot be reached
        """
        now = now or self.clock()
        report = CycleReport(started_at=self.clock())

        if not config.enabled:
            logging.info("Billing is disabled, skipping cycle")
            report.enabled = False
            report.finished_at = self.clock()
            return report

        with cycle_duration_histogram.time():
            entity_ids = self.store.list_accounts()
            report.outcomes = await run_bounded(
                entity_ids,
                lambda entity_id: self._process(entity_id, config, now),
                self.max_concurrency,
            )

        report.finished_at = self.clock()
        log_cycle_summary(report)
        return report

    async def _process(self, entity_id: str, config: BillingConfig, now: datetime) -> EntityOutcome:
        try:
            outcome, account = await self._bill(entity_id, config, now)
        except TransientFetchError as e:
            usage_fetch_failures_counter.inc()
            logging.warning(f"Usage fetch failed: {e}", extra={"entity_id": entity_id})
            outcome, account = EntityOutcome(entity_id=entity_id, status="fetch_error", error=str(e)), None
        except ConfigError as e:
            logging.error(f"Team flagged for configuration error: {e}", extra={"entity_id": entity_id})
            outcome, account = EntityOutcome(entity_id=entity_id, status="config_error", error=str(e)), None
        except AccountNotFoundError:
            # Deleted while the cycle was running
            outcome, account = EntityOutcome(entity_id=entity_id, status="skipped", error="account deleted"), None
        except StoreUnavailableError:
            raise
        except Exception as e:
            logging.error(f"Unexpected error billing team: {e}", extra={"entity_id": entity_id})
            outcome, account = EntityOutcome(entity_id=entity_id, status="error", error=str(e)), None

        if account is not None:
            try:
                result = await self.suspension.reconcile(account, config, now)
            except AccountNotFoundError:
                outcome.error = "account deleted"
            except StoreUnavailableError:
                raise
            except Exception as e:
                logging.error(f"Unexpected error reconciling suspension: {e}", extra={"entity_id": entity_id})
                outcome.balance = account.balance
                outcome.error = str(e)
            else:
                outcome.balance = result.account.balance
                outcome.state = result.state
                outcome.action = result.action
                outcome.error = outcome.error or result.error

        record_outcome(outcome.status, outcome.amount)
        return outcome

    async def _bill(
        self, entity_id: str, config: BillingConfig, now: datetime
    ) -> Tuple[EntityOutcome, Optional[Account]]:
        account = self.store.get_account(entity_id)
        if account.config_error:
            raise ConfigError(account.config_error)

        priced_window: Optional[Window] = None
        charge = Decimal("0")
        conflict = ""

        for _ in range(CHARGE_ATTEMPTS):
            window = Window(start=account.last_billed_at, end=now)
            if window.duration <= timedelta(0):
                return EntityOutcome(entity_id=entity_id, status="skipped", balance=account.balance), account

            # A conflict that did not move last_billed_at reuses the priced usage
            if window != priced_window:
                usage = await self._fetch(entity_id, window)
                charge = compute_charge(usage.usage, config.pricing)
                priced_window = window

            updated, transaction = apply_charge(account, charge, window, now)
            try:
                account = self.store.compare_and_swap(entity_id, account.version, updated, transaction)
            except ConflictError as e:
                ledger_conflict_counter.labels(operation="charge").inc()
                conflict = str(e)
                account = self.store.get_account(entity_id)
                if account.config_error:
                    raise ConfigError(account.config_error)
                continue

            if transaction is not None:
                log_charge(entity_id, window, charge, account.balance)
            return (
                EntityOutcome(entity_id=entity_id, status="charged", amount=charge, balance=account.balance),
                account,
            )

        logging.warning(
            "Charge deferred to next cycle after repeated conflicts",
            extra={"entity_id": entity_id, "error": conflict},
        )
        return EntityOutcome(entity_id=entity_id, status="deferred", balance=account.balance, error=conflict), None

    async def _fetch(self, entity_id: str, window: Window) -> UsageReport:
        try:
            return await asyncio.wait_for(
                self.usage_source.get_usage(entity_id, window.start, window.end),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"Usage fetch timed out after {self.fetch_timeout}s") from e
