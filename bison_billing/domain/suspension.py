"""Suspension state machine - Active -> Warning -> Grace -> Suspended"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from bison_billing.domain.models import Account, AccountState

SUSPEND = "suspend"
RESUME = "resume"


@dataclass(frozen=True)
class Evaluation:
    """Current state plus the workload action needed to reach the target state"""

    state: AccountState
    action: Optional[str] = None  # SUSPEND | RESUME


def effective_grace_period(account: Account, default: timedelta) -> timedelta:
    return account.grace_period if account.grace_period is not None else default


def is_grace_period_expired(overdue_at: Optional[datetime], grace_period: timedelta, now: datetime) -> bool:
    if overdue_at is None:
        return False
    return now - overdue_at >= grace_period


def evaluate(
    account: Account,
    warning_threshold: Decimal,
    grace_period: timedelta,
    now: datetime,
) -> Evaluation:
    """
    Derive the state from persisted data only.

    The previous in-memory state is never consulted, so a restarted
    process reaches the same conclusion. A pending suspend keeps the
    account in Grace and a pending resume keeps it Suspended until the
    workload controller confirms.
    """
    if account.balance >= 0:
        if account.suspended:
            return Evaluation(AccountState.SUSPENDED, RESUME)
        if account.balance < warning_threshold:
            return Evaluation(AccountState.WARNING)
        return Evaluation(AccountState.ACTIVE)

    if account.suspended:
        return Evaluation(AccountState.SUSPENDED)

    overdue_at = account.overdue_at or now
    if is_grace_period_expired(overdue_at, grace_period, now):
        return Evaluation(AccountState.GRACE, SUSPEND)
    return Evaluation(AccountState.GRACE)


def state_after_action(evaluation: Evaluation, account: Account, warning_threshold: Decimal) -> AccountState:
    """State once the pending workload action has succeeded"""
    if evaluation.action == SUSPEND:
        return AccountState.SUSPENDED
    if evaluation.action == RESUME:
        return AccountState.WARNING if account.balance < warning_threshold else AccountState.ACTIVE
    return evaluation.state


def grace_remaining(overdue_at: Optional[datetime], grace_period: timedelta, now: datetime) -> str:
    """Human readable remaining grace time, e.g. "2d 3h" """
    if overdue_at is None:
        return ""

    remaining = overdue_at + grace_period - now
    if remaining <= timedelta(0):
        return "expired"

    hours_total = int(remaining.total_seconds() // 3600)
    days, hours = divmod(hours_total, 24)
    if days > 0:
        return f"{days}d {hours}h"
    return f"{hours}h"
