"""Balance alert rules and consumption estimates"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from bison_billing.domain.ledger import quantize
from bison_billing.domain.models import Account, Alert, AlertConfig, Transaction, TransactionKind

CONSUMPTION_WINDOW = timedelta(days=7)
SECONDS_PER_DAY = Decimal(86400)


def estimate_daily_consumption(transactions: Iterable[Transaction], now: datetime) -> Decimal:
    """
    Average daily charges over the last 7 days.

    When the available history is younger than 7 days, the average is taken
    over the span it actually covers.
    """
    transactions = list(transactions)
    if not transactions:
        return Decimal("0")

    since = now - CONSUMPTION_WINDOW
    total = sum(
        (-t.amount for t in transactions if t.kind == TransactionKind.CHARGE and t.timestamp > since),
        Decimal("0"),
    )

    days = Decimal(7)
    oldest = min(t.timestamp for t in transactions)
    if oldest > since:
        span = Decimal(int((now - oldest).total_seconds())) / SECONDS_PER_DAY
        if span > 0:
            days = span

    return quantize(total / days)


def estimate_overdue_at(balance: Decimal, daily_consumption: Decimal, now: datetime) -> Optional[datetime]:
    """Predicted time the balance goes negative at the current consumption rate"""
    if balance <= 0 or daily_consumption <= 0:
        return None
    days_remaining = balance / daily_consumption
    return now + timedelta(days=float(days_remaining))


def _below_percent(balance: Decimal, daily_consumption: Decimal, percent: Optional[Decimal]) -> bool:
    if percent is None or daily_consumption <= 0:
        return False
    return balance < daily_consumption * percent / 100


def evaluate_balance_alert(
    account: Account,
    daily_consumption: Decimal,
    config: AlertConfig,
    now: datetime,
) -> Optional[Alert]:
    """Alert for an account crossing a configured threshold, or None"""
    balance = account.balance

    if balance < 0:
        return Alert(
            type="negative_balance",
            severity="critical",
            target=account.id,
            message=f"Team {account.id} has negative balance: {balance:.2f}",
            timestamp=now,
        )

    if _below_percent(balance, daily_consumption, config.critical_percent):
        return Alert(
            type="low_balance",
            severity="critical",
            target=account.id,
            message=f"Team {account.id} balance {balance:.2f} is critically low for its consumption",
            timestamp=now,
        )

    if balance < config.balance_threshold or _below_percent(balance, daily_consumption, config.warning_percent):
        return Alert(
            type="low_balance",
            severity="warning",
            target=account.id,
            message=f"Team {account.id} balance is low: {balance:.2f}",
            timestamp=now,
        )

    return None


def suspension_alert(entity_id: str, balance: Optional[Decimal], now: datetime) -> Alert:
    """Critical alert for an automatic suspension, sent regardless of thresholds"""
    amount = f"{balance:.2f}" if balance is not None else "unknown"
    return Alert(
        type="suspended",
        severity="critical",
        target=entity_id,
        message=f"Team {entity_id} was suspended after its grace period expired (balance: {amount})",
        timestamp=now,
    )
