"""Ledger rules - every balance change yields one account update and one transaction"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from bison_billing.domain.exceptions import InvalidAmountError
from bison_billing.domain.models import Account, Transaction, TransactionKind, Window

# Charges are kept to 1/100 of a cent so hourly micro-charges are not rounded away
AMOUNT_QUANTUM = Decimal("0.0001")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def overdue_after(previous: Optional[datetime], new_balance: Decimal, now: datetime) -> Optional[datetime]:
    """
    Overdue timestamp after a balance change.

    - Set at the instant the balance first goes below zero
    - Unchanged while the balance stays negative
    - Cleared as soon as the balance is back to >= 0
    """
    if new_balance < 0:
        return previous or now
    return None


def apply_transaction(
    account: Account,
    amount: Decimal,
    kind: TransactionKind,
    now: datetime,
    reason: Optional[str] = None,
    operator: str = "system",
) -> Tuple[Account, Transaction]:
    """Build the next account state and its ledger entry; nothing is persisted here"""
    amount = quantize(amount)
    new_balance = account.balance + amount

    updated = replace(
        account,
        balance=new_balance,
        overdue_at=overdue_after(account.overdue_at, new_balance, now),
    )
    transaction = Transaction(
        entity_id=account.id,
        timestamp=now,
        kind=kind,
        amount=amount,
        resulting_balance=new_balance,
        reason=reason,
        operator=operator,
    )
    return updated, transaction


def apply_charge(
    account: Account,
    charge: Decimal,
    window: Window,
    now: datetime,
) -> Tuple[Account, Optional[Transaction]]:
    """
    Debit the charge for a window and advance last_billed_at to the window end.

    A zero charge advances the window without writing a ledger entry.
    """
    if charge < 0:
        raise ValueError(f"Charge must not be negative: {charge}")
    if window.end <= account.last_billed_at:
        raise ValueError("Billing window ends before the last billed timestamp")

    if quantize(charge) == 0:
        return replace(account, last_billed_at=window.end), None

    updated, transaction = apply_transaction(
        account,
        -charge,
        TransactionKind.CHARGE,
        now,
        reason=f"Usage billing for {window.start.isoformat()} - {window.end.isoformat()}",
    )
    return replace(updated, last_billed_at=window.end), transaction


def apply_recharge(
    account: Account,
    amount: Decimal,
    now: datetime,
    operator: str = "system",
    reason: Optional[str] = None,
    kind: TransactionKind = TransactionKind.RECHARGE,
) -> Tuple[Account, Transaction]:
    """Credit a positive amount to the account"""
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError("Recharge amount must be positive")
    return apply_transaction(account, amount, kind, now, reason=reason, operator=operator)


def ledger_total(transactions: Iterable[Transaction]) -> Decimal:
    """Sum of all transaction amounts; equals the account balance when the ledger is consistent"""
    return sum((t.amount for t in transactions), Decimal("0"))
