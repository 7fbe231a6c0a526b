"""Data access layer for ledger accounts, alerts and runtime configuration"""

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bison_billing.domain.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    ConfigError,
    ConflictError,
    StoreUnavailableError,
)
from bison_billing.domain.models import (
    Account,
    Alert,
    AlertConfig,
    BillingConfig,
    NotifyChannel,
    ResourcePrice,
    Transaction,
    TransactionKind,
)
from bison_billing.domain.recharge_schedule import parse_policy, policy_to_dict
from bison_billing.infrastructure.database.models import (
    AccountRecord,
    AlertRecord,
    ConfigEntry,
    LedgerTransactionRecord,
)

MAX_ALERT_HISTORY = 1000


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Open a session and translate driver failures into StoreUnavailableError"""
    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreUnavailableError(f"Store error: {e}") from e
    finally:
        db.close()


def _to_account(record: AccountRecord) -> Account:
    config_error = None

    policy = None
    if record.auto_recharge is not None:
        try:
            policy = parse_policy(record.auto_recharge)
        except ConfigError as e:
            config_error = str(e)

    grace_period = None
    if record.grace_period_seconds is not None:
        if record.grace_period_seconds < 0:
            config_error = config_error or f"Negative grace period override: {record.grace_period_seconds}s"
        else:
            grace_period = timedelta(seconds=record.grace_period_seconds)

    return Account(
        id=record.id,
        balance=Decimal(record.balance),
        last_billed_at=record.last_billed_at,
        overdue_at=record.overdue_at,
        suspended=record.suspended,
        grace_period=grace_period,
        auto_recharge=policy,
        version=record.version,
        created_at=record.created_at,
        config_error=config_error,
    )


def _to_transaction(record: LedgerTransactionRecord) -> Transaction:
    return Transaction(
        id=record.id,
        entity_id=record.entity_id,
        timestamp=record.timestamp,
        kind=TransactionKind(record.kind),
        amount=Decimal(record.amount),
        resulting_balance=Decimal(record.resulting_balance),
        reason=record.reason,
        operator=record.operator,
    )


class LedgerStore:
    """
    Durable account store; the only writer of account state.

    Every mutation goes through compare_and_swap, which checks the
    account version and writes the account row and its ledger entry in
    one database transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_account(
        self,
        entity_id: str,
        now: datetime,
        grace_period: Optional[timedelta] = None,
    ) -> Account:
        """Provision an account with zero balance and no transactions"""
        with session_scope(self.session_factory) as db:
            db.add(
                AccountRecord(
                    id=entity_id,
                    balance=Decimal("0"),
                    last_billed_at=now,
                    suspended=False,
                    grace_period_seconds=int(grace_period.total_seconds()) if grace_period is not None else None,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise AccountExistsError(f"Account already exists: {entity_id}") from e

        return self.get_account(entity_id)

    def get_account(self, entity_id: str) -> Account:
        with session_scope(self.session_factory) as db:
            record = db.get(AccountRecord, entity_id)
            if record is None:
                raise AccountNotFoundError(f"Account not found: {entity_id}")
            return _to_account(record)

    def list_accounts(self) -> List[str]:
        with session_scope(self.session_factory) as db:
            return [row[0] for row in db.query(AccountRecord.id).order_by(AccountRecord.id).all()]

    def list_all(self) -> List[Account]:
        with session_scope(self.session_factory) as db:
            return [_to_account(r) for r in db.query(AccountRecord).order_by(AccountRecord.id).all()]

    def compare_and_swap(
        self,
        entity_id: str,
        expected_version: int,
        new_account: Account,
        new_transaction: Optional[Transaction] = None,
    ) -> Account:
        """
        Replace the account if its stored version still equals expected_version.

        Raises:
            ConflictError: The account was modified concurrently
            AccountNotFoundError: The account no longer exists
        """
        if new_transaction is not None and new_transaction.resulting_balance != new_account.balance:
            raise ValueError("Transaction resulting balance must equal the new account balance")

        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "balance": new_account.balance,
            "last_billed_at": new_account.last_billed_at,
            "overdue_at": new_account.overdue_at,
            "suspended": new_account.suspended,
            "version": expected_version + 1,
            "updated_at": now,
        }
        # Malformed settings are left untouched until an administrator replaces them
        if new_account.config_error is None:
            values["auto_recharge"] = policy_to_dict(new_account.auto_recharge) if new_account.auto_recharge else None
            values["grace_period_seconds"] = (
                int(new_account.grace_period.total_seconds()) if new_account.grace_period is not None else None
            )

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(AccountRecord)
                .where(AccountRecord.id == entity_id, AccountRecord.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                if db.get(AccountRecord, entity_id) is None:
                    raise AccountNotFoundError(f"Account not found: {entity_id}")
                raise ConflictError(f"Account {entity_id} was modified concurrently (expected version {expected_version})")

            if new_transaction is not None:
                db.add(
                    LedgerTransactionRecord(
                        id=new_transaction.id,
                        entity_id=new_transaction.entity_id,
                        timestamp=new_transaction.timestamp,
                        kind=new_transaction.kind.value,
                        amount=new_transaction.amount,
                        resulting_balance=new_transaction.resulting_balance,
                        operator=new_transaction.operator,
                        reason=new_transaction.reason,
                    )
                )
            db.commit()

        return replace(new_account, version=expected_version + 1)

    def delete_account(self, entity_id: str) -> None:
        """Remove the account together with its ledger history"""
        with session_scope(self.session_factory) as db:
            db.query(LedgerTransactionRecord).filter(LedgerTransactionRecord.entity_id == entity_id).delete()
            deleted = db.query(AccountRecord).filter(AccountRecord.id == entity_id).delete()
            if not deleted:
                db.rollback()
                raise AccountNotFoundError(f"Account not found: {entity_id}")
            db.commit()

    def list_transactions(self, entity_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Ledger entries for a team, newest first"""
        with session_scope(self.session_factory) as db:
            query = (
                db.query(LedgerTransactionRecord)
                .filter(LedgerTransactionRecord.entity_id == entity_id)
                .order_by(LedgerTransactionRecord.timestamp.desc())
            )
            if limit is not None and limit > 0:
                query = query.limit(limit)
            return [_to_transaction(r) for r in query.all()]

    def ledger_total(self, entity_id: str) -> Decimal:
        """Sum of all ledger amounts for a team"""
        # Summed in Python; SQLite aggregates NUMERIC as float
        with session_scope(self.session_factory) as db:
            amounts = (
                db.query(LedgerTransactionRecord.amount)
                .filter(LedgerTransactionRecord.entity_id == entity_id)
                .all()
            )
            return sum((Decimal(row[0]) for row in amounts), Decimal("0"))

    def low_balance_accounts(self, threshold: Decimal) -> List[Account]:
        return [a for a in self.list_all() if a.balance < threshold]

    def total_balance(self) -> Decimal:
        return sum((a.balance for a in self.list_all()), Decimal("0"))


# Runtime configuration documents

BILLING_CONFIG_KEY = "billing"
ALERT_CONFIG_KEY = "alerts"


def _parse_price(raw: Any) -> ResourcePrice:
    if not isinstance(raw, dict):
        return ResourcePrice(price=None)
    try:
        price = Decimal(str(raw.get("price")))
    except (InvalidOperation, TypeError, ValueError):
        price = None
    return ResourcePrice(price=price, unit=str(raw.get("unit", "")))


def billing_config_from_dict(data: Dict[str, Any]) -> BillingConfig:
    """
    Build a billing snapshot from its stored form.

    Unparseable individual prices are kept as invalid entries; any other
    malformed field raises ConfigError.
    """
    defaults = BillingConfig()
    try:
        grace_unit = data.get("grace_period_unit", defaults.grace_period_unit)
        if grace_unit not in ("hours", "days"):
            raise ValueError(f"unknown grace period unit {grace_unit!r}")
        interval_hours = int(data.get("interval_hours", 1))
        if interval_hours <= 0:
            raise ValueError("interval_hours must be positive")

        pricing_raw = data.get("pricing")
        pricing = (
            MappingProxyType({name: _parse_price(raw) for name, raw in pricing_raw.items()})
            if isinstance(pricing_raw, dict)
            else defaults.pricing
        )

        return BillingConfig(
            enabled=bool(data.get("enabled", defaults.enabled)),
            interval=timedelta(hours=interval_hours),
            currency=str(data.get("currency", defaults.currency)),
            currency_symbol=str(data.get("currency_symbol", defaults.currency_symbol)),
            pricing=pricing,
            grace_period_value=int(data.get("grace_period_value", defaults.grace_period_value)),
            grace_period_unit=grace_unit,
            warning_threshold=Decimal(str(data.get("warning_threshold", defaults.warning_threshold))),
        )
    except (InvalidOperation, TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Malformed billing configuration: {e}") from e


def billing_config_to_dict(config: BillingConfig) -> Dict[str, Any]:
    return {
        "enabled": config.enabled,
        "interval_hours": int(config.interval.total_seconds() // 3600),
        "currency": config.currency,
        "currency_symbol": config.currency_symbol,
        "pricing": {
            name: {"price": str(p.price) if p.price is not None else None, "unit": p.unit}
            for name, p in config.pricing.items()
        },
        "grace_period_value": config.grace_period_value,
        "grace_period_unit": config.grace_period_unit,
        "warning_threshold": str(config.warning_threshold),
    }


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def alert_config_from_dict(data: Dict[str, Any]) -> AlertConfig:
    try:
        channels = tuple(
            NotifyChannel(
                id=str(c["id"]),
                type=str(c["type"]),
                name=str(c.get("name", c["id"])),
                config=MappingProxyType({str(k): str(v) for k, v in (c.get("config") or {}).items()}),
                enabled=bool(c.get("enabled", True)),
            )
            for c in data.get("channels", [])
        )
        return AlertConfig(
            balance_threshold=Decimal(str(data.get("balance_threshold", "100"))),
            warning_percent=_optional_decimal(data.get("warning_percent")),
            critical_percent=_optional_decimal(data.get("critical_percent")),
            channels=channels,
        )
    except (InvalidOperation, KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Malformed alert configuration: {e}") from e


def alert_config_to_dict(config: AlertConfig) -> Dict[str, Any]:
    return {
        "balance_threshold": str(config.balance_threshold),
        "warning_percent": str(config.warning_percent) if config.warning_percent is not None else None,
        "critical_percent": str(config.critical_percent) if config.critical_percent is not None else None,
        "channels": [
            {"id": c.id, "type": c.type, "name": c.name, "config": dict(c.config), "enabled": c.enabled}
            for c in config.channels
        ],
    }


class ConfigRepository:
    """Loads immutable billing/alert snapshots; defaults when missing or unreadable"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _get(self, key: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            entry = db.get(ConfigEntry, key)
            return dict(entry.value) if entry is not None else None

    def _put(self, key: str, value: Dict[str, Any]) -> None:
        with session_scope(self.session_factory) as db:
            entry = db.get(ConfigEntry, key)
            if entry is None:
                db.add(ConfigEntry(key=key, value=value))
            else:
                entry.value = value
            db.commit()

    def load_billing_config(self) -> BillingConfig:
        data = self._get(BILLING_CONFIG_KEY)
        if data is None:
            return BillingConfig()
        try:
            return billing_config_from_dict(data)
        except ConfigError as e:
            logging.error(f"Falling back to default billing config: {e}")
            return BillingConfig()

    def save_billing_config(self, config: BillingConfig) -> None:
        self._put(BILLING_CONFIG_KEY, billing_config_to_dict(config))

    def load_alert_config(self) -> AlertConfig:
        data = self._get(ALERT_CONFIG_KEY)
        if data is None:
            return AlertConfig()
        try:
            return alert_config_from_dict(data)
        except ConfigError as e:
            logging.error(f"Falling back to default alert config: {e}")
            return AlertConfig()

    def save_alert_config(self, config: AlertConfig) -> None:
        self._put(ALERT_CONFIG_KEY, alert_config_to_dict(config))


class AlertRepository:
    """Alert history, capped to the most recent entries"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(self, alert: Alert) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                AlertRecord(
                    id=alert.id,
                    timestamp=alert.timestamp,
                    type=alert.type,
                    severity=alert.severity,
                    target=alert.target,
                    message=alert.message,
                    sent=alert.sent,
                    sent_at=alert.sent_at,
                    channels=list(alert.channels),
                    errors=dict(alert.errors),
                )
            )
            db.flush()

            stale = (
                db.query(AlertRecord.id)
                .order_by(AlertRecord.timestamp.desc())
                .offset(MAX_ALERT_HISTORY)
                .all()
            )
            if stale:
                db.query(AlertRecord).filter(AlertRecord.id.in_([row[0] for row in stale])).delete(
                    synchronize_session=False
                )
            db.commit()

    def history(self, limit: int = 50) -> List[Alert]:
        """Recorded alerts, newest first"""
        with session_scope(self.session_factory) as db:
            query = db.query(AlertRecord).order_by(AlertRecord.timestamp.desc())
            if limit > 0:
                query = query.limit(limit)
            return [
                Alert(
                    id=r.id,
                    timestamp=r.timestamp,
                    type=r.type,
                    severity=r.severity,
                    target=r.target,
                    message=r.message,
                    sent=r.sent,
                    sent_at=r.sent_at,
                    channels=list(r.channels or []),
                    errors=dict(r.errors or {}),
                )
                for r in query.all()
            ]
