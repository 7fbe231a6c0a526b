"""SQLAlchemy ORM models for accounts, ledger entries, alerts and runtime config"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text, JSON, Numeric, Uuid
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

MONEY = Numeric(precision=20, scale=4)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back as UTC (SQLite drops tzinfo)"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; use timezone-aware UTC values")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AccountRecord(Base):
    """Per-team balance record, updated only through version-checked writes"""

    __tablename__ = "account"

    id = Column(Text, primary_key=True)
    balance = Column(MONEY, nullable=False, default=0)
    last_billed_at = Column(UTCDateTime, nullable=False)
    overdue_at = Column(UTCDateTime, nullable=True)
    suspended = Column(Boolean, nullable=False, default=False)
    grace_period_seconds = Column(Integer, nullable=True)
    auto_recharge = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    transactions = relationship(
        "LedgerTransactionRecord",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class LedgerTransactionRecord(Base):
    """Append-only ledger entry"""

    __tablename__ = "ledger_transaction"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id = Column(Text, ForeignKey("account.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    amount = Column(MONEY, nullable=False)
    resulting_balance = Column(MONEY, nullable=False)
    operator = Column(Text, nullable=False, default="system")
    reason = Column(Text, nullable=True)

    account = relationship("AccountRecord", back_populates="transactions")


class AlertRecord(Base):
    """Alert history with per-channel delivery outcome"""

    __tablename__ = "alert_record"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    target = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(UTCDateTime, nullable=True)
    channels = Column(JSON, nullable=False, default=list)
    errors = Column(JSON, nullable=False, default=dict)


class ConfigEntry(Base):
    """Administrator-owned runtime configuration document"""

    __tablename__ = "config_entry"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
