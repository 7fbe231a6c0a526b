"""Domain models - pure Python dataclasses representing billing entities"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple


class TransactionKind(str, Enum):
    """Ledger entry kinds"""

    CHARGE = "charge"
    RECHARGE = "recharge"
    AUTO_RECHARGE = "auto_recharge"


class AccountState(str, Enum):
    """Suspension state, always derived from persisted balance and overdue time"""

    ACTIVE = "active"
    WARNING = "warning"
    GRACE = "grace"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class AutoRechargePolicy:
    """Scheduled credit policy for one team"""

    enabled: bool
    amount: Decimal
    schedule: str  # "weekly" or "monthly"
    day_of_week: int = 0  # 0-6 for weekly (0=Sunday)
    day_of_month: int = 1  # 1-31 for monthly, clamped to the month's last day
    last_executed: Optional[date] = None  # calendar key of the last executed occurrence


@dataclass(frozen=True)
class Account:
    """Versioned balance record for a billable team"""

    id: str
    balance: Decimal
    last_billed_at: datetime
    overdue_at: Optional[datetime] = None
    suspended: bool = False
    grace_period: Optional[timedelta] = None  # overrides the global grace period
    auto_recharge: Optional[AutoRechargePolicy] = None
    version: int = 0
    created_at: Optional[datetime] = None
    config_error: Optional[str] = None  # malformed per-account settings, set on load


@dataclass(frozen=True)
class Transaction:
    """Append-only ledger entry, written together with the account update"""

    entity_id: str
    timestamp: datetime
    kind: TransactionKind
    amount: Decimal  # positive for credits, negative for charges
    resulting_balance: Decimal
    reason: Optional[str] = None
    operator: str = "system"
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True)
class ResourcePrice:
    """Price per unit per hour; None marks an unparseable configured price"""

    price: Optional[Decimal]
    unit: str = ""


def _default_pricing() -> Mapping[str, ResourcePrice]:
    return MappingProxyType(
        {
            "cpu": ResourcePrice(price=Decimal("0.1"), unit="core-hour"),
            "memory": ResourcePrice(price=Decimal("0.05"), unit="GB-hour"),
        }
    )


@dataclass(frozen=True)
class BillingConfig:
    """Immutable billing configuration snapshot handed to one cycle"""

    enabled: bool = True
    interval: timedelta = timedelta(hours=1)
    currency: str = "CNY"
    currency_symbol: str = "¥"
    pricing: Mapping[str, ResourcePrice] = field(default_factory=_default_pricing)
    grace_period_value: int = 3
    grace_period_unit: str = "days"  # "hours" or "days"
    warning_threshold: Decimal = Decimal("100")

    @property
    def grace_period(self) -> timedelta:
        if self.grace_period_unit == "hours":
            return timedelta(hours=self.grace_period_value)
        return timedelta(days=self.grace_period_value)


@dataclass(frozen=True)
class NotifyChannel:
    """Notification channel; config is opaque to the engine"""

    id: str
    type: str  # webhook, dingtalk, wechat
    name: str
    config: Mapping[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass(frozen=True)
class AlertConfig:
    """Immutable alert configuration snapshot"""

    balance_threshold: Decimal = Decimal("100")
    warning_percent: Optional[Decimal] = None  # of typical daily consumption
    critical_percent: Optional[Decimal] = None
    channels: Tuple[NotifyChannel, ...] = ()


@dataclass
class Alert:
    """Alert instance with its delivery outcome"""

    type: str  # low_balance, negative_balance, suspended, test
    severity: str  # info, warning, critical
    target: str
    message: str
    timestamp: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    sent: bool = False
    sent_at: Optional[datetime] = None
    channels: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Window:
    """Half-open billing window [start, end)"""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class UsageReport:
    """Aggregated usage for one team over one window"""

    entity_id: str
    window: Window
    usage: Mapping[str, Decimal]  # resource kind -> resource-hours
    total_cost: Decimal = Decimal("0")  # cost reported by the usage source, informational


@dataclass
class EntityOutcome:
    """Result of processing one team within a cycle or recharge run"""

    entity_id: str
    status: str  # charged, recharged, not_due, skipped, deferred, fetch_error, config_error, error
    amount: Decimal = Decimal("0")  # charged or credited
    balance: Optional[Decimal] = None
    state: Optional[AccountState] = None
    action: Optional[str] = None  # suspended | resumed
    error: Optional[str] = None


@dataclass
class CycleReport:
    """Summary of one billing cycle"""

    started_at: datetime
    finished_at: Optional[datetime] = None
    enabled: bool = True
    outcomes: List[EntityOutcome] = field(default_factory=list)

    def by_status(self, status: str) -> List[EntityOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def suspended(self) -> List[EntityOutcome]:
        return [o for o in self.outcomes if o.action == "suspended"]

    @property
    def total_charged(self) -> Decimal:
        return sum((o.amount for o in self.outcomes if o.status == "charged"), Decimal("0"))


@dataclass
class TaskExecution:
    """One run of a scheduled task"""

    task_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str = "success"  # success | failed | skipped
    error: Optional[str] = None
