"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class AccountCreateRequest(BaseModel):
    """Request body for POST /v1/accounts"""

    entity_id: str = Field(..., min_length=1, description="Team identifier")
    grace_period_hours: Optional[int] = Field(None, ge=0, description="Per-team grace period override")


class AutoRechargeSchema(BaseModel):
    """Auto-recharge policy"""

    enabled: bool = True
    amount: Decimal = Field(..., ge=0)
    schedule: Literal["weekly", "monthly"] = "monthly"
    day_of_week: int = Field(0, ge=0, le=6, description="0=Sunday .. 6=Saturday")
    day_of_month: int = Field(1, ge=1, le=31)


class AutoRechargeResponse(BaseModel):
    """Response for GET/PUT /v1/accounts/{entity_id}/auto-recharge"""

    entity_id: str
    policy: Optional[AutoRechargeSchema] = None
    last_executed: Optional[date] = None
    next_execution: Optional[date] = None


class AccountResponse(BaseModel):
    """Account with derived state"""

    entity_id: str
    balance: Decimal
    state: str
    suspended: bool
    last_billed_at: datetime
    overdue_at: Optional[datetime] = None
    grace_period_hours: Optional[float] = None
    grace_remaining: str = ""
    daily_consumption: Decimal = Decimal("0")
    estimated_overdue_at: Optional[datetime] = None
    auto_recharge: Optional[AutoRechargeSchema] = None
    next_auto_recharge: Optional[date] = None
    version: int
    config_error: Optional[str] = None


class AccountListResponse(BaseModel):
    """Response for GET /v1/accounts"""

    accounts: List[AccountResponse]
    total_balance: Decimal


class RechargeRequest(BaseModel):
    """Request body for POST /v1/accounts/{entity_id}/recharge"""

    amount: Decimal = Field(..., gt=0, description="Amount to credit")
    operator: str = Field("admin", min_length=1)
    reason: Optional[str] = None


class TransactionSchema(BaseModel):
    """Single ledger entry"""

    id: str
    timestamp: datetime
    kind: str
    amount: Decimal
    resulting_balance: Decimal
    operator: str
    reason: Optional[str] = None


class RechargeResponse(BaseModel):
    """Response for POST /v1/accounts/{entity_id}/recharge"""

    entity_id: str
    balance: Decimal
    state: str
    action: Optional[str] = None
    transaction: TransactionSchema


class TransactionListResponse(BaseModel):
    """Response for GET /v1/accounts/{entity_id}/transactions"""

    entity_id: str
    transactions: List[TransactionSchema]


class GracePeriodRequest(BaseModel):
    """Request body for PUT /v1/accounts/{entity_id}/grace-period; null clears the override"""

    grace_period_hours: Optional[int] = Field(None, ge=0)


class ResumeResponse(BaseModel):
    """Response for POST /v1/accounts/{entity_id}/resume"""

    entity_id: str
    state: str
    action: Optional[str] = None
    error: Optional[str] = None


class ResourcePriceSchema(BaseModel):
    price: Decimal = Field(..., ge=0)
    unit: str = ""


class BillingConfigSchema(BaseModel):
    """Billing configuration document"""

    enabled: bool = True
    interval_hours: int = Field(1, gt=0)
    currency: str = "CNY"
    currency_symbol: str = "¥"
    pricing: Optional[Dict[str, ResourcePriceSchema]] = None  # omitted keeps the default price table
    grace_period_value: int = Field(3, ge=0)
    grace_period_unit: Literal["hours", "days"] = "days"
    warning_threshold: Decimal = Decimal("100")


class NotifyChannelSchema(BaseModel):
    """Notification channel"""

    id: str = Field(..., min_length=1)
    type: Literal["webhook", "dingtalk", "wechat"]
    name: str = Field(..., min_length=1)
    config: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class AlertConfigSchema(BaseModel):
    """Alert configuration document"""

    balance_threshold: Decimal = Decimal("100")
    warning_percent: Optional[Decimal] = Field(None, ge=0)
    critical_percent: Optional[Decimal] = Field(None, ge=0)
    channels: List[NotifyChannelSchema] = Field(default_factory=list)


class AlertSchema(BaseModel):
    """Recorded alert with delivery outcome"""

    id: str
    type: str
    severity: str
    target: str
    message: str
    timestamp: datetime
    sent: bool
    sent_at: Optional[datetime] = None
    channels: List[str]
    errors: Dict[str, str]


class AlertHistoryResponse(BaseModel):
    """Response for GET /v1/alerts/history"""

    alerts: List[AlertSchema]


class ChannelTestResponse(BaseModel):
    """Response for POST /v1/alerts/channels/test"""

    success: bool
    error: Optional[str] = None


class TaskExecutionSchema(BaseModel):
    task_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str
    error: Optional[str] = None


class TaskExecutionListResponse(BaseModel):
    """Response for GET /v1/tasks/executions"""

    executions: List[TaskExecutionSchema]


class RunBillingResponse(BaseModel):
    """Response for POST /v1/tasks/billing/run"""

    execution: TaskExecutionSchema
    outcomes: Dict[str, int] = Field(default_factory=dict)
    suspended: List[str] = Field(default_factory=list)
    total_charged: Decimal = Decimal("0")
