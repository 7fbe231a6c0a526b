"""Auto-recharge schedule rules - weekly/monthly occurrences and their calendar keys"""

import calendar
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from bison_billing.domain.exceptions import ConfigError
from bison_billing.domain.models import AutoRechargePolicy

SCHEDULES = ("weekly", "monthly")


def sunday_based_weekday(day: date) -> int:
    """0=Sunday .. 6=Saturday"""
    return (day.weekday() + 1) % 7


def scheduled_day_of_month(policy: AutoRechargePolicy, year: int, month: int) -> int:
    """Configured day of month, clamped to the last day of shorter months"""
    last_day = calendar.monthrange(year, month)[1]
    return min(policy.day_of_month, last_day)


def matches(policy: AutoRechargePolicy, day: date) -> bool:
    if policy.schedule == "weekly":
        return sunday_based_weekday(day) == policy.day_of_week
    return day.day == scheduled_day_of_month(policy, day.year, day.month)


def occurrence_key(policy: AutoRechargePolicy, today: date) -> Optional[date]:
    """Calendar key of today's occurrence, or None when today is not a scheduled day"""
    return today if matches(policy, today) else None


def is_due(policy: Optional[AutoRechargePolicy], today: date) -> bool:
    """Due when today is scheduled and this occurrence has not been executed yet"""
    if policy is None or not policy.enabled:
        return False
    key = occurrence_key(policy, today)
    return key is not None and key != policy.last_executed


def next_execution(policy: AutoRechargePolicy, today: date) -> date:
    """First scheduled day on or after today that has not been executed"""
    day = today
    # Any weekly or monthly selector matches within two months
    for _ in range(63):
        if matches(policy, day) and day != policy.last_executed:
            return day
        day += timedelta(days=1)
    raise ConfigError("Auto-recharge policy never matches a calendar day")


def parse_policy(data: Dict[str, Any]) -> AutoRechargePolicy:
    """
    Build a policy from its stored JSON form.

    Raises:
        ConfigError: On unknown schedule, out-of-range day selector or bad amount
    """
    try:
        enabled = bool(data.get("enabled", False))
        amount = Decimal(str(data.get("amount", "0")))
        schedule = data.get("schedule", "monthly")
        day_of_week = int(data.get("day_of_week", 0))
        day_of_month = int(data.get("day_of_month", 1))
        last_executed_raw = data.get("last_executed")
        last_executed = date.fromisoformat(last_executed_raw) if last_executed_raw else None
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ConfigError(f"Malformed auto-recharge policy: {e}") from e

    if schedule not in SCHEDULES:
        raise ConfigError(f"Unknown auto-recharge schedule: {schedule}")
    if not 0 <= day_of_week <= 6:
        raise ConfigError(f"day_of_week out of range: {day_of_week}")
    if not 1 <= day_of_month <= 31:
        raise ConfigError(f"day_of_month out of range: {day_of_month}")
    if not amount.is_finite() or (enabled and amount <= 0):
        raise ConfigError(f"Auto-recharge amount must be positive: {amount}")

    return AutoRechargePolicy(
        enabled=enabled,
        amount=amount,
        schedule=schedule,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        last_executed=last_executed,
    )


def policy_to_dict(policy: AutoRechargePolicy) -> Dict[str, Any]:
    return {
        "enabled": policy.enabled,
        "amount": str(policy.amount),
        "schedule": policy.schedule,
        "day_of_week": policy.day_of_week,
        "day_of_month": policy.day_of_month,
        "last_executed": policy.last_executed.isoformat() if policy.last_executed else None,
    }
