"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from bison_billing.config import settings
from bison_billing.domain.models import CycleReport, Window


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_charge(entity_id: str, window: Window, charge: Decimal, balance: Decimal) -> None:
    """Log a committed charge for audit"""
    logging.info(
        "Charge committed",
        extra={
            "entity_id": entity_id,
            "step": "charge_committed",
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
            "charge": str(charge),
            "balance": str(balance),
        },
    )


def log_cycle_summary(report: CycleReport) -> None:
    """Log one line per billing cycle with counts by outcome"""
    duration_ms = (
        (report.finished_at - report.started_at).total_seconds() * 1000 if report.finished_at else None
    )
    counts: Dict[str, int] = {}
    for outcome in report.outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1

    logging.info(
        "Billing cycle completed",
        extra={
            "step": "cycle_complete",
            "entities": len(report.outcomes),
            "outcomes": counts,
            "suspended": [o.entity_id for o in report.suspended],
            "total_charged": str(report.total_charged),
            "duration_ms": duration_ms,
        },
    )
