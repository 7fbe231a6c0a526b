"""Interfaces the engine depends on; HTTP clients and test fakes both satisfy them"""

from datetime import datetime
from typing import Protocol

from bison_billing.domain.models import Alert, NotifyChannel, UsageReport


class UsageSource(Protocol):
    async def get_usage(self, entity_id: str, window_start: datetime, window_end: datetime) -> UsageReport:
        """Raises TransientFetchError when usage cannot be retrieved"""
        ...


class WorkloadController(Protocol):
    async def suspend(self, entity_id: str) -> None:
        """Raises ActionError on failure; idempotent"""
        ...

    async def resume(self, entity_id: str) -> None:
        """Raises ActionError on failure; idempotent"""
        ...


class NotificationSender(Protocol):
    async def send(self, channel: NotifyChannel, alert: Alert) -> None:
        """Raises NotificationError on failure"""
        ...
