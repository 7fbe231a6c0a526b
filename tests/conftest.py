"""Pytest fixtures for testing"""

import asyncio
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Generator, List, Optional, Set, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bison_billing.api.main import create_app
from bison_billing.domain.exceptions import ActionError, NotificationError, TransientFetchError
from bison_billing.domain.ledger import apply_transaction
from bison_billing.domain.models import (
    Account,
    Alert,
    NotifyChannel,
    TransactionKind,
    UsageReport,
    Window,
)
from bison_billing.engine.container import Engine, build_engine
from bison_billing.infrastructure.database.models import Base

# Monday
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock shared by every engine component"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeUsageSource:
    """Usage source reporting a constant per-hour rate for each team"""

    def __init__(self):
        self.rates: Dict[str, Dict[str, Decimal]] = {}
        self.failures: Set[str] = set()
        self.calls: List[Tuple[str, datetime, datetime]] = []
        self.on_fetch: Optional[Callable[[str], None]] = None

    async def get_usage(self, entity_id: str, window_start: datetime, window_end: datetime) -> UsageReport:
        self.calls.append((entity_id, window_start, window_end))
        # Yield so concurrent cycles interleave at the fetch
        await asyncio.sleep(0)
        if self.on_fetch is not None:
            self.on_fetch(entity_id)
        if entity_id in self.failures:
            raise TransientFetchError(f"usage source unreachable for {entity_id}")

        hours = Decimal(int((window_end - window_start).total_seconds())) / Decimal(3600)
        usage = {resource: rate * hours for resource, rate in self.rates.get(entity_id, {}).items()}
        return UsageReport(entity_id=entity_id, window=Window(start=window_start, end=window_end), usage=usage)


class FakeWorkloadController:
    """Records suspend/resume calls; actions listed in `failing` raise ActionError"""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.failing: Set[str] = set()

    async def suspend(self, entity_id: str) -> None:
        self.calls.append(("suspend", entity_id))
        if "suspend" in self.failing:
            raise ActionError("workload controller unavailable")

    async def resume(self, entity_id: str) -> None:
        self.calls.append(("resume", entity_id))
        if "resume" in self.failing:
            raise ActionError("workload controller unavailable")

    def count(self, action: str, entity_id: Optional[str] = None) -> int:
        return len([c for c in self.calls if c[0] == action and (entity_id is None or c[1] == entity_id)])


class FakeNotificationSender:
    """Collects delivered alerts; channels named in `failing` raise NotificationError"""

    def __init__(self):
        self.sent: List[Tuple[str, Alert]] = []
        self.failing: Set[str] = set()

    async def send(self, channel: NotifyChannel, alert: Alert) -> None:
        if channel.name in self.failing:
            raise NotificationError(f"{channel.type} returned 500")
        self.sent.append((channel.name, alert))


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """In-memory SQLite store shared across threads"""
    db_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=db_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=db_engine)
        db_engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def usage_source() -> FakeUsageSource:
    return FakeUsageSource()


@pytest.fixture
def workload() -> FakeWorkloadController:
    return FakeWorkloadController()


@pytest.fixture
def sender() -> FakeNotificationSender:
    return FakeNotificationSender()


@pytest.fixture
def engine(session_factory, usage_source, workload, sender, clock) -> Engine:
    """Fully wired engine backed by the test store and fakes"""
    return build_engine(session_factory, usage_source, workload, sender, clock=clock)


@pytest.fixture
def store(engine):
    return engine.store


@pytest.fixture
def make_account(store, clock):
    """Provision a team and seed its balance with a consistent ledger entry"""

    def _make(
        entity_id: str,
        balance: Decimal = Decimal("0"),
        overdue_at: Optional[datetime] = None,
        suspended: bool = False,
        grace_period: Optional[timedelta] = None,
    ) -> Account:
        account = store.create_account(entity_id, clock(), grace_period=grace_period)
        if balance != 0:
            kind = TransactionKind.RECHARGE if balance > 0 else TransactionKind.CHARGE
            updated, transaction = apply_transaction(account, balance, kind, clock(), reason="seed")
            if overdue_at is not None:
                updated = replace(updated, overdue_at=overdue_at)
            updated = replace(updated, suspended=suspended)
            account = store.compare_and_swap(entity_id, account.version, updated, transaction)
        elif suspended:
            account = store.compare_and_swap(entity_id, account.version, replace(account, suspended=True))
        return account

    return _make


@pytest.fixture
def client(engine) -> TestClient:
    """Create FastAPI test client backed by the test engine"""
    app = create_app(engine=engine, start_scheduler=False)
    return TestClient(app)
