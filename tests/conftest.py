"""
Test Suite Configuration
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Callable, List, Optional

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from eventsync.config import Settings
from eventsync.coordination.locks import LocalKeyedLock
from eventsync.database.connection import create_session_factory
from eventsync.database.models import Base, SaleSource
from eventsync.importing.sources import FetchedPage, HistoricalRecord, Pagination, SaleHistorySource
from eventsync.mapping.resolver import MappingResolver
from eventsync.mapping.store import MappingStore
from eventsync.sales.aggregation import AggregationStore
from eventsync.sales.catalog import StaticCatalog
from eventsync.sales.ledger import SaleLedger
from eventsync.sales.orders import OrderIngestor
from eventsync.sales.recorder import SalesRecorder

# 2025-06-01 14:00 in Toronto
FIXED_NOW = datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock; ``tick`` advances it"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def tick(self, seconds: int = 1) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSaleSource(SaleHistorySource):
    """In-memory history source honouring every pagination style"""

    def __init__(
        self,
        name: str,
        records: List[HistoricalRecord],
        pagination: Pagination = Pagination.OFFSET,
        channel: SaleSource = SaleSource.WEB,
        max_page_size: Optional[int] = None,
    ):
        self.name = name
        self.records = records
        self.pagination = pagination
        self.channel = channel
        self.max_page_size = max_page_size
        self.calls = []
        self.fail_next = False

    async def fetch(self, start_date, end_date, position, limit) -> FetchedPage:
        self.calls.append((position, limit))
        if self.fail_next:
            self.fail_next = False
            raise ConnectionError("upstream unavailable")

        in_range = [r for r in self.records if start_date <= r.sale_date <= end_date]
        if self.pagination == Pagination.PAGE:
            offset = (position - 1) * limit
        elif self.pagination == Pagination.CURSOR:
            offset = int(position.split("-")[1]) if position else 0
        else:
            offset = position

        page = in_range[offset:offset + limit]
        consumed = offset + len(page)
        has_more = consumed < len(in_range)
        next_position = f"tok-{consumed}" if self.pagination == Pagination.CURSOR and has_more else None
        return FetchedPage(records=page, next_position=next_position, has_more=has_more)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine per test so concurrent sessions share data"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'eventsync.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


class FailingCommitSession(AsyncSession):
    """Session whose commit always fails, as on a lost connection"""

    async def commit(self) -> None:
        raise OperationalError("COMMIT", {}, Exception("database is unavailable"))


@pytest.fixture
def failing_session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Reads work, every commit raises"""
    return async_sessionmaker(bind=test_engine, class_=FailingCommitSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def locks() -> LocalKeyedLock:
    return LocalKeyedLock()


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog({
        "101": {"name": "Friday Night Show", "sku": "FRI-SHOW", "price": Decimal("25.00")},
        "102": {"name": "Saturday Matinee", "sku": "SAT-MAT", "price": Decimal("20.00")},
        "103": {"name": "Workshop Pass", "sku": "WKSP", "price": Decimal("40.00")},
    })


@pytest.fixture
def store(session_factory, locks) -> MappingStore:
    return MappingStore(session_factory, locks=locks)


@pytest.fixture
def resolver(store) -> MappingResolver:
    return MappingResolver(store, time_buffer_minutes=30, event_time_buffer_minutes=60)


@pytest.fixture
def ledger(clock) -> SaleLedger:
    # Naive UTC, like the default ledger clock
    return SaleLedger(max_entries=1000, clock=lambda: clock().replace(tzinfo=None))


@pytest.fixture
def recorder(session_factory, catalog, ledger, locks, clock) -> SalesRecorder:
    return SalesRecorder(
        session_factory,
        catalog,
        ledger=ledger,
        aggregation=AggregationStore(session_factory, locks=locks),
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def ingestor(recorder, resolver) -> OrderIngestor:
    return OrderIngestor(recorder, resolver)


@pytest.fixture
def make_record() -> Callable[..., HistoricalRecord]:
    def _make(ref, sale_date=date(2025, 5, 1), lines=None, **kwargs) -> HistoricalRecord:
        return HistoricalRecord(
            external_ref=ref,
            sale_date=sale_date,
            lines=lines if lines is not None else [{"product_id": "101", "quantity": 1, "revenue": "25.00"}],
            **kwargs,
        )
    return _make


@pytest.fixture
def make_source() -> Callable[..., FakeSaleSource]:
    return FakeSaleSource
