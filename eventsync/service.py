"""
Sync Service

Single entry point wiring the mapping, recording and import components over
one session factory and one lock provider. The consumer, the import
workflow and embedding applications all go through this facade.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventsync.coordination.locks import KeyedLock, create_keyed_lock
from eventsync.importing.cursors import CursorStore
from eventsync.importing.importer import BatchResult, HistoricalImporter, ImportCursor
from eventsync.importing.sources import SaleHistorySource
from eventsync.mapping.entries import MappingEntry, Resolution, SaveResult, SourceIdentifiers
from eventsync.mapping.resolver import MappingResolver
from eventsync.mapping.store import MappingStore
from eventsync.sales.aggregation import AggregationStore
from eventsync.sales.catalog import CatalogLookup
from eventsync.sales.ledger import SaleLedger
from eventsync.sales.orders import OrderIngestor
from eventsync.sales.recorder import SaleHook, SalesRecorder
from eventsync.sales.schemas import (
    DailySaleView,
    OrderResult,
    PeriodSummary,
    PosOrder,
    ProductSummaryView,
    RecordMode,
    RecordResult,
    SaleEvent,
    StorefrontOrder,
    TicketingOrder,
    TotalSalesView,
)

logger = structlog.get_logger(__name__)


class SyncService:
    """
    Facade over the sync engine components.

    Example:
        service = create_sync_service(session_factory, catalog)
        await service.save_mapping("101", [{"date": "2025-06-01", "ticket_class_id": "TIX-1"}])
        result = await service.record_order(order)
    """

    def __init__(
        self,
        store: MappingStore,
        resolver: MappingResolver,
        recorder: SalesRecorder,
        ingestor: OrderIngestor,
        importer: HistoricalImporter,
        cursors: CursorStore,
    ):
        self.store = store
        self.resolver = resolver
        self.recorder = recorder
        self.ingestor = ingestor
        self.importer = importer
        self.cursors = cursors

    @property
    def aggregation(self) -> AggregationStore:
        return self.recorder.aggregation

    # Mappings

    async def save_mapping(self, product_id: Any, entries: Iterable[Union[MappingEntry, Mapping[str, Any]]]) -> SaveResult:
        return await self.store.save_scoped(product_id, entries)

    async def save_default_mapping(self, product_id: Any, **identifiers: Optional[str]) -> MappingEntry:
        return await self.store.save_default(product_id, **identifiers)

    async def resolve_product(
        self,
        identifier: Optional[Any] = None,
        scope_date: Any = None,
        scope_time: Any = None,
        event_id: Optional[Any] = None,
    ) -> Resolution:
        return await self.resolver.find_product_for(identifier, scope_date, scope_time, event_id)

    async def resolve_identifiers(self, product_id: Any, scope_date: Any = None, scope_time: Any = None) -> SourceIdentifiers:
        return await self.resolver.identifiers_for(product_id, scope_date, scope_time)

    # Recording

    async def record_sale(self, sale: SaleEvent, mode: RecordMode = RecordMode.LIVE) -> RecordResult:
        return await self.recorder.record(sale, mode=mode)

    async def record_order(self, order: StorefrontOrder) -> OrderResult:
        return await self.ingestor.record_order(order)

    async def record_ticketing_order(self, order: TicketingOrder) -> OrderResult:
        return await self.ingestor.record_ticketing_order(order)

    async def record_pos_order(self, order: PosOrder) -> OrderResult:
        return await self.ingestor.record_pos_order(order)

    # Reporting

    async def get_daily_sales(
        self,
        start_date: date,
        end_date: date,
        product_id: Optional[str] = None,
        event_date: Optional[date] = None,
    ) -> List[DailySaleView]:
        return await self.aggregation.get_daily_sales(start_date, end_date, product_id, event_date)

    async def get_product_summary(self, start_date: date, end_date: date) -> List[ProductSummaryView]:
        return await self.aggregation.get_product_summary(start_date, end_date)

    async def get_total_sales(self, start_date: date, end_date: date, product_id: Optional[str] = None) -> List[TotalSalesView]:
        return await self.aggregation.get_total_sales(start_date, end_date, product_id)

    async def get_period_summary(self, start_date: date, end_date: date) -> PeriodSummary:
        return await self.aggregation.get_period_summary(start_date, end_date)

    # Historical import

    async def import_batch(
        self,
        source: str,
        start_date: date,
        end_date: date,
        cursor: Union[ImportCursor, Dict[str, Any], None] = None,
    ) -> BatchResult:
        return await self.importer.import_batch(source, start_date, end_date, cursor)


def create_sync_service(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: CatalogLookup,
    sources: Optional[Iterable[SaleHistorySource]] = None,
    locks: Optional[KeyedLock] = None,
    clock: Optional[Callable[[], datetime]] = None,
    hooks: Optional[List[SaleHook]] = None,
) -> SyncService:
    """Wire every component over one session factory and lock provider"""
    locks = locks or create_keyed_lock()
    store = MappingStore(session_factory, locks=locks)
    resolver = MappingResolver(store)
    recorder = SalesRecorder(
        session_factory,
        catalog,
        ledger=SaleLedger(),
        aggregation=AggregationStore(session_factory, locks=locks),
        locks=locks,
        clock=clock,
        hooks=hooks,
    )
    ingestor = OrderIngestor(recorder, resolver)
    importer = HistoricalImporter(recorder, resolver, sources or [])

    logger.info("Sync service created", lock_provider=type(locks).__name__)
    return SyncService(
        store=store,
        resolver=resolver,
        recorder=recorder,
        ingestor=ingestor,
        importer=importer,
        cursors=CursorStore(session_factory),
    )
