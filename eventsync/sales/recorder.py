"""
Sales Recorder

Records a normalized sale exactly once.

Features:
- Dedup key check-and-insert serialized per key
- Ledger insert and aggregate update committed as one unit of work
- Distinct skipped-duplicate outcome for at-least-once delivery
- Live mode runs post-record hooks (stock sync); historical mode does not
- Metrics per source, mode and outcome
"""

import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventsync.config import get_settings
from eventsync.coordination.locks import KeyedLock, LocalKeyedLock
from eventsync.database.models import Provenance
from eventsync.exceptions import StorageError
from eventsync.sales.aggregation import AggregateUpdate, AggregationStore
from eventsync.sales.catalog import CatalogLookup
from eventsync.sales.ledger import SaleLedger
from eventsync.sales.schemas import RecordMode, RecordResult, RecordStatus, SaleEvent

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

SALES_RECORDED = Counter(
    "eventsync_sales_recorded_total",
    "Sales passed to the recorder",
    ["source", "mode", "status"],
)

RECORD_DURATION = Histogram(
    "eventsync_record_seconds",
    "Time spent recording one sale",
    ["source"],
)

SaleHook = Callable[[SaleEvent, RecordResult], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SalesRecorder:
    """
    At-most-once sale recording over the ledger and aggregation store.

    Example:
        recorder = SalesRecorder(session_factory, catalog)
        result = await recorder.record(SaleEvent(product_id="101", quantity=1,
                                                  source="ticketing", external_ref="ORD-1"))
        assert result.status in (RecordStatus.RECORDED, RecordStatus.SKIPPED_DUPLICATE)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogLookup,
        ledger: Optional[SaleLedger] = None,
        aggregation: Optional[AggregationStore] = None,
        locks: Optional[KeyedLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
        hooks: Optional[List[SaleHook]] = None,
        log=None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._locks = locks or LocalKeyedLock()
        self.catalog = catalog
        self.ledger = ledger or SaleLedger()
        self.aggregation = aggregation or AggregationStore(session_factory, locks=self._locks)
        self._clock = clock or _now
        self._hooks: List[SaleHook] = list(hooks or [])
        self.tz = settings.sales.tzinfo
        self.currency = settings.sales.currency
        self.log = log or logger

    def add_hook(self, hook: SaleHook) -> None:
        """Register a live-mode side effect, e.g. a stock decrement"""
        self._hooks.append(hook)

    def now(self) -> datetime:
        current = self._clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    def today(self) -> date:
        """Current calendar date in the configured timezone"""
        return self.now().astimezone(self.tz).date()

    # -------------------------------------------------------------------------
    # Ledger helpers
    # -------------------------------------------------------------------------

    async def is_processed(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                return await self.ledger.contains(session, key)
        except SQLAlchemyError as e:
            raise StorageError("Failed to read dedup ledger", details={"key": key, "error": str(e)}) from e

    async def mark_processed(
        self,
        key: str,
        source: Optional[str] = None,
        provenance: Provenance = Provenance.LIVE,
    ) -> bool:
        """
        Add a key without touching aggregates (order-level and import markers).

        Returns:
            False when the key was already present
        """
        async with self._locks.hold(f"ledger:{key}"):
            async with self._session_factory() as session:
                try:
                    claimed = await self.ledger.claim(session, key, provenance, source)
                    if not claimed:
                        return False
                    if provenance == Provenance.LIVE:
                        await self.ledger.evict(session, keep=key)
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()
                    return False
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise StorageError("Failed to write dedup ledger", details={"key": key, "error": str(e)}) from e

    async def is_imported(self, source: str, external_ref: str) -> bool:
        return await self.is_processed(self.ledger.historical_key(source, external_ref))

    async def mark_imported(self, source: str, external_ref: str) -> bool:
        return await self.mark_processed(
            self.ledger.historical_key(source, external_ref),
            source=source,
            provenance=Provenance.HISTORICAL,
        )

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _result(self, sale: SaleEvent, status: RecordStatus, sale_date: Optional[date] = None, **kwargs) -> RecordResult:
        SALES_RECORDED.labels(
            source=sale.source.value,
            mode=kwargs.pop("mode", RecordMode.LIVE).value,
            status=status.value,
        ).inc()
        return RecordResult(
            status=status,
            dedup_key=sale.dedup_key,
            product_id=sale.product_id,
            product_key=sale.product_key,
            sale_date=sale_date,
            quantity=sale.quantity,
            **kwargs,
        )

    async def record(self, sale: SaleEvent, mode: RecordMode = RecordMode.LIVE) -> RecordResult:
        """
        Record one sale at most once.

        Live sales land on today's date in the configured timezone;
        historical sales land on their own ``sale_date``.

        Returns:
            RecordResult with status recorded, skipped_duplicate, or error
            (catalog miss; the ledger is left untouched)

        Raises:
            StorageError: the unit of work failed and was rolled back
        """
        start = time.perf_counter()
        key = sale.dedup_key
        if mode == RecordMode.HISTORICAL and sale.sale_date:
            sale_date = sale.sale_date
        else:
            sale_date = self.today()

        if await self.is_processed(key):
            self.log.info("Duplicate sale skipped", dedup_key=key, mode=mode.value)
            return self._result(sale, RecordStatus.SKIPPED_DUPLICATE, sale_date, mode=mode)

        product = await self.catalog.get_product(sale.product_id)
        if product is None:
            self.log.warning(
                "Product not found in catalog",
                product_id=sale.product_id,
                source=sale.source.value,
                external_ref=sale.external_ref,
            )
            return self._result(sale, RecordStatus.ERROR, error="Product not found in catalog", mode=mode)

        provenance = Provenance.LIVE if mode == RecordMode.LIVE else Provenance.HISTORICAL
        change = AggregateUpdate(
            sale_date=sale_date,
            product_id=sale.product_id,
            product_key=sale.product_key,
            event_date=sale.event_date,
            quantity=sale.quantity,
            revenue=Decimal(sale.revenue),
            source=sale.source,
            external_ref=sale.external_ref,
            currency=sale.currency or self.currency,
            customer=sale.customer,
            recorded_at=self.now().replace(tzinfo=None),
            name=product.name,
            sku=product.sku,
        )

        async with self._locks.hold(f"ledger:{key}"):
            async with self.aggregation.guard(change):
                async with self._session_factory() as session:
                    try:
                        if await self.ledger.contains(session, key):
                            self.log.info("Duplicate sale skipped", dedup_key=key, mode=mode.value)
                            return self._result(sale, RecordStatus.SKIPPED_DUPLICATE, sale_date, mode=mode)

                        self.ledger.add(session, key, provenance, sale.source.value)
                        await self.aggregation.apply(session, change)
                        await self.ledger.evict(session, keep=key)
                        await session.commit()
                    except IntegrityError as e:
                        await session.rollback()
                        # Another worker may have committed the same key first
                        if await self.is_processed(key):
                            self.log.info("Duplicate sale skipped after conflict", dedup_key=key)
                            return self._result(sale, RecordStatus.SKIPPED_DUPLICATE, sale_date, mode=mode)
                        raise StorageError(
                            "Conflicting aggregate write",
                            details={"dedup_key": key, "error": str(e)},
                        ) from e
                    except SQLAlchemyError as e:
                        await session.rollback()
                        self.log.error("Sale recording failed", dedup_key=key, error=str(e))
                        raise StorageError(
                            "Failed to record sale",
                            details={"dedup_key": key, "error": str(e)},
                        ) from e

        result = self._result(sale, RecordStatus.RECORDED, sale_date, mode=mode)
        RECORD_DURATION.labels(source=sale.source.value).observe(time.perf_counter() - start)
        self.log.info(
            "Sale recorded",
            dedup_key=key,
            product_key=sale.product_key,
            quantity=sale.quantity,
            sale_date=sale_date.isoformat(),
            mode=mode.value,
        )

        if mode == RecordMode.LIVE:
            for hook in self._hooks:
                try:
                    await hook(sale, result)
                except Exception as e:
                    # The sale stays recorded; the side effect is reported
                    self.log.warning("Post-record hook failed", dedup_key=key, hook=getattr(hook, "__name__", repr(hook)), error=str(e))
                    result.warnings.append(f"Post-record hook failed: {e}")

        return result
