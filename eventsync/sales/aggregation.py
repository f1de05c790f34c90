"""
Aggregation Store

Daily sales aggregates and their product summary view.

Features:
- Additive updates: quantities and revenue are only incremented
- Per-source counters (web, ticketing, point-of-sale)
- Append-only audit list per daily record
- Product summary maintained in the same unit of work
- Range reporting: daily records, product summaries, period totals
"""

from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from eventsync.coordination.locks import KeyedLock, LocalKeyedLock
from eventsync.database.models import (
    DailySale,
    DailySaleOrder,
    ProductSummary,
    SaleSource,
)
from eventsync.exceptions import StorageError
from eventsync.sales.schemas import (
    DailySaleView,
    DaySummary,
    PeriodSummary,
    ProductSummaryView,
    TotalSalesView,
)

logger = structlog.get_logger(__name__)

SOURCE_COUNTERS = {
    SaleSource.WEB: "web_qty",
    SaleSource.TICKETING: "ticketing_qty",
    SaleSource.POS: "pos_qty",
}


@dataclass
class AggregateUpdate:
    """Everything one recorded sale contributes to the aggregates"""
    sale_date: date
    product_id: str
    product_key: str
    event_date: Optional[date]
    quantity: int
    revenue: Decimal
    source: SaleSource
    external_ref: str
    currency: str
    recorded_at: datetime
    customer: Optional[str] = None
    name: Optional[str] = None
    sku: Optional[str] = None


class AggregationStore:
    """
    Daily aggregates over ``daily_sales``, ``daily_sale_orders`` and
    ``product_summaries``.

    ``apply`` runs inside the caller's transaction and must be called while
    holding ``guard`` for the same update.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[KeyedLock] = None,
        log=None,
    ):
        self._session_factory = session_factory
        self._locks = locks or LocalKeyedLock()
        self.log = log or logger

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def guard(self, change: AggregateUpdate) -> AsyncIterator[None]:
        """Hold the daily-record lock, then the summary lock, for one update"""
        day = change.sale_date.isoformat()
        async with self._locks.hold(f"daily:{day}:{change.product_key}"):
            async with self._locks.hold(f"summary:{day}:{change.product_id}"):
                yield

    async def apply(self, session: AsyncSession, change: AggregateUpdate) -> None:
        """Increment the daily record and product summary, append the audit entry"""
        counter = SOURCE_COUNTERS[change.source]

        daily = (await session.execute(
            select(DailySale).where(
                DailySale.sale_date == change.sale_date,
                DailySale.product_key == change.product_key,
            )
        )).scalar_one_or_none()

        if daily is None:
            daily = DailySale(
                sale_date=change.sale_date,
                product_key=change.product_key,
                product_id=change.product_id,
                event_date=change.event_date,
                name=change.name,
                sku=change.sku,
                quantity=0,
                revenue=Decimal("0"),
                web_qty=0,
                ticketing_qty=0,
                pos_qty=0,
            )
            session.add(daily)
            await session.flush()

        values = {
            "quantity": DailySale.quantity + change.quantity,
            "revenue": DailySale.revenue + change.revenue,
            counter: getattr(DailySale, counter) + change.quantity,
            "updated_at": func.now(),
        }
        if change.name:
            values["name"] = change.name
        if change.sku:
            values["sku"] = change.sku

        await session.execute(
            update(DailySale)
            .where(DailySale.id == daily.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        session.add(DailySaleOrder(
            daily_sale_id=daily.id,
            source=change.source.value,
            external_ref=change.external_ref,
            quantity=change.quantity,
            amount=change.revenue,
            currency=change.currency,
            customer=change.customer,
            recorded_at=change.recorded_at,
        ))

        summary = (await session.execute(
            select(ProductSummary).where(
                ProductSummary.summary_date == change.sale_date,
                ProductSummary.product_id == change.product_id,
            )
        )).scalar_one_or_none()

        if summary is None:
            summary = ProductSummary(
                summary_date=change.sale_date,
                product_id=change.product_id,
                name=change.name,
                total_quantity=0,
                event_dates={},
            )
            session.add(summary)

        summary.total_quantity = (summary.total_quantity or 0) + change.quantity
        if change.name:
            summary.name = change.name
        if change.event_date:
            event_key = change.event_date.isoformat()
            event_dates = dict(summary.event_dates or {})
            event_dates[event_key] = event_dates.get(event_key, 0) + change.quantity
            summary.event_dates = event_dates

        await session.flush()

    async def reset_day(self, day: date) -> int:
        """
        Remove every aggregate of one sale day.

        Returns:
            Number of daily records removed
        """
        try:
            async with self._session_factory() as session:
                ids = select(DailySale.id).where(DailySale.sale_date == day)
                await session.execute(
                    delete(DailySaleOrder).where(DailySaleOrder.daily_sale_id.in_(ids))
                )
                removed = (await session.execute(
                    delete(DailySale).where(DailySale.sale_date == day)
                )).rowcount
                await session.execute(
                    delete(ProductSummary).where(ProductSummary.summary_date == day)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to reset sales day", details={"day": day.isoformat(), "error": str(e)}) from e

        self.log.info("Reset sales day", day=day.isoformat(), records=removed)
        return removed

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def _fetch(self, stmt) -> list:
        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).all())
        except SQLAlchemyError as e:
            raise StorageError("Failed to read sales aggregates", details={"error": str(e)}) from e

    async def get_daily_sales(
        self,
        start_date: date,
        end_date: date,
        product_id: Optional[str] = None,
        event_date: Optional[date] = None,
    ) -> List[DailySaleView]:
        """Daily records with sale_date in [start_date, end_date], audit lists included"""
        stmt = (
            select(DailySale)
            .options(selectinload(DailySale.orders))
            .where(DailySale.sale_date.between(start_date, end_date))
            .order_by(DailySale.sale_date, DailySale.product_key)
        )
        if product_id is not None:
            stmt = stmt.where(DailySale.product_id == str(product_id))
        if event_date is not None:
            stmt = stmt.where(DailySale.event_date == event_date)

        rows = await self._fetch(stmt)
        return [DailySaleView.model_validate(row[0]) for row in rows]

    async def get_product_summary(self, start_date: date, end_date: date) -> List[ProductSummaryView]:
        """Product summaries merged across the range, one per product"""
        stmt = (
            select(ProductSummary)
            .where(ProductSummary.summary_date.between(start_date, end_date))
            .order_by(ProductSummary.product_id, ProductSummary.summary_date)
        )
        rows = await self._fetch(stmt)

        merged: Dict[str, ProductSummaryView] = {}
        for (summary,) in rows:
            view = merged.setdefault(
                summary.product_id,
                ProductSummaryView(product_id=summary.product_id),
            )
            view.name = summary.name or view.name
            view.total_quantity += summary.total_quantity
            for event_key, quantity in (summary.event_dates or {}).items():
                view.event_dates[event_key] = view.event_dates.get(event_key, 0) + quantity

        for view in merged.values():
            view.event_dates = dict(sorted(view.event_dates.items()))
        return list(merged.values())

    async def get_total_sales(
        self,
        start_date: date,
        end_date: date,
        product_id: Optional[str] = None,
    ) -> List[TotalSalesView]:
        """Totals per product_key across the range"""
        stmt = (
            select(
                DailySale.product_key,
                DailySale.product_id,
                DailySale.event_date,
                func.max(DailySale.name),
                func.sum(DailySale.quantity),
                func.sum(DailySale.revenue),
                func.sum(DailySale.web_qty),
                func.sum(DailySale.ticketing_qty),
                func.sum(DailySale.pos_qty),
            )
            .where(DailySale.sale_date.between(start_date, end_date))
            .group_by(DailySale.product_key, DailySale.product_id, DailySale.event_date)
            .order_by(DailySale.product_key)
        )
        if product_id is not None:
            stmt = stmt.where(DailySale.product_id == str(product_id))

        rows = await self._fetch(stmt)
        return [
            TotalSalesView(
                product_key=key,
                product_id=pid,
                event_date=event_date,
                name=name,
                quantity=quantity or 0,
                revenue=Decimal(str(revenue or 0)),
                web_qty=web or 0,
                ticketing_qty=ticketing or 0,
                pos_qty=pos or 0,
            )
            for key, pid, event_date, name, quantity, revenue, web, ticketing, pos in rows
        ]

    async def get_period_summary(self, start_date: date, end_date: date) -> PeriodSummary:
        """Totals, per-source quantities and a per-day breakdown"""
        stmt = (
            select(
                DailySale.sale_date,
                func.sum(DailySale.quantity),
                func.sum(DailySale.revenue),
                func.sum(DailySale.web_qty),
                func.sum(DailySale.ticketing_qty),
                func.sum(DailySale.pos_qty),
                func.count(func.distinct(DailySale.product_id)),
            )
            .where(DailySale.sale_date.between(start_date, end_date))
            .group_by(DailySale.sale_date)
            .order_by(DailySale.sale_date)
        )
        rows = await self._fetch(stmt)

        unique_stmt = select(func.count(func.distinct(DailySale.product_id))).where(
            DailySale.sale_date.between(start_date, end_date)
        )
        unique_products = (await self._fetch(unique_stmt))[0][0] or 0

        summary = PeriodSummary(
            start_date=start_date,
            end_date=end_date,
            unique_products=unique_products,
        )
        totals = defaultdict(int)
        for sale_date, quantity, revenue, web, ticketing, pos, products in rows:
            by_source = {
                SaleSource.WEB.value: web or 0,
                SaleSource.TICKETING.value: ticketing or 0,
                SaleSource.POS.value: pos or 0,
            }
            day = DaySummary(
                sale_date=sale_date,
                quantity=quantity or 0,
                revenue=Decimal(str(revenue or 0)),
                by_source=by_source,
                unique_products=products or 0,
            )
            summary.days.append(day)
            summary.total_quantity += day.quantity
            summary.total_revenue += day.revenue
            for source, quantity in by_source.items():
                totals[source] += quantity

        summary.by_source = {source.value: totals[source.value] for source in SaleSource}
        return summary
