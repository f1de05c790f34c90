"""
Order Ingestion

Turns multi-line upstream orders into grouped ``SalesRecorder.record`` calls.

- Storefront: catalog check per line, event date via the strategy chain
- Ticketing: attendees resolved to products through ticket class mappings
- Point-of-sale: completed orders only, items resolved through POS mappings

Lines are grouped by (product_id, event_date) before recording so one order
never produces two dedup keys for the same occurrence. The order-level key is
claimed only when every group was recorded or was already recorded.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Tuple

import structlog

from eventsync.config import get_settings
from eventsync.database.models import SaleSource
from eventsync.exceptions import StorageError
from eventsync.mapping.resolver import MappingResolver
from eventsync.sales.catalog import CatalogLookup
from eventsync.sales.event_dates import EventDateResolver
from eventsync.sales.recorder import SalesRecorder
from eventsync.sales.schemas import (
    LineError,
    OrderResult,
    PosOrder,
    RecordStatus,
    SaleEvent,
    StorefrontOrder,
    TicketingOrder,
)
from eventsync.transformation.datetimes import extract_time_from_title, to_local_date

logger = structlog.get_logger(__name__)

VOID_ORDER_STATUSES = ("cancelled", "refunded", "deleted")


@dataclass
class _Group:
    quantity: int = 0
    revenue: Decimal = Decimal("0")


GroupKey = Tuple[str, Optional[date]]


class OrderIngestor:
    """
    Order-level entry points on top of the recorder.

    Example:
        ingestor = OrderIngestor(recorder, resolver)
        result = await ingestor.record_order(order)
        if result.complete:
            ...
    """

    def __init__(
        self,
        recorder: SalesRecorder,
        resolver: MappingResolver,
        catalog: Optional[CatalogLookup] = None,
        date_resolver: Optional[EventDateResolver] = None,
        log=None,
    ):
        settings = get_settings()
        self.recorder = recorder
        self.resolver = resolver
        self.catalog = catalog or recorder.catalog
        self.date_resolver = date_resolver or EventDateResolver()
        self.log = log or logger
        self.order_key_prefixes = {
            SaleSource.WEB: settings.ledger.order_key_prefix,
            SaleSource.TICKETING: "ticketing_order",
            SaleSource.POS: "pos_order",
        }

    def order_key(self, source: SaleSource, order_id: str) -> str:
        return f"{self.order_key_prefixes[source]}_{order_id}"

    async def _record_groups(
        self,
        result: OrderResult,
        groups: "OrderedDict[GroupKey, _Group]",
        currency: Optional[str],
        customer: Optional[str],
    ) -> OrderResult:
        for (product_id, event_date), group in groups.items():
            if group.quantity <= 0:
                result.warnings.append(f"Product {product_id}: non-positive quantity, not recorded")
                continue

            sale = SaleEvent(
                product_id=product_id,
                quantity=group.quantity,
                source=result.source,
                external_ref=result.order_id,
                event_date=event_date,
                revenue=group.revenue,
                currency=currency,
                customer=customer,
            )
            try:
                recorded = await self.recorder.record(sale)
            except StorageError as e:
                self.log.error(
                    "Order group failed",
                    order_id=result.order_id,
                    product_id=product_id,
                    error=e.message,
                )
                result.errors.append(LineError(product_id=product_id, event_date=event_date, message=e.message))
                continue

            if recorded.status == RecordStatus.RECORDED:
                result.recorded.append(recorded)
            elif recorded.status == RecordStatus.SKIPPED_DUPLICATE:
                result.skipped.append(recorded)
            else:
                result.errors.append(LineError(
                    product_id=product_id,
                    event_date=event_date,
                    message=recorded.error or "Recording failed",
                ))
            result.warnings.extend(recorded.warnings)

        if not result.errors:
            await self.recorder.mark_processed(
                self.order_key(result.source, result.order_id),
                source=result.source.value,
            )
            result.complete = True

        self.log.info(
            "Order processed",
            source=result.source.value,
            order_id=result.order_id,
            recorded=len(result.recorded),
            skipped=len(result.skipped),
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    async def _start(self, source: SaleSource, order_id: str) -> OrderResult:
        result = OrderResult(order_id=order_id, source=source)
        if await self.recorder.is_processed(self.order_key(source, order_id)):
            self.log.info("Order already processed", source=source.value, order_id=order_id)
            result.duplicate_order = True
            result.complete = True
        return result

    async def record_order(self, order: StorefrontOrder) -> OrderResult:
        """Record a paid storefront order"""
        result = await self._start(SaleSource.WEB, order.order_id)
        if result.duplicate_order:
            return result

        groups: "OrderedDict[GroupKey, _Group]" = OrderedDict()
        for line in order.lines:
            product = await self.catalog.get_product(line.product_id)
            if product is None:
                message = f"Product {line.product_id} not found in catalog, line skipped"
                self.log.warning(message, order_id=order.order_id, product_id=line.product_id)
                result.warnings.append(message)
                continue

            event_date, _ = self.date_resolver.resolve(line)
            if event_date is None:
                self.log.debug("No event date on line", order_id=order.order_id, product_id=line.product_id)

            group = groups.setdefault((line.product_id, event_date), _Group())
            group.quantity += line.quantity
            group.revenue += line.total

        return await self._record_groups(result, groups, order.currency, order.customer)

    async def record_ticketing_order(self, order: TicketingOrder) -> OrderResult:
        """Record a ticketing-platform order, resolving ticket classes to products"""
        result = await self._start(SaleSource.TICKETING, order.order_id)
        if result.duplicate_order:
            return result

        if (order.status or "").lower() in VOID_ORDER_STATUSES:
            result.warnings.append(f"Order status {order.status}, nothing recorded")
            result.complete = True
            return result

        event_date = order.event_start.date() if order.event_start else None
        event_time = order.event_start.strftime("%H:%M") if order.event_start else None

        groups: "OrderedDict[GroupKey, _Group]" = OrderedDict()
        resolved: Dict[str, Optional[Tuple[str, Optional[date]]]] = {}
        for attendee in order.attendees:
            if attendee.is_void:
                continue

            ticket_class = attendee.ticket_class_id
            if ticket_class not in resolved:
                resolution = await self.resolver.find_product_for(
                    ticket_class, event_date, event_time, order.event_id
                )
                if resolution.found:
                    scope = resolution.entry.scope_date if resolution.entry else None
                    resolved[ticket_class] = (resolution.product_id, event_date or scope)
                else:
                    resolved[ticket_class] = None
                    result.warnings.extend(resolution.warnings)
                    result.warnings.append(f"Ticket class {ticket_class} has no product mapping")

            target = resolved[ticket_class]
            if target is None:
                continue
            group = groups.setdefault(target, _Group())
            group.quantity += attendee.quantity
            group.revenue += attendee.cost

        return await self._record_groups(result, groups, order.currency, order.customer)

    async def record_pos_order(self, order: PosOrder) -> OrderResult:
        """Record a completed point-of-sale order, resolving items to products"""
        result = await self._start(SaleSource.POS, order.order_id)
        if result.duplicate_order:
            return result

        if not order.is_completed:
            result.warnings.append(f"Order state {order.state}, nothing recorded")
            result.complete = True
            return result

        sale_date = to_local_date(order.closed_at, self.recorder.tz) if order.closed_at else self.recorder.today()

        groups: "OrderedDict[GroupKey, _Group]" = OrderedDict()
        for item in order.line_items:
            item_time = extract_time_from_title(item.name)
            resolution = await self.resolver.find_product_for(item.pos_item_id, sale_date, item_time)
            if not resolution.found:
                result.warnings.extend(resolution.warnings)
                result.warnings.append(f"POS item {item.pos_item_id} has no product mapping")
                continue

            event_date = resolution.entry.scope_date if resolution.entry else None
            group = groups.setdefault((resolution.product_id, event_date), _Group())
            group.quantity += item.quantity
            group.revenue += item.total

        return await self._record_groups(result, groups, order.currency, order.customer)
