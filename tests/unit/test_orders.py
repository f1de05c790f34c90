"""
Unit Tests - Order Ingestion
"""
from datetime import date, datetime, timezone

from eventsync.sales.aggregation import AggregationStore
from eventsync.sales.event_dates import (
    EventDateResolver,
    TicketMetaStrategy,
    TitleTextStrategy,
    VariantAttributeStrategy,
)
from eventsync.sales.orders import OrderIngestor
from eventsync.sales.recorder import SalesRecorder
from eventsync.sales.schemas import OrderLine, PosOrder, StorefrontOrder, TicketingOrder

TODAY = date(2025, 6, 1)


class TestEventDateResolver:
    """Tests for the event date strategy chain"""

    def test_ticket_meta_first(self):
        """Test explicit ticket meta wins over the title"""
        line = OrderLine(
            product_id=101,
            name="Gala - July 4, 2025",
            meta={"WooCommerceEventsDate": "June 1, 2025"},
        )

        event_date, strategy = EventDateResolver().resolve(line)

        assert event_date == date(2025, 6, 1)
        assert strategy == "ticket_meta"

    def test_variant_attribute(self):
        """Test date-like variation attributes"""
        line = OrderLine(product_id=101, attributes={"attribute_pa_show-date": "2025-06-08"})

        assert EventDateResolver().resolve(line) == (date(2025, 6, 8), "variant_attribute")

    def test_title_fallback(self):
        """Test the product title is the last resort"""
        line = OrderLine(product_id=101, name="Gala - June 1, 2025")

        assert EventDateResolver().resolve(line) == (date(2025, 6, 1), "title_text")

    def test_custom_chain(self):
        """Test a custom strategy list is honoured"""
        resolver = EventDateResolver([VariantAttributeStrategy(), TitleTextStrategy()])
        line = OrderLine(product_id=101, meta={"event_date": "2025-06-01"})

        assert resolver.resolve(line) == (None, None)
        assert TicketMetaStrategy().extract(line) == date(2025, 6, 1)


class TestStorefrontOrders:
    """Tests for OrderIngestor.record_order"""

    async def test_groups_lines_by_event_date(self, ingestor, recorder):
        """Test lines for the same occurrence collapse into one sale"""
        order = StorefrontOrder(
            order_id=1001,
            customer_name="Ada Lovelace",
            customer_email="ada@example.com",
            lines=[
                OrderLine(product_id=101, quantity=1, total="25.00", meta={"event_date": "2025-06-01"}),
                OrderLine(product_id=101, quantity=2, total="50.00", meta={"event_date": "2025-06-01"}),
                OrderLine(product_id=102, quantity=1, total="20.00", attributes={"attribute_pa_show-date": "2025-06-08"}),
            ],
        )

        result = await ingestor.record_order(order)
        rows = await recorder.aggregation.get_daily_sales(TODAY, TODAY)

        assert result.complete
        assert len(result.recorded) == 2
        assert [(r.product_key, r.quantity) for r in rows] == [("101_2025-06-01", 3), ("102_2025-06-08", 1)]
        assert rows[0].orders[0].customer == "Ada Lovelace (ada@example.com)"
        assert rows[0].web_qty == 3

    async def test_catalog_miss_is_warning(self, ingestor):
        """Test an unknown product skips the line and keeps the rest"""
        order = StorefrontOrder(order_id=1002, lines=[
            OrderLine(product_id=999, quantity=1),
            OrderLine(product_id=101, quantity=1, total="25.00"),
        ])

        result = await ingestor.record_order(order)

        assert result.complete
        assert len(result.recorded) == 1
        assert any("999" in w for w in result.warnings)

    async def test_replayed_order_is_duplicate(self, ingestor, recorder):
        """Test a redelivered order changes nothing"""
        order = StorefrontOrder(order_id=1003, lines=[OrderLine(product_id=101, quantity=2, total="50.00")])

        first = await ingestor.record_order(order)
        second = await ingestor.record_order(order)
        rows = await recorder.aggregation.get_daily_sales(TODAY, TODAY)

        assert first.complete and not first.duplicate_order
        assert second.duplicate_order and second.complete
        assert rows[0].quantity == 2
        assert await recorder.is_processed("web_paid_1003")


class TestTicketingOrders:
    """Tests for OrderIngestor.record_ticketing_order"""

    async def test_resolves_within_time_buffer(self, ingestor, store, recorder):
        """Test attendees resolve through the mapping and void tickets are ignored"""
        await store.save_scoped("101", [{"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1"}])
        order = TicketingOrder(
            order_id="T-1",
            event_id="EV-1",
            event_start=datetime(2025, 6, 1, 20, 10),
            attendees=[
                {"ticket_class_id": "TIX-1", "cost": "25.00"},
                {"ticket_class_id": "TIX-1", "cost": "25.00"},
                {"ticket_class_id": "TIX-1", "cost": "25.00", "refunded": True},
            ],
        )

        result = await ingestor.record_ticketing_order(order)
        rows = await recorder.aggregation.get_daily_sales(TODAY, TODAY)

        assert result.complete
        assert len(rows) == 1
        assert (rows[0].product_key, rows[0].quantity, rows[0].ticketing_qty) == ("101_2025-06-01", 2, 2)

    async def test_unmapped_ticket_class_warns(self, ingestor):
        """Test an unknown ticket class is a warning, not an error"""
        order = TicketingOrder(
            order_id="T-2",
            event_start=datetime(2025, 6, 1, 20, 0),
            attendees=[{"ticket_class_id": "TIX-UNKNOWN"}],
        )

        result = await ingestor.record_ticketing_order(order)

        assert result.complete
        assert not result.recorded
        assert any("TIX-UNKNOWN" in w for w in result.warnings)

    async def test_cancelled_order_records_nothing(self, ingestor):
        """Test void order statuses are skipped"""
        order = TicketingOrder(order_id="T-3", status="Refunded", attendees=[{"ticket_class_id": "TIX-1"}])

        result = await ingestor.record_ticketing_order(order)

        assert result.complete
        assert not result.recorded

    async def test_order_key_not_claimed_on_error(self, ingestor, store, recorder):
        """Test an order with a failed group can be retried"""
        await store.save_default("999", ticket_class_id="TIX-GONE")
        order = TicketingOrder(
            order_id="T-4",
            event_start=datetime(2025, 6, 1, 20, 0),
            attendees=[{"ticket_class_id": "TIX-GONE"}],
        )

        result = await ingestor.record_ticketing_order(order)

        assert not result.complete
        assert result.errors
        assert not await recorder.is_processed("ticketing_order_T-4")

    async def test_storage_failure_lands_in_errors(self, failing_session_factory, catalog, ledger, locks, clock, resolver, recorder):
        """Test a group that fails to persist is reported and the order stays retryable"""
        broken = SalesRecorder(
            failing_session_factory,
            catalog,
            ledger=ledger,
            aggregation=AggregationStore(failing_session_factory, locks=locks),
            locks=locks,
            clock=clock,
        )
        order = StorefrontOrder(order_id=1009, lines=[OrderLine(product_id=101, quantity=1, total="25.00")])

        result = await OrderIngestor(broken, resolver).record_order(order)

        assert not result.complete
        assert [e.product_id for e in result.errors] == ["101"]
        assert not await recorder.is_processed("web_paid_1009")
        assert await recorder.aggregation.get_daily_sales(TODAY, TODAY) == []


class TestPosOrders:
    """Tests for OrderIngestor.record_pos_order"""

    async def test_completed_order(self, ingestor, store, recorder):
        """Test completed POS orders resolve items on the local sale date"""
        await store.save_scoped("102", [{"date": "2025-06-01", "pos_item_id": "SQ-1"}])
        order = PosOrder(
            order_id="P-1",
            closed_at=datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc),
            line_items=[{"pos_item_id": "SQ-1", "name": "Matinee", "quantity": "2", "total": "40.00"}],
        )

        result = await ingestor.record_pos_order(order)
        rows = await recorder.aggregation.get_daily_sales(TODAY, TODAY)

        assert result.complete
        assert (rows[0].product_key, rows[0].pos_qty) == ("102_2025-06-01", 2)

    async def test_open_order_ignored(self, ingestor, store):
        """Test orders that are not completed record nothing"""
        await store.save_default("102", pos_item_id="SQ-1")
        order = PosOrder(order_id="P-2", state="OPEN", line_items=[{"pos_item_id": "SQ-1"}])

        result = await ingestor.record_pos_order(order)

        assert not result.recorded
        assert result.complete
        assert not await ingestor.recorder.is_processed("pos_order_P-2")
        assert "OPEN" in result.warnings[0]
