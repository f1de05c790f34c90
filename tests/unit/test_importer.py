"""
Unit Tests - Historical Batch Importer
"""
from datetime import date

import pytest

from eventsync.database.models import SaleSource
from eventsync.exceptions import ImportCursorError, UpstreamFetchError
from eventsync.importing import (
    CursorStore,
    FileSaleSource,
    HistoricalImporter,
    ImportState,
    Pagination,
    drive_import,
)

START = date(2025, 5, 1)
END = date(2025, 5, 31)


@pytest.fixture
def web_records(make_record):
    return [make_record(f"R-{i}") for i in range(1, 4)]


def build(recorder, resolver, *sources, batch_size=2):
    return HistoricalImporter(recorder, resolver, sources, batch_size=batch_size)


class TestImportBatch:
    """Tests for HistoricalImporter.import_batch"""

    async def test_pages_until_short_page(self, recorder, resolver, make_source, web_records):
        """Test a full page continues and a short page completes"""
        source = make_source("web", web_records)
        importer = build(recorder, resolver, source)

        first = await importer.import_batch("web", START, END)
        second = await importer.import_batch("web", START, END, first.next_cursor)
        rows = await recorder.aggregation.get_daily_sales(START, START)

        assert (first.processed_count, first.imported_count, first.complete) == (2, 2, False)
        assert first.state == ImportState.CONTINUING
        assert first.next_cursor.position == 2
        assert first.next_cursor.total_processed == 2
        assert (second.processed_count, second.complete, second.next_cursor) == (1, True, None)
        assert source.calls == [(0, 2), (2, 2)]
        assert rows[0].quantity == 3
        assert rows[0].web_qty == 3

    async def test_rerun_skips_imported(self, recorder, resolver, make_source, web_records):
        """Test a second run over the same range records nothing"""
        importer = build(recorder, resolver, make_source("web", web_records), batch_size=10)

        await importer.import_batch("web", START, END)
        rerun = await importer.import_batch("web", START, END)
        rows = await recorder.aggregation.get_daily_sales(START, START)

        assert (rerun.imported_count, rerun.skipped_count) == (0, 3)
        assert rows[0].quantity == 3

    async def test_cursor_as_dict(self, recorder, resolver, make_source, web_records):
        """Test a JSON round-tripped cursor is accepted"""
        importer = build(recorder, resolver, make_source("web", web_records))

        first = await importer.import_batch("web", START, END)
        second = await importer.import_batch("web", START, END, first.next_cursor.model_dump(mode="json"))

        assert second.complete
        assert second.imported_count == 1

    async def test_void_records_skipped(self, recorder, resolver, make_source, make_record):
        """Test cancelled and refunded records are skipped"""
        records = [make_record("V-1", status="Cancelled"), make_record("V-2", status="refunded"), make_record("OK-1")]
        importer = build(recorder, resolver, make_source("web", records), batch_size=10)

        result = await importer.import_batch("web", START, END)

        assert (result.processed_count, result.imported_count, result.skipped_count) == (3, 1, 2)
        assert not await recorder.is_imported("web", "V-1")

    async def test_unresolved_line_not_marked(self, recorder, resolver, store, make_source, make_record):
        """Test a record with an unmapped line fails and is retried later"""
        records = [make_record("T-1", lines=[
            {"identifier": "TIX-1", "event_date": "2025-06-01", "event_time": "20:10", "quantity": 2},
        ])]
        importer = build(
            recorder,
            resolver,
            make_source("ticketing", records, channel=SaleSource.TICKETING),
            batch_size=10,
        )

        failed = await importer.import_batch("ticketing", START, END)
        assert failed.failed_count == 1
        assert not await recorder.is_imported("ticketing", "T-1")
        assert any(log.level == "warning" and log.external_ref == "T-1" for log in failed.logs)

        await store.save_scoped("101", [{"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1"}])
        retried = await importer.import_batch("ticketing", START, END)
        rows = await recorder.aggregation.get_daily_sales(START, START)

        assert retried.imported_count == 1
        assert await recorder.is_imported("ticketing", "T-1")
        assert (rows[0].product_key, rows[0].ticketing_qty) == ("101_2025-06-01", 2)

    async def test_lines_grouped_per_record(self, recorder, resolver, make_source, make_record):
        """Test repeated lines for one product land as one sale"""
        records = [make_record("G-1", lines=[
            {"product_id": "102", "quantity": 1, "revenue": "20"},
            {"product_id": "102", "quantity": 2, "revenue": "40"},
        ])]
        importer = build(recorder, resolver, make_source("web", records), batch_size=10)

        await importer.import_batch("web", START, END)
        rows = await recorder.aggregation.get_daily_sales(START, START)

        assert len(rows[0].orders) == 1
        assert rows[0].quantity == 3

    async def test_catalog_miss_counts_as_failed(self, recorder, resolver, make_source, make_record):
        """Test a product missing from the catalog fails the record"""
        records = [make_record("M-1", lines=[{"product_id": "999"}])]
        importer = build(recorder, resolver, make_source("web", records), batch_size=10)

        result = await importer.import_batch("web", START, END)

        assert result.failed_count == 1
        assert result.complete


class TestCursorValidation:
    """Tests for cursor and source validation"""

    async def test_unknown_source(self, recorder, resolver):
        """Test an unknown source name is rejected"""
        importer = build(recorder, resolver)

        with pytest.raises(ImportCursorError):
            await importer.import_batch("nowhere", START, END)

    @pytest.mark.parametrize("cursor", [
        {"start_date": "not a date", "end_date": "2025-05-31"},
        {"start_date": "2025-05-31", "end_date": "2025-05-01"},
        {"start_date": "2025-04-01", "end_date": "2025-04-30"},
        {"start_date": "2025-05-01", "end_date": "2025-05-31", "position": "tok-1"},
        {"start_date": "2025-05-01", "end_date": "2025-05-31", "position": -1},
        "page-2",
    ])
    async def test_malformed_cursor(self, recorder, resolver, make_source, web_records, cursor):
        """Test malformed or foreign cursors are rejected"""
        importer = build(recorder, resolver, make_source("web", web_records))

        with pytest.raises(ImportCursorError):
            await importer.import_batch("web", START, END, cursor)

    async def test_inverted_range(self, recorder, resolver, make_source, web_records):
        """Test an end date before the start date is rejected"""
        importer = build(recorder, resolver, make_source("web", web_records))

        with pytest.raises(ImportCursorError):
            await importer.import_batch("web", END, START)


class TestFetchFailure:
    """Tests for upstream fetch failures"""

    async def test_cursor_unchanged(self, recorder, resolver, make_source, web_records):
        """Test a failed fetch hands back the same cursor for a retry"""
        source = make_source("web", web_records)
        importer = build(recorder, resolver, source)
        first = await importer.import_batch("web", START, END)

        source.fail_next = True
        with pytest.raises(UpstreamFetchError) as exc_info:
            await importer.import_batch("web", START, END, first.next_cursor)

        assert exc_info.value.cursor == first.next_cursor
        assert exc_info.value.logs[0].level == "error"

        retried = await importer.import_batch("web", START, END, exc_info.value.cursor)
        assert retried.complete
        assert source.calls[-2:] == [(2, 2), (2, 2)]


class TestPagination:
    """Tests for native pagination styles"""

    async def test_page_numbers(self, recorder, resolver, make_source, web_records):
        """Test page-numbered sources start at 1 and count up"""
        source = make_source("ticketing", web_records, pagination=Pagination.PAGE, channel=SaleSource.TICKETING)
        importer = build(recorder, resolver, source)

        first = await importer.import_batch("ticketing", START, END)
        second = await importer.import_batch("ticketing", START, END, first.next_cursor)

        assert first.next_cursor.position == 2
        assert second.complete
        assert [call[0] for call in source.calls] == [1, 2]

    async def test_continuation_tokens(self, recorder, resolver, make_source, web_records):
        """Test token-paginated sources follow the upstream token"""
        source = make_source("pos", web_records, pagination=Pagination.CURSOR, channel=SaleSource.POS)
        importer = build(recorder, resolver, source)

        first = await importer.import_batch("pos", START, END)
        second = await importer.import_batch("pos", START, END, first.next_cursor)
        rows = await recorder.aggregation.get_daily_sales(START, START)

        assert first.next_cursor.position == "tok-2"
        assert second.complete
        assert [call[0] for call in source.calls] == [None, "tok-2"]
        assert rows[0].pos_qty == 3

    async def test_ticketing_page_cap(self, recorder, resolver, make_source, web_records):
        """Test ticketing sources are capped at the platform page size"""
        ticketing = make_source("ticketing", web_records, pagination=Pagination.PAGE, channel=SaleSource.TICKETING)
        capped = make_source("web", web_records, max_page_size=10)
        importer = build(recorder, resolver, ticketing, capped, batch_size=100)

        await importer.import_batch("ticketing", START, END)
        await importer.import_batch("web", START, END)

        assert ticketing.calls[0][1] == 50
        assert capped.calls[0][1] == 10


class TestMultiSource:
    """Tests for multi-source jobs"""

    async def test_advance_moves_through_sources(self, recorder, resolver, make_source, make_record):
        """Test a completed source hands over to the next one"""
        web = make_source("web", [make_record("W-1"), make_record("W-2")])
        pos = make_source("pos", [make_record("P-1")], channel=SaleSource.POS)
        importer = build(recorder, resolver, web, pos)

        cursor = importer.start_cursor(START, END)
        first = await importer.advance(cursor)
        second = await importer.advance(first.next_cursor)

        assert cursor.sources == ["web", "pos"]
        assert (first.source, first.complete, first.state) == ("web", False, ImportState.CONTINUING)
        assert (first.next_cursor.source_index, first.next_cursor.position) == (1, None)
        assert (second.source, second.complete) == ("pos", True)

    async def test_start_cursor_unknown_source(self, recorder, resolver):
        """Test jobs over unknown sources are rejected up front"""
        importer = build(recorder, resolver)

        with pytest.raises(ImportCursorError):
            importer.start_cursor(START, END, ["nowhere"])

    async def test_start_cursor_follows_configured_order(self, recorder, resolver, make_source, web_records, monkeypatch):
        """Test the default source order comes from settings, unlisted adapters last"""
        from eventsync.config import get_settings

        get_settings.cache_clear()
        monkeypatch.setenv("IMPORT_SOURCES", '["pos", "web"]')
        try:
            importer = build(
                recorder,
                resolver,
                make_source("export", web_records),
                make_source("web", web_records),
                make_source("pos", web_records, channel=SaleSource.POS),
            )
            cursor = importer.start_cursor(START, END)
        finally:
            get_settings.cache_clear()

        assert cursor.sources == ["pos", "web", "export"]

    async def test_exhausted_cursor(self, recorder, resolver, make_source, web_records):
        """Test a cursor past the last source reports completion"""
        importer = build(recorder, resolver, make_source("web", web_records))
        cursor = importer.start_cursor(START, END).model_copy(update={"source_index": 1})

        result = await importer.advance(cursor)

        assert result.complete


class TestDriveImport:
    """Tests for drive_import with a persisted cursor"""

    async def test_resume_from_stored_cursor(self, recorder, resolver, session_factory, make_source, web_records):
        """Test a stopped job resumes where it left off and clears its cursor"""
        source = make_source("web", web_records)
        importer = build(recorder, resolver, source)
        cursors = CursorStore(session_factory)

        partial = await drive_import(importer, cursors, "backfill", START, END, max_batches=1)
        stored = await cursors.load("backfill")
        finished = await drive_import(importer, cursors, "backfill", START, END)

        assert (partial.batches, partial.imported, partial.complete) == (1, 2, False)
        assert stored.position == 2
        assert (finished.imported, finished.complete) == (1, True)
        assert await cursors.load("backfill") is None
        assert source.calls == [(0, 2), (2, 2)]

    async def test_failure_keeps_stored_cursor(self, recorder, resolver, session_factory, make_source, web_records):
        """Test an upstream failure leaves the stored cursor on the failed page"""
        source = make_source("web", web_records)
        importer = build(recorder, resolver, source)
        cursors = CursorStore(session_factory)

        await drive_import(importer, cursors, "backfill", START, END, max_batches=1)
        source.fail_next = True
        with pytest.raises(UpstreamFetchError):
            await drive_import(importer, cursors, "backfill", START, END)

        assert (await cursors.load("backfill")).position == 2


class TestFileSaleSource:
    """Tests for FileSaleSource"""

    @pytest.fixture
    def export(self, tmp_path):
        path = tmp_path / "orders.csv"
        path.write_text(
            "order_ref,sale_date,product_id,quantity,revenue,status,customer\n"
            "1001,2025-05-01T10:15:00,101,1,25.00,,Ada\n"
            "1001,2025-05-01T10:15:00,102,2,40.00,,Ada\n"
            "1002,2025-05-02,101,1,25.00,cancelled,\n"
            "1003,2025-05-03,103,1,40.00,,Grace\n"
            "1004,2025-06-15,101,1,25.00,,\n"
        )
        return path

    async def test_groups_rows_into_records(self, export):
        """Test rows sharing an order reference form one record"""
        source = FileSaleSource("export", export)

        page = await source.fetch(START, END, 0, 10)

        assert [r.external_ref for r in page.records] == ["1001", "1002", "1003"]
        assert [line.quantity for line in page.records[0].lines] == [1, 2]
        assert page.records[0].sale_date == date(2025, 5, 1)
        assert page.records[1].status == "cancelled"
        assert page.has_more is False

    async def test_paginates_by_record(self, export):
        """Test offsets count records, not rows"""
        source = FileSaleSource("export", export)

        page = await source.fetch(START, END, 1, 1)

        assert [r.external_ref for r in page.records] == ["1002"]
        assert page.next_position == 2
        assert page.has_more is True

    async def test_import_from_export(self, recorder, resolver, export):
        """Test a full import over a file export"""
        importer = build(recorder, resolver, FileSaleSource("export", export), batch_size=2)

        first = await importer.import_batch("export", START, END)
        second = await importer.import_batch("export", START, END, first.next_cursor)
        summary = await recorder.aggregation.get_period_summary(START, END)

        assert (first.imported_count, first.skipped_count) == (1, 1)
        assert second.complete
        assert summary.total_quantity == 4

    async def test_missing_columns(self, tmp_path):
        """Test exports without the required columns are rejected"""
        path = tmp_path / "bad.csv"
        path.write_text("ref,date\n1,2025-05-01\n")

        with pytest.raises(ValueError):
            await FileSaleSource("bad", path).fetch(START, END, 0, 10)

    async def test_unreadable_row_fails_only_its_record(self, recorder, resolver, tmp_path):
        """Test a malformed row fails its record while the page still advances"""
        path = tmp_path / "orders.csv"
        path.write_text(
            "order_ref,sale_date,product_id,quantity,revenue\n"
            "A,2025-05-01,101,1,25.00\n"
            "B,2025-05-01,102,abc,20.00\n"
            "C,2025-05-02,103,1,40.00\n"
        )
        importer = build(recorder, resolver, FileSaleSource("export", path), batch_size=10)

        result = await importer.import_batch("export", START, END)
        rerun = await importer.import_batch("export", START, END)

        assert result.complete
        assert (result.imported_count, result.failed_count) == (2, 1)
        assert any(log.external_ref == "B" and log.level == "error" for log in result.logs)
        assert await recorder.is_imported("export", "A")
        assert not await recorder.is_imported("export", "B")
        assert (rerun.skipped_count, rerun.failed_count) == (2, 1)
