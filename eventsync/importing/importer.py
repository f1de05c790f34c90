"""
Historical Batch Importer

Resumable backfill of upstream order history into the sales aggregates.

Features:
- One page per call; the caller persists the cursor and schedules the next
- Native pagination per source (offset, page number, continuation token)
- At-most-once import per (source, external reference)
- Historical mode recording: lands on the record's own sale date and never
  triggers live side effects
- Per-record failures are logged and never abort the page
- Fetch failures leave the cursor untouched so the same page can be retried
- Multi-source jobs advanced source by source through ``advance``
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field, ValidationError, model_validator

from eventsync.config import get_settings
from eventsync.database.models import SaleSource
from eventsync.exceptions import EventSyncError, ImportCursorError, UpstreamFetchError
from eventsync.importing.sources import (
    FetchedPage,
    HistoricalLine,
    HistoricalRecord,
    Pagination,
    Position,
    SaleHistorySource,
)
from eventsync.mapping.resolver import MappingResolver
from eventsync.sales.recorder import SalesRecorder
from eventsync.sales.schemas import RecordMode, RecordStatus, SaleEvent

logger = structlog.get_logger(__name__)

VOID_RECORD_STATUSES = ("cancelled", "canceled", "refunded", "deleted", "voided")


# =============================================================================
# METRICS
# =============================================================================

IMPORT_BATCHES = Counter(
    "eventsync_import_batches_total",
    "Historical import batches",
    ["source", "state"],
)

IMPORT_RECORDS = Counter(
    "eventsync_import_records_total",
    "Historical records by outcome",
    ["source", "outcome"],
)

IMPORT_BATCH_DURATION = Histogram(
    "eventsync_import_batch_seconds",
    "Time spent importing one page",
    ["source"],
)


# =============================================================================
# MODELS
# =============================================================================

class ImportState(str, Enum):
    """Batch import state"""
    PENDING = "pending"
    FETCHING = "fetching"
    RECORDING = "recording"
    ADVANCING = "advancing"
    CONTINUING = "continuing"
    COMPLETE = "complete"
    ERROR = "error"


class ImportCursor(BaseModel):
    """
    Externalized import position.

    ``position`` is the source's native pagination state: records consumed
    (offset), next page number (page) or continuation token (cursor).
    ``sources`` and ``source_index`` describe a multi-source job.
    """

    start_date: date
    end_date: date
    position: Position = None
    source_index: int = Field(default=0, ge=0)
    sources: List[str] = Field(default_factory=list)
    total_processed: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_range(self) -> "ImportCursor":
        if self.end_date < self.start_date:
            raise ValueError("end_date precedes start_date")
        if self.sources and self.source_index > len(self.sources):
            raise ValueError("source_index out of range")
        return self


class ImportLogEntry(BaseModel):
    """One line of the per-batch import log"""

    level: str = "info"
    message: str
    external_ref: Optional[str] = None


class BatchResult(BaseModel):
    """Outcome of importing one page"""

    source: str
    state: ImportState = ImportState.PENDING
    processed_count: int = 0
    imported_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    next_cursor: Optional[ImportCursor] = None
    complete: bool = False
    logs: List[ImportLogEntry] = Field(default_factory=list)
    duration_seconds: float = 0

    def log(self, message: str, level: str = "info", external_ref: Optional[str] = None) -> None:
        self.logs.append(ImportLogEntry(level=level, message=message, external_ref=external_ref))


@dataclass
class _Group:
    quantity: int = 0
    revenue: Decimal = Decimal("0")


# =============================================================================
# IMPORTER
# =============================================================================

class HistoricalImporter:
    """
    Page-at-a-time historical importer.

    Example:
        importer = HistoricalImporter(recorder, resolver, [storefront, ticketing])
        cursor = None
        while True:
            result = await importer.import_batch("web", start, end, cursor)
            if result.complete:
                break
            cursor = result.next_cursor
    """

    def __init__(
        self,
        recorder: SalesRecorder,
        resolver: MappingResolver,
        sources: Iterable[SaleHistorySource],
        batch_size: Optional[int] = None,
        log=None,
    ):
        settings = get_settings()
        self.recorder = recorder
        self.resolver = resolver
        self.sources: Dict[str, SaleHistorySource] = OrderedDict((s.name, s) for s in sources)
        self.batch_size = batch_size or settings.imports.batch_size
        self.ticketing_max_page_size = settings.imports.ticketing_max_page_size
        self.default_sources = list(settings.imports.sources)
        self.log = log or logger

    # -------------------------------------------------------------------------
    # Cursor handling
    # -------------------------------------------------------------------------

    def _source(self, name: str) -> SaleHistorySource:
        source = self.sources.get(name)
        if source is None:
            raise ImportCursorError(
                f"Unknown import source: {name}",
                details={"source": name, "known": list(self.sources)},
            )
        return source

    @staticmethod
    def _coerce_cursor(
        cursor: Union[ImportCursor, Dict[str, Any], None],
        source_name: str,
        start_date: date,
        end_date: date,
    ) -> ImportCursor:
        if cursor is None:
            try:
                return ImportCursor(start_date=start_date, end_date=end_date, sources=[source_name])
            except ValidationError as e:
                raise ImportCursorError("Invalid import date range", details={"error": str(e)}) from e

        if isinstance(cursor, dict):
            try:
                cursor = ImportCursor.model_validate(cursor)
            except ValidationError as e:
                raise ImportCursorError("Malformed import cursor", details={"error": str(e)}) from e
        elif not isinstance(cursor, ImportCursor):
            raise ImportCursorError(
                "Malformed import cursor",
                details={"type": type(cursor).__name__},
            )

        if (cursor.start_date, cursor.end_date) != (start_date, end_date):
            raise ImportCursorError(
                "Cursor belongs to a different date range",
                details={
                    "cursor_range": [cursor.start_date.isoformat(), cursor.end_date.isoformat()],
                    "requested_range": [start_date.isoformat(), end_date.isoformat()],
                },
            )
        return cursor

    @staticmethod
    def _start_position(source: SaleHistorySource, position: Position) -> Position:
        """Validate the stored position against the source's pagination"""
        if source.pagination == Pagination.CURSOR:
            if position is not None and not isinstance(position, str):
                raise ImportCursorError(
                    "Continuation token must be a string",
                    details={"source": source.name, "position": position},
                )
            return position

        if position is None:
            return 1 if source.pagination == Pagination.PAGE else 0
        if isinstance(position, bool) or not isinstance(position, int):
            raise ImportCursorError(
                f"{source.pagination.value} position must be an integer",
                details={"source": source.name, "position": position},
            )
        minimum = 1 if source.pagination == Pagination.PAGE else 0
        if position < minimum:
            raise ImportCursorError(
                f"{source.pagination.value} position must be >= {minimum}",
                details={"source": source.name, "position": position},
            )
        return position

    def _limit(self, source: SaleHistorySource) -> int:
        cap = source.max_page_size
        if cap is None and source.channel == SaleSource.TICKETING:
            cap = self.ticketing_max_page_size
        return min(self.batch_size, cap) if cap else self.batch_size

    @staticmethod
    def _next_position(
        source: SaleHistorySource,
        position: Position,
        page: FetchedPage,
        limit: int,
    ) -> Tuple[Position, bool]:
        """Next native position and whether the source is exhausted"""
        exhausted = len(page.records) < limit or page.has_more is False

        if source.pagination == Pagination.OFFSET:
            return position + len(page.records), exhausted
        if source.pagination == Pagination.PAGE:
            return position + 1, exhausted

        next_token = page.next_position
        if next_token in (None, ""):
            return None, True
        return str(next_token), exhausted

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    async def _resolve_line(
        self,
        record: HistoricalRecord,
        line: HistoricalLine,
        result: BatchResult,
    ) -> Optional[Tuple[str, Optional[date]]]:
        if line.product_id:
            return line.product_id, line.event_date

        resolution = await self.resolver.find_product_for(
            line.identifier,
            line.event_date or record.sale_date,
            line.event_time,
            line.event_id,
        )
        if not resolution.found:
            result.log(
                f"No product mapping for identifier={line.identifier} event_id={line.event_id}",
                level="warning",
                external_ref=record.external_ref,
            )
            return None

        scope_date = resolution.entry.scope_date if resolution.entry else None
        return resolution.product_id, line.event_date or scope_date

    async def _import_record(
        self,
        source: SaleHistorySource,
        record: HistoricalRecord,
        result: BatchResult,
    ) -> str:
        """Import one record; returns imported, skipped or failed"""
        ref = record.external_ref

        if record.parse_error:
            result.log(record.parse_error, level="error", external_ref=ref)
            return "failed"

        if (record.status or "").lower() in VOID_RECORD_STATUSES:
            result.log(f"Skipped {record.status} record", external_ref=ref)
            return "skipped"

        if await self.recorder.is_imported(source.name, ref):
            result.log("Already imported", external_ref=ref)
            return "skipped"

        groups: "OrderedDict[Tuple[str, Optional[date]], _Group]" = OrderedDict()
        unresolved = 0
        for line in record.lines:
            if line.quantity <= 0:
                continue
            target = await self._resolve_line(record, line, result)
            if target is None:
                unresolved += 1
                continue
            group = groups.setdefault(target, _Group())
            group.quantity += line.quantity
            group.revenue += line.revenue

        failures = 0
        for (product_id, event_date), group in groups.items():
            sale = SaleEvent(
                product_id=product_id,
                quantity=group.quantity,
                source=source.channel,
                external_ref=ref,
                event_date=event_date,
                revenue=group.revenue,
                currency=record.currency,
                customer=record.customer,
                sale_date=record.sale_date,
            )
            recorded = await self.recorder.record(sale, mode=RecordMode.HISTORICAL)
            if recorded.status == RecordStatus.ERROR:
                failures += 1
                result.log(
                    f"Product {product_id}: {recorded.error}",
                    level="error",
                    external_ref=ref,
                )
            elif recorded.status == RecordStatus.SKIPPED_DUPLICATE:
                result.log(f"Product {product_id}: already recorded", external_ref=ref)

        if unresolved or failures:
            # Not marked, so a rerun picks the record up again
            result.log(
                f"Record left unimported ({unresolved} unresolved, {failures} failed)",
                level="warning",
                external_ref=ref,
            )
            return "failed"

        await self.recorder.mark_imported(source.name, ref)
        return "imported"

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def import_batch(
        self,
        source: str,
        start_date: date,
        end_date: date,
        cursor: Union[ImportCursor, Dict[str, Any], None] = None,
    ) -> BatchResult:
        """
        Import exactly one page of ``source`` history.

        Returns:
            BatchResult with ``complete`` set once the source is exhausted,
            otherwise ``next_cursor`` to pass to the next call

        Raises:
            ImportCursorError: unknown source or malformed cursor
            UpstreamFetchError: page fetch failed; carries the unchanged cursor
        """
        started = time.perf_counter()
        adapter = self._source(source)
        current = self._coerce_cursor(cursor, source, start_date, end_date)
        position = self._start_position(adapter, current.position)
        limit = self._limit(adapter)

        result = BatchResult(source=source, state=ImportState.FETCHING)
        self.log.info(
            "Fetching import page",
            source=source,
            position=position,
            limit=limit,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        try:
            page = await adapter.fetch(start_date, end_date, position, limit)
        except Exception as e:
            result.state = ImportState.ERROR
            result.log(f"Fetch failed: {e}", level="error")
            IMPORT_BATCHES.labels(source=source, state=ImportState.ERROR.value).inc()
            self.log.error("Import page fetch failed", source=source, position=position, error=str(e))
            raise UpstreamFetchError(
                f"Failed to fetch {source} page",
                cursor=current,
                logs=result.logs,
                details={"source": source, "position": position, "error": str(e)},
            ) from e

        result.state = ImportState.RECORDING
        result.processed_count = len(page.records)
        for record in page.records:
            try:
                outcome = await self._import_record(adapter, record, result)
            except (EventSyncError, ValueError) as e:
                outcome = "failed"
                message = e.message if isinstance(e, EventSyncError) else str(e)
                result.log(f"Record failed: {message}", level="error", external_ref=record.external_ref)
                self.log.error(
                    "Import record failed",
                    source=source,
                    external_ref=record.external_ref,
                    error=message,
                )

            if outcome == "imported":
                result.imported_count += 1
            elif outcome == "skipped":
                result.skipped_count += 1
            else:
                result.failed_count += 1
            IMPORT_RECORDS.labels(source=source, outcome=outcome).inc()

        result.state = ImportState.ADVANCING
        next_position, exhausted = self._next_position(adapter, position, page, limit)
        if exhausted:
            result.state = ImportState.COMPLETE
            result.complete = True
            result.log(f"Source {source} complete")
        else:
            result.state = ImportState.CONTINUING
            result.next_cursor = current.model_copy(update={
                "position": next_position,
                "total_processed": current.total_processed + result.processed_count,
            })

        result.duration_seconds = time.perf_counter() - started
        IMPORT_BATCHES.labels(source=source, state=result.state.value).inc()
        IMPORT_BATCH_DURATION.labels(source=source).observe(result.duration_seconds)
        self.log.info(
            "Import page processed",
            source=source,
            state=result.state.value,
            processed=result.processed_count,
            imported=result.imported_count,
            skipped=result.skipped_count,
            failed=result.failed_count,
        )
        return result

    def start_cursor(
        self,
        start_date: date,
        end_date: date,
        sources: Optional[List[str]] = None,
    ) -> ImportCursor:
        """
        Cursor for a multi-source job.

        Without ``sources`` the configured order is used for the registered
        adapters it names; adapters it does not name follow in registration order.
        """
        if sources is not None:
            names = list(sources)
        else:
            names = [name for name in self.default_sources if name in self.sources]
            names += [name for name in self.sources if name not in names]
        for name in names:
            self._source(name)
        try:
            return ImportCursor(start_date=start_date, end_date=end_date, sources=names)
        except ValidationError as e:
            raise ImportCursorError("Invalid import date range", details={"error": str(e)}) from e

    async def advance(self, cursor: Union[ImportCursor, Dict[str, Any]]) -> BatchResult:
        """
        Import the next page of a multi-source job.

        When the current source completes, the returned cursor points at the
        next source with its position reset; ``complete`` is only set after
        the last source is exhausted.
        """
        if isinstance(cursor, dict):
            try:
                cursor = ImportCursor.model_validate(cursor)
            except ValidationError as e:
                raise ImportCursorError("Malformed import cursor", details={"error": str(e)}) from e
        if not isinstance(cursor, ImportCursor) or not cursor.sources:
            raise ImportCursorError("Multi-source cursor must list its sources")

        if cursor.source_index >= len(cursor.sources):
            return BatchResult(source="", state=ImportState.COMPLETE, complete=True)

        name = cursor.sources[cursor.source_index]
        result = await self.import_batch(name, cursor.start_date, cursor.end_date, cursor)

        if result.complete and cursor.source_index + 1 < len(cursor.sources):
            result.complete = False
            result.state = ImportState.CONTINUING
            result.next_cursor = cursor.model_copy(update={
                "position": None,
                "source_index": cursor.source_index + 1,
                "total_processed": cursor.total_processed + result.processed_count,
            })
            result.log(f"Moving on to {cursor.sources[cursor.source_index + 1]}")
        return result
