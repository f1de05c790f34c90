"""
Import Driver

Drives a multi-source job page by page, persisting the cursor after every
page. Stopping between pages (``max_batches`` or cancelling the caller) is
always safe: the next run resumes from the stored cursor.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

import structlog

from eventsync.importing.cursors import CursorStore
from eventsync.importing.importer import BatchResult, HistoricalImporter

logger = structlog.get_logger(__name__)


@dataclass
class DriveSummary:
    """Totals of one driver run"""
    job_name: str
    batches: int = 0
    processed: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    complete: bool = False
    results: List[BatchResult] = field(default_factory=list)


async def drive_import(
    importer: HistoricalImporter,
    cursors: CursorStore,
    job_name: str,
    start_date: date,
    end_date: date,
    sources: Optional[List[str]] = None,
    max_batches: Optional[int] = None,
) -> DriveSummary:
    """
    Run ``importer.advance`` until the job completes or ``max_batches`` pages
    have been imported.

    ``UpstreamFetchError`` propagates with the stored cursor left on the page
    that failed.
    """
    cursor = await cursors.load(job_name)
    if cursor is None or (cursor.start_date, cursor.end_date) != (start_date, end_date):
        cursor = importer.start_cursor(start_date, end_date, sources)
        await cursors.save(job_name, cursor)

    summary = DriveSummary(job_name=job_name)
    while max_batches is None or summary.batches < max_batches:
        result = await importer.advance(cursor)
        summary.batches += 1
        summary.processed += result.processed_count
        summary.imported += result.imported_count
        summary.skipped += result.skipped_count
        summary.failed += result.failed_count
        summary.results.append(result)

        if result.complete:
            summary.complete = True
            await cursors.clear(job_name)
            break

        cursor = result.next_cursor
        await cursors.save(job_name, cursor)

    logger.info(
        "Import job run finished",
        job=job_name,
        batches=summary.batches,
        processed=summary.processed,
        imported=summary.imported,
        failed=summary.failed,
        complete=summary.complete,
    )
    return summary
