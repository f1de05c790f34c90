"""
Prefect Workflow Orchestration - Historical Import

Backfill workflow for sales history exports with:
- Resumable page-by-page import per source
- Cursor persisted between pages and between runs
- Retries on upstream fetch failures (the same page is retried)
- Period summary and alerting once the job completes
"""

from datetime import date, datetime, timedelta
from typing import Dict, Optional

from prefect import flow, get_run_logger, task

from eventsync.config import get_settings
from eventsync.config.logging import configure_logging
from eventsync.coordination.locks import close_redis, init_redis
from eventsync.database.connection import close_database, get_session_factory, init_database
from eventsync.database.models import SaleSource
from eventsync.importing import FileSaleSource, drive_import
from eventsync.sales.catalog import StaticCatalog
from eventsync.service import SyncService, create_sync_service

PAGES_PER_TASK = 20


def _channel(source_name: str) -> SaleSource:
    try:
        return SaleSource(source_name)
    except ValueError:
        return SaleSource.WEB


async def _build_service(exports: Dict[str, str]) -> SyncService:
    settings = get_settings()
    await init_database(create_schema=not settings.is_production)
    if settings.redis.enabled:
        await init_redis()
    if settings.sales.catalog_path:
        catalog = StaticCatalog.from_file(settings.sales.catalog_path)
    else:
        catalog = StaticCatalog()
    sources = [FileSaleSource(name, path, channel=_channel(name)) for name, path in exports.items()]
    return create_sync_service(get_session_factory(), catalog, sources=sources)


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="import_pages",
    description="Import a bounded number of history pages",
    retries=3,
    retry_delay_seconds=60,
)
async def import_pages(
    service: SyncService,
    job_name: str,
    start_date: date,
    end_date: date,
) -> dict:
    """Import up to PAGES_PER_TASK pages, resuming from the stored cursor"""
    logger = get_run_logger()

    summary = await drive_import(
        service.importer,
        service.cursors,
        job_name,
        start_date,
        end_date,
        max_batches=PAGES_PER_TASK,
    )

    logger.info(
        f"Imported {summary.imported} records over {summary.batches} pages "
        f"({summary.skipped} skipped, {summary.failed} failed)"
    )
    return {
        "batches": summary.batches,
        "processed": summary.processed,
        "imported": summary.imported,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "complete": summary.complete,
    }


@task(
    name="summarize_period",
    description="Summarize aggregated sales for the imported range",
)
async def summarize_period(service: SyncService, start_date: date, end_date: date) -> dict:
    logger = get_run_logger()
    summary = await service.get_period_summary(start_date, end_date)
    logger.info(
        f"Period {start_date} - {end_date}: {summary.total_quantity} sold, "
        f"revenue {summary.total_revenue}, {summary.unique_products} products"
    )
    return summary.model_dump(mode="json")


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "info",
) -> None:
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="historical_import",
    description="Resumable backfill of sales history into the daily aggregates",
)
async def historical_import(
    exports: Dict[str, str],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    job_name: Optional[str] = None,
) -> dict:
    """
    Historical import pipeline.

    Steps:
    1. Import pages source by source until every export is exhausted
    2. Summarize the aggregated range
    3. Send completion notification

    Args:
        exports: Source name (web, ticketing, pos) to CSV/Parquet export path
    """
    logger = get_run_logger()
    configure_logging()

    end_date = end_date or (datetime.now().date() - timedelta(days=1))
    start_date = start_date or (end_date - timedelta(days=30))
    job_name = job_name or f"backfill-{start_date.isoformat()}-{end_date.isoformat()}"

    logger.info(f"Starting historical import {job_name} for {start_date} - {end_date}")
    results = {"job_name": job_name, "steps": []}

    service = await _build_service(exports)
    try:
        while True:
            step = await import_pages(service, job_name, start_date, end_date)
            results["steps"].append(step)
            if step["complete"]:
                break

        results["summary"] = await summarize_period(service, start_date, end_date)

        failed = sum(step["failed"] for step in results["steps"])
        if failed:
            await send_alert(
                alert_type="Import Incomplete",
                message=f"{failed} records of {job_name} were left unimported; fix mappings and rerun",
                severity="warning",
            )
        else:
            await send_alert(
                alert_type="Import Complete",
                message=f"Historical import {job_name} completed",
            )
        results["status"] = "success"

    except Exception as e:
        logger.error(f"Historical import failed: {e}")
        await send_alert(
            alert_type="Import Failed",
            message=f"Historical import {job_name} failed: {e}",
            severity="critical",
        )
        results["status"] = "failed"
        results["error"] = str(e)
        raise

    finally:
        await close_database()
        if get_settings().redis.enabled:
            await close_redis()

    return results


if __name__ == "__main__":
    import asyncio

    asyncio.run(historical_import({"web": "data/exports/web_orders.csv"}))
