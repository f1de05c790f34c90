"""
Historical Import Module
"""
from .cursors import CursorStore
from .driver import DriveSummary, drive_import
from .importer import (
    BatchResult,
    HistoricalImporter,
    ImportCursor,
    ImportLogEntry,
    ImportState,
)
from .sources import (
    FetchedPage,
    FileSaleSource,
    HistoricalLine,
    HistoricalRecord,
    Pagination,
    SaleHistorySource,
)

__all__ = [
    "CursorStore",
    "DriveSummary",
    "drive_import",
    "BatchResult",
    "HistoricalImporter",
    "ImportCursor",
    "ImportLogEntry",
    "ImportState",
    "FetchedPage",
    "FileSaleSource",
    "HistoricalLine",
    "HistoricalRecord",
    "Pagination",
    "SaleHistorySource",
]
