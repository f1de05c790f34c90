"""
Sales Recording Module
"""
from .aggregation import AggregationStore
from .catalog import CatalogLookup, ProductInfo, StaticCatalog
from .event_dates import EventDateResolver, EventDateStrategy
from .ledger import SaleLedger
from .orders import OrderIngestor
from .recorder import SalesRecorder
from .schemas import (
    OrderResult,
    RecordMode,
    RecordResult,
    RecordStatus,
    SaleEvent,
    StorefrontOrder,
)

__all__ = [
    "AggregationStore",
    "CatalogLookup",
    "ProductInfo",
    "StaticCatalog",
    "EventDateResolver",
    "EventDateStrategy",
    "SaleLedger",
    "OrderIngestor",
    "SalesRecorder",
    "OrderResult",
    "RecordMode",
    "RecordResult",
    "RecordStatus",
    "SaleEvent",
    "StorefrontOrder",
]
