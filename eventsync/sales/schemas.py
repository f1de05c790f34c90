"""
Sales Schemas

Pydantic models for sale events, upstream orders, recording outcomes and
reporting views.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventsync.database.models import SaleSource
from eventsync.exceptions import DuplicateSaleError, NotFoundError
from eventsync.transformation.datetimes import parse_date_value


def _coerce_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    parsed = parse_date_value(value)
    if parsed is None:
        raise ValueError(f"Unparseable date: {value!r}")
    return parsed


def build_product_key(product_id: str, event_date: Optional[date]) -> str:
    """Aggregation key: the product, or product plus occurrence date"""
    return f"{product_id}_{event_date.isoformat()}" if event_date else product_id


def format_customer(name: Optional[str], email: Optional[str]) -> Optional[str]:
    """Audit label "Name (email)", whichever parts exist"""
    name = (name or "").strip()
    email = (email or "").strip()
    if name and email:
        return f"{name} ({email})"
    return name or email or None


class RecordMode(str, Enum):
    """Live recording triggers side effects; historical does not"""
    LIVE = "live"
    HISTORICAL = "historical"


class RecordStatus(str, Enum):
    """Outcome of recording one sale"""
    RECORDED = "recorded"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    ERROR = "error"


# =============================================================================
# INPUT MODELS
# =============================================================================

class SaleEvent(BaseModel):
    """A normalized sale of one product from any source"""

    product_id: str
    quantity: int = Field(gt=0)
    source: SaleSource
    external_ref: str
    event_date: Optional[date] = None
    revenue: Decimal = Decimal("0")
    currency: Optional[str] = None
    customer: Optional[str] = None
    sale_date: Optional[date] = None  # honoured in historical mode only

    @field_validator("product_id", "external_ref", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> str:
        text = str(v).strip() if v is not None else ""
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("event_date", "sale_date", mode="before")
    @classmethod
    def coerce_dates(cls, v: Any) -> Optional[date]:
        return _coerce_date(v)

    @property
    def product_key(self) -> str:
        return build_product_key(self.product_id, self.event_date)

    @property
    def dedup_key(self) -> str:
        """Stable across retries of the same delivery"""
        return f"{self.source.value}_{self.external_ref}_{self.product_key}"


class OrderLine(BaseModel):
    """One storefront order line with its loosely typed metadata"""

    product_id: str
    quantity: int = 1
    total: Decimal = Decimal("0")
    name: Optional[str] = None
    variation_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("product_id", "variation_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v


class StorefrontOrder(BaseModel):
    """A paid storefront order"""

    order_id: str
    lines: List[OrderLine] = Field(default_factory=list)
    currency: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def coerce_order_id(cls, v: Any) -> str:
        return str(v)

    @property
    def customer(self) -> Optional[str]:
        return format_customer(self.customer_name, self.customer_email)


class TicketingAttendee(BaseModel):
    """One ticket on a ticketing-platform order"""

    ticket_class_id: str
    quantity: int = 1
    cost: Decimal = Decimal("0")
    status: Optional[str] = None
    cancelled: bool = False
    refunded: bool = False

    @field_validator("ticket_class_id", mode="before")
    @classmethod
    def coerce_ticket_class(cls, v: Any) -> str:
        return str(v)

    @property
    def is_void(self) -> bool:
        status = (self.status or "").lower()
        return self.cancelled or self.refunded or status in ("cancelled", "refunded", "deleted")


class TicketingOrder(BaseModel):
    """A ticketing-platform order for one event occurrence"""

    order_id: str
    event_id: Optional[str] = None
    event_start: Optional[datetime] = None  # local start time of the occurrence
    status: Optional[str] = None
    currency: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    attendees: List[TicketingAttendee] = Field(default_factory=list)

    @field_validator("order_id", "event_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @property
    def customer(self) -> Optional[str]:
        return format_customer(self.customer_name, self.customer_email)


class PosLineItem(BaseModel):
    """One point-of-sale line item"""

    pos_item_id: str
    name: Optional[str] = None
    quantity: int = 1
    total: Decimal = Decimal("0")

    @field_validator("pos_item_id", mode="before")
    @classmethod
    def coerce_item(cls, v: Any) -> str:
        return str(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def coerce_quantity(cls, v: Any) -> int:
        # POS systems send quantities as decimal strings
        return int(Decimal(str(v)))


class PosOrder(BaseModel):
    """A point-of-sale order"""

    order_id: str
    state: str = "COMPLETED"
    closed_at: Optional[datetime] = None
    currency: Optional[str] = None
    customer: Optional[str] = None
    line_items: List[PosLineItem] = Field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.state.upper() == "COMPLETED"


# =============================================================================
# RESULT MODELS
# =============================================================================

class RecordResult(BaseModel):
    """Outcome of recording one sale"""

    status: RecordStatus
    dedup_key: str
    product_id: str
    product_key: str
    sale_date: Optional[date] = None
    quantity: int = 0
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def recorded(self) -> bool:
        return self.status == RecordStatus.RECORDED

    def raise_for_status(self) -> "RecordResult":
        """Raise instead of returning a non-recorded status"""
        if self.status == RecordStatus.SKIPPED_DUPLICATE:
            raise DuplicateSaleError("Sale already recorded", details={"dedup_key": self.dedup_key})
        if self.status == RecordStatus.ERROR:
            raise NotFoundError(
                self.error or "Recording failed",
                details={"dedup_key": self.dedup_key, "product_id": self.product_id},
            )
        return self


class LineError(BaseModel):
    """A group of order lines that could not be recorded"""

    product_id: Optional[str] = None
    event_date: Optional[date] = None
    message: str


class OrderResult(BaseModel):
    """Outcome of recording a multi-line order"""

    order_id: str
    source: SaleSource
    recorded: List[RecordResult] = Field(default_factory=list)
    skipped: List[RecordResult] = Field(default_factory=list)
    errors: List[LineError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duplicate_order: bool = False
    complete: bool = False


# =============================================================================
# REPORTING VIEWS
# =============================================================================

class SaleAuditView(BaseModel):
    """Audit entry of a daily record"""

    model_config = ConfigDict(from_attributes=True)

    source: str
    external_ref: str
    quantity: int
    amount: Decimal
    currency: str
    customer: Optional[str] = None
    recorded_at: datetime


class DailySaleView(BaseModel):
    """One (sale_date, product_key) aggregate"""

    model_config = ConfigDict(from_attributes=True)

    sale_date: date
    product_key: str
    product_id: str
    event_date: Optional[date] = None
    name: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    revenue: Decimal
    web_qty: int
    ticketing_qty: int
    pos_qty: int
    orders: List[SaleAuditView] = Field(default_factory=list)


class ProductSummaryView(BaseModel):
    """Per-product totals over a date range"""

    product_id: str
    name: Optional[str] = None
    total_quantity: int = 0
    event_dates: Dict[str, int] = Field(default_factory=dict)


class TotalSalesView(BaseModel):
    """Per product_key totals over a date range"""

    product_key: str
    product_id: str
    event_date: Optional[date] = None
    name: Optional[str] = None
    quantity: int = 0
    revenue: Decimal = Decimal("0")
    web_qty: int = 0
    ticketing_qty: int = 0
    pos_qty: int = 0


class DaySummary(BaseModel):
    """Totals for one sale day"""

    sale_date: date
    quantity: int = 0
    revenue: Decimal = Decimal("0")
    by_source: Dict[str, int] = Field(default_factory=dict)
    unique_products: int = 0


class PeriodSummary(BaseModel):
    """Totals across a date range with a per-day breakdown"""

    start_date: date
    end_date: date
    total_quantity: int = 0
    total_revenue: Decimal = Decimal("0")
    by_source: Dict[str, int] = Field(default_factory=dict)
    unique_products: int = 0
    days: List[DaySummary] = Field(default_factory=list)
