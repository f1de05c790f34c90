"""
Database Models - One Table Per Store

Each logical store of the sync engine is its own table so that writes get
real transactional atomicity instead of read-modify-write on a shared blob:

Mapping Store:
- MappingRecord: canonical product -> source identifiers, default or scoped

Dedup Ledger:
- LedgerEntry: processed sale keys tagged with live/historical provenance

Aggregation Store:
- DailySale: (sale_date, product_key) quantities, revenue and per-source counters
- DailySaleOrder: append-only audit list for a DailySale
- ProductSummary: (summary_date, product_id) totals with per-event-date breakdown

Import state:
- ImportCursorRecord: persisted batch cursors keyed by job name
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class SaleSource(str, Enum):
    """Systems a sale can originate from"""
    WEB = "web"
    TICKETING = "ticketing"
    POS = "pos"


class Provenance(str, Enum):
    """How a ledger key entered the ledger"""
    LIVE = "live"  # Webhook/stream delivery, subject to eviction
    HISTORICAL = "historical"  # Backfill import, retained indefinitely


# =============================================================================
# MAPPING STORE
# =============================================================================

class MappingRecord(Base):
    """
    Mapping Store Table

    One row per (product, scope). The default entry uses an empty scope_key;
    scoped entries use "YYYY-MM-DD" or "YYYY-MM-DD_HH:MM".
    """
    __tablename__ = "mapping_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    scope_date: Mapped[Optional[date]] = mapped_column(Date)
    scope_time: Mapped[Optional[str]] = mapped_column(String(5))  # HH:MM, 24h

    # Source identifiers
    ticket_class_id: Mapped[Optional[str]] = mapped_column(String(128))
    suggested_ticket_class_id: Mapped[Optional[str]] = mapped_column(String(128))
    event_id: Mapped[Optional[str]] = mapped_column(String(128))
    pos_item_id: Mapped[Optional[str]] = mapped_column(String(128))

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("product_id", "scope_key", name="uq_mapping_product_scope"),
        Index("ix_mapping_scope_date", "scope_date"),
        Index("ix_mapping_ticket_class", "ticket_class_id"),
        Index("ix_mapping_pos_item", "pos_item_id"),
        Index("ix_mapping_event", "event_id"),
    )


# =============================================================================
# DEDUP LEDGER
# =============================================================================

class LedgerEntry(Base):
    """
    Dedup Ledger Table

    The primary key doubles as the cross-process uniqueness guard: a second
    insert of the same key fails at commit.
    """
    __tablename__ = "sale_ledger"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    provenance: Mapped[Provenance] = mapped_column(
        SQLEnum(Provenance), nullable=False, default=Provenance.LIVE
    )
    source: Mapped[Optional[str]] = mapped_column(String(32))
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_ledger_provenance_processed", "provenance", "processed_at"),
    )


# =============================================================================
# AGGREGATION STORE
# =============================================================================

class DailySale(Base):
    """
    Daily Sales Aggregate

    Keyed by the day the sale was recorded and a product key that folds in
    the event date when the sale belongs to a specific occurrence.
    Quantities and revenue are only ever incremented.
    """
    __tablename__ = "daily_sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_date: Mapped[date] = mapped_column(Date, nullable=False)
    product_key: Mapped[str] = mapped_column(String(96), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[Optional[date]] = mapped_column(Date)

    # Catalog snapshot
    name: Mapped[Optional[str]] = mapped_column(String(255))
    sku: Mapped[Optional[str]] = mapped_column(String(100))

    # Metrics
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    web_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ticketing_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pos_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    orders: Mapped[List["DailySaleOrder"]] = relationship(
        back_populates="daily_sale",
        cascade="all, delete-orphan",
        order_by="DailySaleOrder.id",
    )

    __table_args__ = (
        UniqueConstraint("sale_date", "product_key", name="uq_daily_sales_date_key"),
        Index("ix_daily_sales_product", "product_id"),
        Index("ix_daily_sales_event_date", "event_date"),
    )


class DailySaleOrder(Base):
    """Append-only audit entry for one recorded sale"""
    __tablename__ = "daily_sale_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    daily_sale_id: Mapped[int] = mapped_column(
        ForeignKey("daily_sales.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    customer: Mapped[Optional[str]] = mapped_column(String(255))
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    daily_sale: Mapped["DailySale"] = relationship(back_populates="orders")

    __table_args__ = (
        Index("ix_daily_sale_orders_parent", "daily_sale_id"),
    )


class ProductSummary(Base):
    """
    Product Summary Aggregate

    Secondary view of DailySale per (summary_date, product_id). Written by the
    same unit of work as DailySale, never on its own.
    """
    __tablename__ = "product_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    summary_date: Mapped[date] = mapped_column(Date, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_dates: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # {"YYYY-MM-DD": qty}
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("summary_date", "product_id", name="uq_product_summary_date_product"),
    )


# =============================================================================
# IMPORT STATE
# =============================================================================

class ImportCursorRecord(Base):
    """Persisted batch cursor for a named import job"""
    __tablename__ = "import_cursors"

    job_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )
