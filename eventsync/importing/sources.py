"""
Historical Sale Sources

Upstream systems are reached through ``SaleHistorySource`` adapters; the engine
never makes the HTTP calls itself. Each adapter declares its native
pagination so the importer knows how to advance:

- OFFSET: storefront order listings (position = records already consumed)
- PAGE: ticketing platform (position = 1-based page number)
- CURSOR: point-of-sale search (position = opaque continuation token)

``FileSaleSource`` pages over a CSV or Parquet export with polars.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import polars as pl
import structlog
from pydantic import BaseModel, Field, field_validator

from eventsync.database.models import SaleSource
from eventsync.transformation.datetimes import parse_date_value, parse_time_value

logger = structlog.get_logger(__name__)

Position = Optional[Union[int, str]]
NULL_VALUES = ["", "NULL", "null", "None", "NA", "N/A"]


class Pagination(str, Enum):
    """Native pagination style of a source"""
    OFFSET = "offset"
    PAGE = "page"
    CURSOR = "cursor"


class HistoricalLine(BaseModel):
    """
    One sold item of a historical record.

    Either ``product_id`` is known (storefront) or the product is resolved
    from ``identifier`` / ``event_id`` plus the occurrence date and time.
    """

    product_id: Optional[str] = None
    identifier: Optional[str] = None
    event_id: Optional[str] = None
    event_date: Optional[date] = None
    event_time: Optional[str] = None
    quantity: int = 1
    revenue: Decimal = Decimal("0")
    name: Optional[str] = None

    @field_validator("product_id", "identifier", "event_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        return str(v).strip()

    @field_validator("event_date", mode="before")
    @classmethod
    def coerce_event_date(cls, v: Any) -> Optional[date]:
        return parse_date_value(v) if v not in (None, "") else None

    @field_validator("event_time", mode="before")
    @classmethod
    def coerce_event_time(cls, v: Any) -> Optional[str]:
        return parse_time_value(v) if v not in (None, "") else None


class HistoricalRecord(BaseModel):
    """One upstream order as fetched for backfill"""

    external_ref: str
    sale_date: date
    status: Optional[str] = None
    customer: Optional[str] = None
    currency: Optional[str] = None
    lines: List[HistoricalLine] = Field(default_factory=list)
    # Set when the upstream rows could not be read
    parse_error: Optional[str] = None

    @field_validator("external_ref", mode="before")
    @classmethod
    def coerce_ref(cls, v: Any) -> str:
        return str(v)

    @field_validator("sale_date", mode="before")
    @classmethod
    def coerce_sale_date(cls, v: Any) -> date:
        parsed = parse_date_value(v)
        if parsed is None:
            raise ValueError(f"Unparseable sale date: {v!r}")
        return parsed


class FetchedPage(BaseModel):
    """One page of upstream records"""

    records: List[HistoricalRecord] = Field(default_factory=list)
    next_position: Position = None
    has_more: Optional[bool] = None


class SaleHistorySource(ABC):
    """Adapter to one upstream system's order history"""

    name: str
    channel: SaleSource = SaleSource.WEB
    pagination: Pagination = Pagination.OFFSET
    max_page_size: Optional[int] = None

    @abstractmethod
    async def fetch(
        self,
        start_date: date,
        end_date: date,
        position: Position,
        limit: int,
    ) -> FetchedPage:
        """
        Fetch one page of records whose sale date lies in [start_date, end_date].

        Raises:
            Any exception on transport failure; the importer wraps it.
        """
        pass


class FileSaleSource(SaleHistorySource):
    """
    Offset-paginated source over an exported CSV or Parquet file.

    One row per sold line; rows sharing ``order_ref`` form one record, and
    pagination counts records, never splitting an order across pages.

    Expected columns (extra columns are ignored, optional ones may be absent):
        order_ref, sale_date, quantity, and any of product_id, identifier,
        event_id, event_date, event_time, revenue, status, customer,
        currency, name
    """

    pagination = Pagination.OFFSET
    OPTIONAL_COLUMNS = (
        "product_id", "identifier", "event_id", "event_date", "event_time",
        "revenue", "status", "customer", "currency", "name",
    )

    def __init__(
        self,
        name: str,
        path: Union[str, Path],
        channel: SaleSource = SaleSource.WEB,
    ):
        self.name = name
        self.channel = channel
        self.path = Path(path)
        self._frame: Optional[pl.DataFrame] = None

    def _load(self) -> pl.DataFrame:
        if self._frame is not None:
            return self._frame

        if self.path.suffix.lower() == ".parquet":
            frame = pl.read_parquet(self.path)
            frame = frame.with_columns(pl.all().cast(pl.Utf8))
        else:
            # Everything as text; values are normalized per row
            frame = pl.read_csv(
                self.path,
                infer_schema_length=0,
                null_values=NULL_VALUES,
            )

        missing = [col for col in ("order_ref", "sale_date") if col not in frame.columns]
        if missing:
            raise ValueError(f"Export {self.path} is missing columns: {missing}")

        for column in self.OPTIONAL_COLUMNS + ("quantity",):
            if column not in frame.columns:
                frame = frame.with_columns(pl.lit(None, dtype=pl.Utf8).alias(column))

        self._frame = frame.with_columns(pl.col("sale_date").str.slice(0, 10).alias("sale_day"))
        logger.info("Loaded sales export", path=str(self.path), rows=len(self._frame))
        return self._frame

    async def fetch(
        self,
        start_date: date,
        end_date: date,
        position: Position,
        limit: int,
    ) -> FetchedPage:
        frame = self._load()
        offset = int(position or 0)

        in_range = frame.filter(
            (pl.col("sale_day") >= start_date.isoformat())
            & (pl.col("sale_day") <= end_date.isoformat())
        )
        refs = in_range.get_column("order_ref").unique(maintain_order=True)
        page_refs = refs.slice(offset, limit).to_list()
        if not page_refs:
            return FetchedPage(records=[], next_position=offset, has_more=False)

        rows = in_range.filter(pl.col("order_ref").is_in(page_refs))
        grouped: Dict[str, List[Dict[str, Any]]] = {ref: [] for ref in page_refs}
        for row in rows.iter_rows(named=True):
            grouped[row["order_ref"]].append(row)

        records = [self._build_record(ref, ref_rows) for ref, ref_rows in grouped.items()]
        consumed = offset + len(page_refs)
        return FetchedPage(
            records=records,
            next_position=consumed,
            has_more=consumed < len(refs),
        )

    def _build_record(self, ref: str, rows: List[Dict[str, Any]]) -> HistoricalRecord:
        try:
            return self._to_record(ref, rows)
        except (ArithmeticError, ValueError) as e:
            logger.warning("Unreadable export rows", path=str(self.path), order_ref=ref, error=str(e))
            return HistoricalRecord.model_construct(
                external_ref=str(ref),
                sale_date=None,
                parse_error=f"Unreadable export rows: {e}",
            )

    @staticmethod
    def _to_record(ref: str, rows: List[Dict[str, Any]]) -> HistoricalRecord:
        first = rows[0]
        return HistoricalRecord(
            external_ref=ref,
            sale_date=first["sale_day"],
            status=first.get("status"),
            customer=first.get("customer"),
            currency=first.get("currency"),
            lines=[
                HistoricalLine(
                    product_id=row.get("product_id"),
                    identifier=row.get("identifier"),
                    event_id=row.get("event_id"),
                    event_date=row.get("event_date"),
                    event_time=row.get("event_time"),
                    quantity=int(Decimal(row.get("quantity") or "1")),
                    revenue=Decimal(row.get("revenue") or "0"),
                    name=row.get("name"),
                )
                for row in rows
            ],
        )
