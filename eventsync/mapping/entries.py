"""
Mapping Entry Models

Typed view of a mapping row plus the normalization of loosely keyed input
(admin form rows, legacy option-bag payloads) into that view.
"""

from datetime import date
from enum import Enum
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventsync.database.models import MappingRecord
from eventsync.exceptions import MappingValidationError
from eventsync.transformation.datetimes import parse_date_value, parse_time_value

# Accepted spellings per canonical field, highest priority first
TICKET_CLASS_KEYS = (
    "manual_ticket_class_id",
    "manual_eventbrite_id",
    "ticket_class_id",
    "eventbrite_ticket_class_id",
    "eventbrite_id",
)
SUGGESTED_TICKET_CLASS_KEYS = ("suggested_ticket_class_id", "suggested_eventbrite_id")
EVENT_ID_KEYS = ("event_id", "eventbrite_event_id")
POS_ITEM_KEYS = ("pos_item_id", "square_id", "square_item_id")
DATE_KEYS = ("date", "scope_date", "event_date")
TIME_KEYS = ("time", "scope_time", "event_time")


def _clean_identifier(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_present(payload: Mapping[str, Any], keys: tuple) -> Optional[str]:
    """First non-empty value among ``keys``, as a string"""
    for key in keys:
        value = _clean_identifier(payload.get(key))
        if value:
            return value
    return None


def build_scope_key(scope_date: Optional[date], scope_time: Optional[str]) -> str:
    """Storage key for a scope: empty for the default, else YYYY-MM-DD or YYYY-MM-DD_HH:MM"""
    if scope_date is None:
        return ""
    if scope_time:
        return f"{scope_date.isoformat()}_{scope_time}"
    return scope_date.isoformat()


class MatchKind(str, Enum):
    """Which resolution pass produced a match"""
    EXACT = "exact"
    TIME_BUFFER = "time_buffer"
    DATE = "date"
    DEFAULT = "default"
    SCOPED_ANY = "scoped_any"
    EVENT_SCOPED = "event_scoped"
    EVENT_DEFAULT = "event_default"


class MappingEntry(BaseModel):
    """
    One canonical-product association.

    A default entry has no ``scope_date``; a scoped entry has a date and an
    optional ``HH:MM`` time. ``ticket_class_id`` is the operator-entered value
    and always wins over ``suggested_ticket_class_id``.
    """

    model_config = ConfigDict(frozen=True)

    product_id: str
    scope_date: Optional[date] = None
    scope_time: Optional[str] = None
    ticket_class_id: Optional[str] = None
    suggested_ticket_class_id: Optional[str] = None
    event_id: Optional[str] = None
    pos_item_id: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v: Any) -> str:
        cleaned = _clean_identifier(v)
        if not cleaned:
            raise ValueError("product_id is required")
        return cleaned

    @field_validator(
        "ticket_class_id", "suggested_ticket_class_id", "event_id", "pos_item_id",
        mode="before",
    )
    @classmethod
    def coerce_identifier(cls, v: Any) -> Optional[str]:
        return _clean_identifier(v)

    @property
    def is_default(self) -> bool:
        return self.scope_date is None

    @property
    def scope_key(self) -> str:
        return build_scope_key(self.scope_date, self.scope_time)

    @property
    def effective_ticket_class_id(self) -> Optional[str]:
        return self.ticket_class_id or self.suggested_ticket_class_id

    @property
    def has_identifier(self) -> bool:
        """Date alone is not enough to be worth storing"""
        return bool(self.effective_ticket_class_id or self.pos_item_id)

    def matches_identifier(self, identifier: str) -> bool:
        return identifier in (self.effective_ticket_class_id, self.pos_item_id)

    @classmethod
    def from_record(cls, record: MappingRecord) -> "MappingEntry":
        return cls(
            product_id=record.product_id,
            scope_date=record.scope_date,
            scope_time=record.scope_time,
            ticket_class_id=record.ticket_class_id,
            suggested_ticket_class_id=record.suggested_ticket_class_id,
            event_id=record.event_id,
            pos_item_id=record.pos_item_id,
        )

    def to_record(self) -> MappingRecord:
        return MappingRecord(
            product_id=self.product_id,
            scope_key=self.scope_key,
            scope_date=self.scope_date,
            scope_time=self.scope_time,
            ticket_class_id=self.ticket_class_id,
            suggested_ticket_class_id=self.suggested_ticket_class_id,
            event_id=self.event_id,
            pos_item_id=self.pos_item_id,
        )


def normalize_entry(
    product_id: Any,
    payload: Mapping[str, Any],
    scope_date: Any = None,
    scope_time: Any = None,
) -> MappingEntry:
    """
    Build a MappingEntry from a loosely keyed payload.

    Explicit ``scope_date``/``scope_time`` arguments win over values found in
    the payload.

    Raises:
        MappingValidationError: date or time present but unparseable
    """
    raw_date = scope_date if scope_date is not None else next(
        (payload.get(key) for key in DATE_KEYS if payload.get(key)), None
    )
    raw_time = scope_time if scope_time is not None else next(
        (payload.get(key) for key in TIME_KEYS if payload.get(key)), None
    )

    parsed_date = None
    if raw_date:
        parsed_date = parse_date_value(raw_date)
        if parsed_date is None:
            raise MappingValidationError(
                "Unparseable mapping date",
                details={"product_id": product_id, "date": str(raw_date)},
            )

    parsed_time = None
    if raw_time:
        parsed_time = parse_time_value(raw_time)
        if parsed_time is None:
            raise MappingValidationError(
                "Unparseable mapping time",
                details={"product_id": product_id, "time": str(raw_time)},
            )
        if parsed_date is None:
            raise MappingValidationError(
                "Mapping time given without a date",
                details={"product_id": product_id, "time": parsed_time},
            )

    try:
        return MappingEntry(
            product_id=product_id,
            scope_date=parsed_date,
            scope_time=parsed_time,
            ticket_class_id=first_present(payload, TICKET_CLASS_KEYS),
            suggested_ticket_class_id=first_present(payload, SUGGESTED_TICKET_CLASS_KEYS),
            event_id=first_present(payload, EVENT_ID_KEYS),
            pos_item_id=first_present(payload, POS_ITEM_KEYS),
        )
    except ValueError as e:
        raise MappingValidationError(str(e), details={"product_id": product_id}) from e


def parse_scope_key(scope_key: str) -> tuple:
    """Split a stored "YYYY-MM-DD[_HH:MM]" key into (date string, time string or None)"""
    date_part, _, time_part = scope_key.partition("_")
    return date_part, (time_part or None)


# =============================================================================
# RESULT MODELS
# =============================================================================

class SkippedEntry(BaseModel):
    """An input row that did not make it into the store"""
    index: int
    reason: str
    details: dict = Field(default_factory=dict)


class SaveResult(BaseModel):
    """Outcome of a full-replace save"""
    product_id: str
    saved: int = 0
    dropped: int = 0  # rows with no ticket or POS identifier
    skipped: List[SkippedEntry] = Field(default_factory=list)
    entries: List[MappingEntry] = Field(default_factory=list)


class Resolution(BaseModel):
    """Which product a source identifier points at"""
    product_id: Optional[str] = None
    matched_by: Optional[MatchKind] = None
    entry: Optional[MappingEntry] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.product_id is not None


class SourceIdentifiers(BaseModel):
    """What a product is called in each source"""
    product_id: str
    ticket_class_id: Optional[str] = None
    event_id: Optional[str] = None
    pos_item_id: Optional[str] = None
    matched_by: Optional[MatchKind] = None

    @property
    def is_empty(self) -> bool:
        return not (self.ticket_class_id or self.event_id or self.pos_item_id)
