"""
Event Date Strategies

Best-effort extraction of the occurrence date a storefront order line is
for. Upstream plugins store it in many different places, so extraction is an
ordered chain of strategies; the first one that yields a date wins.

Default chain:
1. TicketMetaStrategy - well-known ticketing/booking meta keys
2. DateLikeFieldStrategy - any meta key that looks date-related
3. VariantAttributeStrategy - variation attributes that look date-related
4. TitleTextStrategy - an explicit date written in the product title
"""

import re
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence, Tuple

import structlog

from eventsync.sales.schemas import OrderLine
from eventsync.transformation.datetimes import extract_date_from_text, parse_date_value

logger = structlog.get_logger(__name__)

TICKET_META_KEYS = (
    "fooevents_event_date",
    "WooCommerceEventsDate",
    "event_date",
    "ticket_date",
    "booking_date",
    "pa_date",
    "date",
    "_event_date",
    "_booking_date",
    "Event Date",
    "Ticket Date",
    "Show Date",
    "Performance Date",
)

DATE_LIKE_KEY = re.compile(r"(date|day|event|show|performance|time)", re.IGNORECASE)
DATE_LIKE_ATTRIBUTE = re.compile(r"(date|day|event|show|performance)", re.IGNORECASE)


class EventDateStrategy(ABC):
    """One way of finding an occurrence date on an order line"""

    name: str = "strategy"

    @abstractmethod
    def extract(self, line: OrderLine) -> Optional[date]:
        """Return the occurrence date, or None if this strategy finds nothing"""
        pass


class TicketMetaStrategy(EventDateStrategy):
    """Explicit ticketing plugin keys, checked in priority order"""

    name = "ticket_meta"

    def __init__(self, keys: Sequence[str] = TICKET_META_KEYS):
        self.keys = tuple(keys)

    def extract(self, line: OrderLine) -> Optional[date]:
        for key in self.keys:
            if key in line.meta:
                parsed = parse_date_value(line.meta[key])
                if parsed:
                    return parsed
        return None


class DateLikeFieldStrategy(EventDateStrategy):
    """Any meta field whose key looks date-related"""

    name = "date_like_field"

    def __init__(self, pattern: re.Pattern = DATE_LIKE_KEY):
        self.pattern = pattern

    def extract(self, line: OrderLine) -> Optional[date]:
        for key, value in line.meta.items():
            if self.pattern.search(str(key)):
                parsed = parse_date_value(value)
                if parsed:
                    return parsed
        return None


class VariantAttributeStrategy(EventDateStrategy):
    """Variation attributes such as ``attribute_pa_show-date``"""

    name = "variant_attribute"

    def __init__(self, pattern: re.Pattern = DATE_LIKE_ATTRIBUTE):
        self.pattern = pattern

    def extract(self, line: OrderLine) -> Optional[date]:
        for key, value in line.attributes.items():
            if self.pattern.search(str(key)):
                parsed = parse_date_value(value)
                if parsed:
                    return parsed
        return None


class TitleTextStrategy(EventDateStrategy):
    """Last resort: an explicit date in the line or product name"""

    name = "title_text"

    def extract(self, line: OrderLine) -> Optional[date]:
        return extract_date_from_text(line.name)


def default_strategies() -> List[EventDateStrategy]:
    return [
        TicketMetaStrategy(),
        DateLikeFieldStrategy(),
        VariantAttributeStrategy(),
        TitleTextStrategy(),
    ]


class EventDateResolver:
    """
    Runs the strategy chain.

    Example:
        resolver = EventDateResolver()
        event_date, strategy = resolver.resolve(line)
    """

    def __init__(self, strategies: Optional[Sequence[EventDateStrategy]] = None, log=None):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.log = log or logger

    def resolve(self, line: OrderLine) -> Tuple[Optional[date], Optional[str]]:
        for strategy in self.strategies:
            found = strategy.extract(line)
            if found:
                self.log.debug(
                    "Event date found",
                    product_id=line.product_id,
                    strategy=strategy.name,
                    event_date=found.isoformat(),
                )
                return found, strategy.name
        return None, None
