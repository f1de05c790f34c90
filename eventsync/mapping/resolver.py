"""
Mapping Resolver

Answers the two dual questions over the Mapping Store:
- source identifier (+ date/time/event context) -> canonical product
- canonical product (+ date/time) -> source identifiers

Resolution precedence, first match wins:
1. exact (date, time) scoped entry
2. same-date scoped entry within the time buffer
3. date-only scoped entry
4. unscoped default entry
5. any scoped entry, only when no date was given
6. event id: scoped entries, then defaults
"""

from datetime import date
from typing import Any, Iterable, List, Optional

import structlog
from prometheus_client import Counter

from eventsync.config import get_settings
from eventsync.mapping.entries import MappingEntry, MatchKind, Resolution, SourceIdentifiers
from eventsync.mapping.store import MappingStore
from eventsync.transformation.datetimes import (
    is_time_close,
    parse_date_value,
    parse_time_value,
    time_to_minutes,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

MAPPING_RESOLUTIONS = Counter(
    "eventsync_mapping_resolutions_total",
    "Mapping resolutions by direction and outcome",
    ["direction", "outcome"],
)


def _first(entries: Iterable[MappingEntry]) -> Optional[MappingEntry]:
    return next(iter(entries), None)


def _closest(entries: List[MappingEntry], scope_time: Optional[str]) -> List[MappingEntry]:
    """Order timed entries by distance to ``scope_time``; untimed keep their place"""
    if not scope_time:
        return entries
    target = time_to_minutes(scope_time)
    return sorted(
        entries,
        key=lambda e: abs(time_to_minutes(e.scope_time) - target) if e.scope_time else 24 * 60,
    )


class MappingResolver:
    """
    Stateless resolution logic over a MappingStore.

    Example:
        resolver = MappingResolver(store)
        resolution = await resolver.find_product_for("TIX-1", "2025-06-01", "20:10")
        if resolution.found:
            ...
    """

    def __init__(
        self,
        store: MappingStore,
        time_buffer_minutes: Optional[int] = None,
        event_time_buffer_minutes: Optional[int] = None,
        log=None,
    ):
        settings = get_settings()
        self.store = store
        self.time_buffer_minutes = (
            time_buffer_minutes if time_buffer_minutes is not None
            else settings.mapping.time_buffer_minutes
        )
        self.event_time_buffer_minutes = (
            event_time_buffer_minutes if event_time_buffer_minutes is not None
            else settings.mapping.event_time_buffer_minutes
        )
        self.log = log or logger

    @staticmethod
    def _normalize_context(scope_date: Any, scope_time: Any) -> tuple:
        parsed_date = parse_date_value(scope_date) if scope_date else None
        parsed_time = parse_time_value(scope_time) if scope_time else None
        return parsed_date, parsed_time

    def _scoped_match(
        self,
        entries: List[MappingEntry],
        scope_date: date,
        scope_time: Optional[str],
        buffer_minutes: int,
    ) -> tuple:
        """Passes 1-3 over entries already filtered to the wanted identifier"""
        same_day = [e for e in entries if e.scope_date == scope_date]

        if scope_time:
            exact = _first(e for e in same_day if e.scope_time == scope_time)
            if exact:
                return exact, MatchKind.EXACT

            near = _first(
                e for e in same_day
                if e.scope_time and is_time_close(e.scope_time, scope_time, buffer_minutes)
            )
            if near:
                return near, MatchKind.TIME_BUFFER

        date_only = _first(e for e in same_day if e.scope_time is None)
        if date_only:
            return date_only, MatchKind.DATE

        return None, None

    async def find_product_for(
        self,
        identifier: Optional[Any] = None,
        scope_date: Any = None,
        scope_time: Any = None,
        event_id: Optional[Any] = None,
    ) -> Resolution:
        """
        Resolve a ticket class or POS item id (and/or event id) to a product.

        A miss is not an error: the result has ``product_id=None`` and a
        warning, and the miss is logged with every input.
        """
        identifier = str(identifier).strip() if identifier not in (None, "") else None
        event_id = str(event_id).strip() if event_id not in (None, "") else None
        parsed_date, parsed_time = self._normalize_context(scope_date, scope_time)

        resolution = Resolution()
        if scope_date and parsed_date is None:
            resolution.warnings.append(f"Ignoring unparseable date {scope_date!r}")
        if scope_time and parsed_time is None:
            resolution.warnings.append(f"Ignoring unparseable time {scope_time!r}")

        if not identifier and not event_id:
            resolution.warnings.append("No identifier or event id supplied")
            MAPPING_RESOLUTIONS.labels(direction="to_product", outcome="invalid").inc()
            return resolution

        candidates = await self.store.get_entries(
            identifiers=[identifier] if identifier else None,
            event_id=event_id,
        )

        entry, kind = None, None

        if identifier:
            by_id = [e for e in candidates if e.matches_identifier(identifier)]
            if parsed_date:
                entry, kind = self._scoped_match(by_id, parsed_date, parsed_time, self.time_buffer_minutes)
            if entry is None:
                entry = _first(e for e in by_id if e.is_default)
                kind = MatchKind.DEFAULT if entry else None
            if entry is None and parsed_date is None:
                entry = _first(e for e in by_id if not e.is_default)
                kind = MatchKind.SCOPED_ANY if entry else None

        if entry is None and event_id:
            by_event = [e for e in candidates if e.event_id == event_id]
            scoped = [e for e in by_event if not e.is_default]
            if parsed_date:
                same_day = [e for e in scoped if e.scope_date == parsed_date]
                if parsed_time:
                    near = [
                        e for e in same_day
                        if not e.scope_time
                        or is_time_close(e.scope_time, parsed_time, self.event_time_buffer_minutes)
                    ]
                    same_day = _closest(near, parsed_time) + [e for e in same_day if e not in near]
                scoped = same_day + [e for e in scoped if e.scope_date != parsed_date]
            entry = _first(scoped)
            kind = MatchKind.EVENT_SCOPED if entry else None
            if entry is None:
                entry = _first(e for e in by_event if e.is_default)
                kind = MatchKind.EVENT_DEFAULT if entry else None

        if entry is None:
            message = "No product mapping found"
            resolution.warnings.append(message)
            self.log.warning(
                message,
                identifier=identifier,
                date=parsed_date.isoformat() if parsed_date else scope_date,
                time=parsed_time or scope_time,
                event_id=event_id,
            )
            MAPPING_RESOLUTIONS.labels(direction="to_product", outcome="not_found").inc()
            return resolution

        resolution.product_id = entry.product_id
        resolution.matched_by = kind
        resolution.entry = entry
        MAPPING_RESOLUTIONS.labels(direction="to_product", outcome=kind.value).inc()
        self.log.debug(
            "Resolved product",
            identifier=identifier,
            event_id=event_id,
            product_id=entry.product_id,
            matched_by=kind.value,
        )
        return resolution

    async def identifiers_for(
        self,
        product_id: Any,
        scope_date: Any = None,
        scope_time: Any = None,
    ) -> SourceIdentifiers:
        """
        Source identifiers of a product, most specific scope first.

        The ticket class id prefers the operator-entered value over the
        suggested one. Empty identifiers when nothing applies.
        """
        product_id = str(product_id)
        parsed_date, parsed_time = self._normalize_context(scope_date, scope_time)

        entries = await self.store.get_entries(product_id=product_id, scope_date=parsed_date)

        entry, kind = None, None
        if parsed_date:
            entry, kind = self._scoped_match(entries, parsed_date, parsed_time, self.time_buffer_minutes)
        if entry is None:
            entry = _first(e for e in entries if e.is_default)
            kind = MatchKind.DEFAULT if entry else None

        if entry is None:
            MAPPING_RESOLUTIONS.labels(direction="to_identifiers", outcome="not_found").inc()
            return SourceIdentifiers(product_id=product_id)

        MAPPING_RESOLUTIONS.labels(direction="to_identifiers", outcome=kind.value).inc()
        return SourceIdentifiers(
            product_id=product_id,
            ticket_class_id=entry.effective_ticket_class_id,
            event_id=entry.event_id,
            pos_item_id=entry.pos_item_id,
            matched_by=kind,
        )
