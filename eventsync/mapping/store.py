"""
Mapping Store

Durable canonical-product -> source-identifier associations.

Features:
- Default (unscoped) and date/time-scoped entries per product
- Full-replace save of a product's scoped set in one transaction
- Entry-level validation: bad rows are skipped, the save continues
- One-time import of the legacy option-bag layout
"""

from typing import Any, Iterable, List, Mapping, Optional, Union
from datetime import date

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventsync.coordination.locks import KeyedLock, LocalKeyedLock
from eventsync.database.models import MappingRecord
from eventsync.exceptions import MappingValidationError, StorageError
from eventsync.mapping.entries import (
    MappingEntry,
    SaveResult,
    SkippedEntry,
    normalize_entry,
    parse_scope_key,
)

logger = structlog.get_logger(__name__)

EntryInput = Union[MappingEntry, Mapping[str, Any]]
LEGACY_SCOPED_SUFFIX = "_dates"


class MappingStore:
    """
    Mapping persistence over the ``mapping_entries`` table.

    Example:
        store = MappingStore(session_factory)
        await store.save_scoped("101", [{"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1"}])
        entries = await store.get_entries(product_id="101")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[KeyedLock] = None,
        log=None,
    ):
        self._session_factory = session_factory
        self._locks = locks or LocalKeyedLock()
        self.log = log or logger

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_entries(
        self,
        product_id: Optional[str] = None,
        scope_date: Optional[date] = None,
        identifiers: Optional[Iterable[str]] = None,
        event_id: Optional[str] = None,
    ) -> List[MappingEntry]:
        """
        Load entries ordered by scope key (default first, then chronological).

        Args:
            product_id: Restrict to one product
            scope_date: Restrict scoped entries to this date (defaults still returned)
            identifiers: Keep only rows carrying one of these ticket/POS ids
                (or ``event_id`` when given)
            event_id: See ``identifiers``
        """
        stmt = select(MappingRecord)
        if product_id is not None:
            stmt = stmt.where(MappingRecord.product_id == str(product_id))
        if scope_date is not None:
            stmt = stmt.where(
                or_(MappingRecord.scope_date == scope_date, MappingRecord.scope_key == "")
            )

        id_list = [i for i in (identifiers or []) if i]
        filters = []
        if id_list:
            filters.extend([
                MappingRecord.ticket_class_id.in_(id_list),
                MappingRecord.suggested_ticket_class_id.in_(id_list),
                MappingRecord.pos_item_id.in_(id_list),
            ])
        if event_id:
            filters.append(MappingRecord.event_id == event_id)
        if filters:
            stmt = stmt.where(or_(*filters))

        stmt = stmt.order_by(MappingRecord.scope_key, MappingRecord.product_id)

        try:
            async with self._session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to read mapping entries", details={"error": str(e)}) from e

        return [MappingEntry.from_record(record) for record in records]

    async def get_default(self, product_id: str) -> Optional[MappingEntry]:
        """Unscoped entry for a product, if any"""
        stmt = select(MappingRecord).where(
            MappingRecord.product_id == str(product_id),
            MappingRecord.scope_key == "",
        )
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError("Failed to read default mapping", details={"error": str(e)}) from e
        return MappingEntry.from_record(record) if record else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _prepare(self, product_id: str, entries: Iterable[EntryInput], result: SaveResult) -> List[MappingEntry]:
        prepared = {}
        for index, raw in enumerate(entries):
            try:
                if isinstance(raw, MappingEntry):
                    entry = raw.model_copy(update={"product_id": product_id})
                else:
                    entry = normalize_entry(product_id, raw)
            except MappingValidationError as e:
                result.skipped.append(SkippedEntry(index=index, reason=e.message, details=e.details))
                continue

            if entry.is_default:
                result.skipped.append(SkippedEntry(index=index, reason="Scoped entry has no date"))
                continue
            if not entry.has_identifier:
                result.dropped += 1
                continue

            # Last writer wins for repeated scopes
            prepared[entry.scope_key] = entry

        return [prepared[key] for key in sorted(prepared)]

    async def save_scoped(self, product_id: Any, entries: Iterable[EntryInput]) -> SaveResult:
        """
        Replace the whole scoped set of a product.

        Stored scopes absent from ``entries`` are deleted. Rows without a
        ticket or POS identifier are dropped; rows with a bad date/time are
        skipped and reported.

        Raises:
            StorageError: the write failed; the previous set is left intact
        """
        product_id = str(product_id)
        result = SaveResult(product_id=product_id)
        prepared = self._prepare(product_id, entries, result)

        async with self._locks.hold(f"mapping:{product_id}"):
            async with self._session_factory() as session:
                try:
                    await session.execute(
                        delete(MappingRecord).where(
                            MappingRecord.product_id == product_id,
                            MappingRecord.scope_key != "",
                        )
                    )
                    session.add_all([entry.to_record() for entry in prepared])
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    self.log.error("Mapping save failed", product_id=product_id, error=str(e))
                    raise StorageError(
                        "Failed to save mapping entries",
                        details={"product_id": product_id, "error": str(e)},
                    ) from e

        result.saved = len(prepared)
        result.entries = prepared
        self.log.info(
            "Saved scoped mappings",
            product_id=product_id,
            saved=result.saved,
            dropped=result.dropped,
            skipped=len(result.skipped),
        )
        return result

    async def save_default(
        self,
        product_id: Any,
        ticket_class_id: Optional[str] = None,
        event_id: Optional[str] = None,
        pos_item_id: Optional[str] = None,
        suggested_ticket_class_id: Optional[str] = None,
    ) -> MappingEntry:
        """Create or overwrite the unscoped entry of a product"""
        entry = MappingEntry(
            product_id=product_id,
            ticket_class_id=ticket_class_id,
            suggested_ticket_class_id=suggested_ticket_class_id,
            event_id=event_id,
            pos_item_id=pos_item_id,
        )

        async with self._locks.hold(f"mapping:{entry.product_id}"):
            async with self._session_factory() as session:
                try:
                    record = (await session.execute(
                        select(MappingRecord).where(
                            MappingRecord.product_id == entry.product_id,
                            MappingRecord.scope_key == "",
                        )
                    )).scalar_one_or_none()
                    if record is None:
                        session.add(entry.to_record())
                    else:
                        record.ticket_class_id = entry.ticket_class_id
                        record.suggested_ticket_class_id = entry.suggested_ticket_class_id
                        record.event_id = entry.event_id
                        record.pos_item_id = entry.pos_item_id
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise StorageError(
                        "Failed to save default mapping",
                        details={"product_id": entry.product_id, "error": str(e)},
                    ) from e

        self.log.info("Saved default mapping", product_id=entry.product_id)
        return entry

    async def import_legacy(self, blob: Mapping[str, Any]) -> int:
        """
        Migrate the legacy option-bag layout into typed rows.

        Layout:
            {"101": {"manual_eventbrite_id": ..., "square_id": ...},
             "101_dates": {"2025-06-01_20:00": {...}, "2025-06-02": {...}}}

        Returns:
            Number of entries stored (default and scoped)
        """
        saved = 0
        scoped_sets = {}

        for key, payload in blob.items():
            if not isinstance(payload, Mapping):
                continue
            key = str(key)
            if key.endswith(LEGACY_SCOPED_SUFFIX):
                product_id = key[: -len(LEGACY_SCOPED_SUFFIX)]
                rows = []
                for scope_key, row in payload.items():
                    if not isinstance(row, Mapping):
                        continue
                    date_part, time_part = parse_scope_key(str(scope_key))
                    rows.append({**row, "date": row.get("date") or date_part, "time": row.get("time") or time_part})
                scoped_sets[product_id] = rows
                continue

            try:
                entry = normalize_entry(key, payload)
            except MappingValidationError as e:
                self.log.warning("Skipping legacy default mapping", product_id=key, reason=e.message)
                continue
            if entry.has_identifier or entry.event_id:
                await self.save_default(
                    key,
                    ticket_class_id=entry.ticket_class_id,
                    event_id=entry.event_id,
                    pos_item_id=entry.pos_item_id,
                    suggested_ticket_class_id=entry.suggested_ticket_class_id,
                )
                saved += 1

        for product_id, rows in scoped_sets.items():
            result = await self.save_scoped(product_id, rows)
            saved += result.saved

        self.log.info("Imported legacy mappings", entries=saved, products=len(scoped_sets))
        return saved
