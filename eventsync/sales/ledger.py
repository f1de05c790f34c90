"""
Dedup Ledger

Durable set of processed sale keys. Live keys are bounded: once more than
``max_entries`` exist, the oldest by timestamp are evicted. Historical keys
(imported references and historically recorded lines) are never evicted.

All methods work inside the caller's session so the ledger insert commits or
rolls back together with the aggregate update it guards.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventsync.config import get_settings
from eventsync.database.models import LedgerEntry, Provenance

logger = structlog.get_logger(__name__)

LEDGER_EVICTIONS = Counter(
    "eventsync_ledger_evictions_total",
    "Live dedup keys evicted to respect the ledger cap",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SaleLedger:
    """
    Unified dedup ledger with live/historical provenance.

    Example:
        async with session_factory() as session:
            if await ledger.claim(session, key, Provenance.LIVE, "web"):
                ...
                await ledger.evict(session)
                await session.commit()
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        log=None,
    ):
        self.max_entries = max_entries if max_entries is not None else get_settings().ledger.max_entries
        self._clock = clock or utcnow
        self.log = log or logger

    @staticmethod
    def historical_key(source: str, external_ref: str) -> str:
        """Key of an imported reference"""
        return f"{source}:{external_ref}"

    async def contains(self, session: AsyncSession, key: str) -> bool:
        if not key:
            return False
        return await session.get(LedgerEntry, key) is not None

    def add(
        self,
        session: AsyncSession,
        key: str,
        provenance: Provenance = Provenance.LIVE,
        source: Optional[str] = None,
    ) -> LedgerEntry:
        """Stage an insert; the primary key rejects a concurrent duplicate at flush"""
        entry = LedgerEntry(
            key=key,
            provenance=provenance,
            source=source,
            processed_at=self._clock(),
        )
        session.add(entry)
        return entry

    async def claim(
        self,
        session: AsyncSession,
        key: str,
        provenance: Provenance = Provenance.LIVE,
        source: Optional[str] = None,
    ) -> bool:
        """Stage the key unless already present. Callers serialize per key."""
        if not key or await self.contains(session, key):
            return False
        self.add(session, key, provenance, source)
        return True

    async def evict(self, session: AsyncSession, keep: Optional[str] = None) -> int:
        """Drop the oldest live keys beyond the cap, never ``keep``"""
        await session.flush()

        live_count = (await session.execute(
            select(func.count()).select_from(LedgerEntry).where(
                LedgerEntry.provenance == Provenance.LIVE
            )
        )).scalar_one()

        overflow = live_count - self.max_entries
        if overflow <= 0:
            return 0

        stmt = select(LedgerEntry.key).where(LedgerEntry.provenance == Provenance.LIVE)
        if keep:
            stmt = stmt.where(LedgerEntry.key != keep)
        oldest = (await session.execute(
            stmt.order_by(LedgerEntry.processed_at, LedgerEntry.key).limit(overflow)
        )).scalars().all()

        await session.execute(
            delete(LedgerEntry)
            .where(LedgerEntry.key.in_(oldest))
            .execution_options(synchronize_session=False)
        )
        LEDGER_EVICTIONS.inc(len(oldest))
        self.log.debug("Evicted ledger keys", count=len(oldest), cap=self.max_entries)
        return len(oldest)

    async def is_imported(self, session: AsyncSession, source: str, external_ref: str) -> bool:
        return await self.contains(session, self.historical_key(source, external_ref))

    def mark_imported(self, session: AsyncSession, source: str, external_ref: str) -> LedgerEntry:
        return self.add(
            session,
            self.historical_key(source, external_ref),
            Provenance.HISTORICAL,
            source,
        )

    async def count(self, session: AsyncSession, provenance: Optional[Provenance] = None) -> int:
        stmt = select(func.count()).select_from(LedgerEntry)
        if provenance is not None:
            stmt = stmt.where(LedgerEntry.provenance == provenance)
        return (await session.execute(stmt)).scalar_one()
