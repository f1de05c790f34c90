"""
Unit Tests - Mapping Store and Resolver
"""
from datetime import date

import pytest

from eventsync.exceptions import MappingValidationError, StorageError
from eventsync.mapping.entries import MappingEntry, MatchKind, normalize_entry
from eventsync.mapping.store import MappingStore


class TestNormalizeEntry:
    """Tests for normalize_entry"""

    def test_manual_spelling_wins(self):
        """Test the operator-entered ticket class beats legacy spellings"""
        entry = normalize_entry("101", {
            "date": "2025-06-01",
            "time": "8pm",
            "eventbrite_id": "LEGACY",
            "manual_eventbrite_id": "MANUAL",
            "square_id": "SQ-1",
        })

        assert entry.ticket_class_id == "MANUAL"
        assert entry.pos_item_id == "SQ-1"
        assert entry.scope_key == "2025-06-01_20:00"

    def test_suggested_only_used_as_fallback(self):
        """Test a suggested ticket class is used when no manual one exists"""
        entry = normalize_entry("101", {"suggested_eventbrite_id": "SUGG"})

        assert entry.ticket_class_id is None
        assert entry.effective_ticket_class_id == "SUGG"
        assert entry.is_default

    def test_bad_date_raises(self):
        """Test unparseable dates are rejected"""
        with pytest.raises(MappingValidationError):
            normalize_entry("101", {"date": "someday", "ticket_class_id": "TIX-1"})

    def test_time_without_date_raises(self):
        """Test a time needs a date"""
        with pytest.raises(MappingValidationError):
            normalize_entry("101", {"time": "20:00", "ticket_class_id": "TIX-1"})


class TestMappingStore:
    """Tests for MappingStore"""

    async def test_save_scoped_full_replace(self, store):
        """Test scopes missing from a save are deleted"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "ticket_class_id": "TIX-A"},
            {"date": "2025-06-02", "ticket_class_id": "TIX-B"},
            {"date": "2025-06-03", "ticket_class_id": "TIX-C"},
        ])
        result = await store.save_scoped("101", [
            {"date": "2025-06-01", "ticket_class_id": "TIX-A"},
            {"date": "2025-06-02", "ticket_class_id": "TIX-B"},
        ])

        entries = await store.get_entries(product_id="101")

        assert result.saved == 2
        assert [e.scope_key for e in entries] == ["2025-06-01", "2025-06-02"]

    async def test_save_scoped_keeps_default(self, store):
        """Test a scoped save leaves the default entry alone"""
        await store.save_default("101", ticket_class_id="TIX-DEF")
        await store.save_scoped("101", [{"date": "2025-06-01", "ticket_class_id": "TIX-A"}])
        await store.save_scoped("101", [])

        entries = await store.get_entries(product_id="101")

        assert len(entries) == 1
        assert entries[0].is_default
        assert entries[0].ticket_class_id == "TIX-DEF"

    async def test_save_scoped_drops_and_skips(self, store):
        """Test rows without identifiers are dropped and bad rows skipped"""
        result = await store.save_scoped("101", [
            {"date": "2025-06-01"},
            {"date": "not a date", "ticket_class_id": "TIX-X"},
            {"ticket_class_id": "TIX-NODATE"},
            {"date": "2025-06-02", "time": "20:00", "ticket_class_id": "TIX-OK"},
        ])

        assert result.saved == 1
        assert result.dropped == 1
        assert sorted(s.index for s in result.skipped) == [1, 2]
        assert result.entries[0].scope_key == "2025-06-02_20:00"

    async def test_save_scoped_failure_keeps_previous_set(self, store, failing_session_factory, locks):
        """Test a failed write raises StorageError and leaves the stored set intact"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "ticket_class_id": "TIX-A"},
            {"date": "2025-06-02", "ticket_class_id": "TIX-B"},
        ])
        broken = MappingStore(failing_session_factory, locks=locks)

        with pytest.raises(StorageError):
            await broken.save_scoped("101", [{"date": "2025-06-03", "ticket_class_id": "TIX-C"}])

        entries = await store.get_entries(product_id="101")
        assert [(e.scope_key, e.ticket_class_id) for e in entries] == [
            ("2025-06-01", "TIX-A"),
            ("2025-06-02", "TIX-B"),
        ]

    async def test_save_default_upserts(self, store):
        """Test saving a default twice overwrites it"""
        await store.save_default("101", ticket_class_id="TIX-1")
        await store.save_default("101", ticket_class_id="TIX-2", pos_item_id="SQ-9")

        entry = await store.get_default("101")

        assert entry.ticket_class_id == "TIX-2"
        assert entry.pos_item_id == "SQ-9"

    async def test_import_legacy(self, store):
        """Test the legacy option-bag layout is migrated"""
        saved = await store.import_legacy({
            "101": {"manual_eventbrite_id": "TIX-DEF", "square_id": "SQ-101"},
            "101_dates": {
                "2025-06-01_20:00": {"eventbrite_ticket_class_id": "TIX-1"},
                "2025-06-02": {"square_item_id": "SQ-0602"},
                "bad-key": {"eventbrite_id": "TIX-BAD"},
            },
            "unrelated_option": "value",
        })

        entries = await store.get_entries(product_id="101")

        assert saved == 3
        assert [e.scope_key for e in entries] == ["", "2025-06-01_20:00", "2025-06-02"]
        assert entries[1].ticket_class_id == "TIX-1"
        assert entries[2].pos_item_id == "SQ-0602"


class TestFindProductFor:
    """Tests for MappingResolver.find_product_for"""

    async def test_time_buffer_scenario(self, store, resolver):
        """Test a sale ten minutes after the mapped time resolves within the buffer"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1"},
        ])

        resolution = await resolver.find_product_for("TIX-1", "2025-06-01", "20:10")

        assert resolution.product_id == "101"
        assert resolution.matched_by == MatchKind.TIME_BUFFER

    @pytest.mark.parametrize("sale_time, found", [
        ("14:00", True),
        ("14:25", True),
        ("13:30", True),
        ("14:35", False),
    ])
    async def test_buffer_boundary(self, store, resolver, sale_time, found):
        """Test the symmetric thirty minute buffer"""
        await store.save_scoped("102", [
            {"date": "2025-06-01", "time": "14:00", "ticket_class_id": "TIX-M"},
        ])

        resolution = await resolver.find_product_for("TIX-M", "2025-06-01", sale_time)

        assert resolution.found is found
        if not found:
            assert resolution.warnings

    async def test_exact_beats_buffer(self, store, resolver):
        """Test an exact time match wins over an earlier entry inside the buffer"""
        await store.save_scoped("101", [{"date": "2025-06-01", "time": "19:50", "ticket_class_id": "TIX-1"}])
        await store.save_scoped("103", [{"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1"}])

        resolution = await resolver.find_product_for("TIX-1", "2025-06-01", "20:00")

        assert resolution.product_id == "103"
        assert resolution.matched_by == MatchKind.EXACT

    async def test_date_only_and_default(self, store, resolver):
        """Test date-only scopes, then the default"""
        await store.save_default("101", pos_item_id="SQ-1")
        await store.save_scoped("102", [{"date": "2025-06-01", "pos_item_id": "SQ-1"}])

        on_date = await resolver.find_product_for("SQ-1", "2025-06-01")
        other_date = await resolver.find_product_for("SQ-1", "2025-06-05")

        assert (on_date.product_id, on_date.matched_by) == ("102", MatchKind.DATE)
        assert (other_date.product_id, other_date.matched_by) == ("101", MatchKind.DEFAULT)

    async def test_scoped_any_without_date(self, store, resolver):
        """Test an id only known in a scope resolves when no date is given"""
        await store.save_scoped("101", [{"date": "2025-06-01", "pos_item_id": "SQ-ONLY"}])

        resolution = await resolver.find_product_for("SQ-ONLY")

        assert resolution.product_id == "101"
        assert resolution.matched_by == MatchKind.SCOPED_ANY

    async def test_event_id_pass(self, store, resolver):
        """Test event id matching prefers the closest scoped occurrence"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "time": "14:00", "ticket_class_id": "TIX-A", "event_id": "EV-1"},
        ])
        await store.save_scoped("102", [
            {"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-B", "event_id": "EV-1"},
        ])
        await store.save_default("103", ticket_class_id="TIX-C", event_id="EV-1")

        evening = await resolver.find_product_for(None, "2025-06-01", "19:30", event_id="EV-1")
        other_day = await resolver.find_product_for(None, "2025-07-01", event_id="EV-1")

        assert (evening.product_id, evening.matched_by) == ("102", MatchKind.EVENT_SCOPED)
        assert other_day.matched_by == MatchKind.EVENT_SCOPED

    async def test_event_default(self, store, resolver):
        """Test an unscoped event mapping is the last resort"""
        await store.save_default("103", ticket_class_id="TIX-C", event_id="EV-9")

        resolution = await resolver.find_product_for("UNKNOWN", "2025-06-01", event_id="EV-9")

        assert (resolution.product_id, resolution.matched_by) == ("103", MatchKind.EVENT_DEFAULT)

    async def test_miss_is_not_an_error(self, resolver):
        """Test a miss returns warnings instead of raising"""
        resolution = await resolver.find_product_for("NOPE", "2025-06-01", "20:00")

        assert not resolution.found
        assert "No product mapping found" in resolution.warnings

    async def test_full_replace_makes_entry_unresolvable(self, store, resolver):
        """Test an entry removed by a save no longer resolves"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "ticket_class_id": "TIX-A"},
            {"date": "2025-06-02", "ticket_class_id": "TIX-B"},
            {"date": "2025-06-03", "ticket_class_id": "TIX-C"},
        ])
        await store.save_scoped("101", [
            {"date": "2025-06-01", "ticket_class_id": "TIX-A"},
            {"date": "2025-06-02", "ticket_class_id": "TIX-B"},
        ])

        resolution = await resolver.find_product_for("TIX-C", "2025-06-03")

        assert not resolution.found


class TestIdentifiersFor:
    """Tests for MappingResolver.identifiers_for"""

    async def test_scoped_beats_default(self, store, resolver):
        """Test the date+time scope wins over the default"""
        await store.save_default("101", ticket_class_id="TIX-DEF", pos_item_id="SQ-DEF")
        await store.save_scoped("101", [
            {"date": "2025-06-01", "time": "20:00", "ticket_class_id": "TIX-1", "event_id": "EV-1"},
        ])

        scoped = await resolver.identifiers_for("101", "2025-06-01", "20:00")
        default = await resolver.identifiers_for("101")

        assert (scoped.ticket_class_id, scoped.event_id, scoped.matched_by) == ("TIX-1", "EV-1", MatchKind.EXACT)
        assert scoped.pos_item_id is None
        assert (default.ticket_class_id, default.pos_item_id) == ("TIX-DEF", "SQ-DEF")

    async def test_suggested_fallback(self, store, resolver):
        """Test the suggested ticket class fills in when nothing was entered"""
        await store.save_scoped("101", [
            {"date": "2025-06-01", "suggested_ticket_class_id": "TIX-SUGG"},
        ])

        identifiers = await resolver.identifiers_for("101", date(2025, 6, 1))

        assert identifiers.ticket_class_id == "TIX-SUGG"

    async def test_unknown_product(self, resolver):
        """Test an unmapped product yields empty identifiers"""
        identifiers = await resolver.identifiers_for("999", "2025-06-01")

        assert identifiers.is_empty
        assert identifiers.matched_by is None


class TestMappingEntry:
    """Tests for MappingEntry"""

    def test_matches_pos_or_ticket(self):
        """Test identifier matching covers ticket class and POS item"""
        entry = MappingEntry(product_id=101, ticket_class_id="TIX-1", pos_item_id="SQ-1")

        assert entry.product_id == "101"
        assert entry.matches_identifier("TIX-1")
        assert entry.matches_identifier("SQ-1")
        assert not entry.matches_identifier("OTHER")
