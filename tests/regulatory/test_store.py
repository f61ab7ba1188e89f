"""Tests for src/regulatory/store.py."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from src.regulatory.errors import EntityNotFoundError, InvariantViolationError
from src.regulatory.store import EXTRACT_QUEUE, RegulatoryStore
from src.regulatory.types import (
    ConflictStatus,
    ConflictType,
    ContentClass,
    DiscoveredItem,
    DiscoveryEndpoint,
    Evidence,
    ItemStatus,
    ListingStrategy,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
    SourcePointer,
)


def _evidence(evidence_id: str, content_hash: str = "h1") -> Evidence:
    return Evidence(
        id=evidence_id,
        url="https://a.hr/pdv",
        content_hash=content_hash,
        raw_content="<p>PDV 25%</p>",
        content_class=ContentClass.HTML,
    )


class TestItems:
    """Tests for discovered item storage."""

    def test_url_is_unique(self) -> None:
        """Test url is unique."""
        store = RegulatoryStore()
        store.add_item(DiscoveredItem(id="i1", endpoint_id="ep", url="https://a.hr/x"))

        with pytest.raises(InvariantViolationError):
            store.add_item(DiscoveredItem(id="i2", endpoint_id="ep", url="https://a.hr/x"))

    def test_reads_are_copies(self) -> None:
        """Test reads are copies."""
        store = RegulatoryStore()
        store.add_item(DiscoveredItem(id="i1", endpoint_id="ep", url="https://a.hr/x"))

        item = store.get_item("i1")
        item.status = ItemStatus.PROCESSED

        assert store.get_item("i1").status == ItemStatus.PENDING

    def test_update_rejects_unknown_fields(self) -> None:
        """Test update rejects unknown fields."""
        store = RegulatoryStore()
        store.add_item(DiscoveredItem(id="i1", endpoint_id="ep", url="https://a.hr/x"))

        with pytest.raises(ValueError, match="Unknown fields"):
            store.update_item("i1", colour="red")

    def test_update_refuses_status(self) -> None:
        """Test item status cannot be written through update_item."""
        store = RegulatoryStore()
        store.add_item(DiscoveredItem(id="i1", endpoint_id="ep", url="https://a.hr/x"))

        with pytest.raises(InvariantViolationError, match="transition_item"):
            store.update_item("i1", status=ItemStatus.FETCHED)

        assert store.get_item("i1").status == ItemStatus.PENDING

    def test_item_status_compare_and_set(self) -> None:
        """Test the item status write checks the expected status."""
        store = RegulatoryStore()
        store.add_item(DiscoveredItem(id="i1", endpoint_id="ep", url="https://a.hr/x"))

        moved = store.compare_and_set_item_status(
            "i1", ItemStatus.PENDING, ItemStatus.FETCHED, content_hash="h1"
        )

        assert moved.status == ItemStatus.FETCHED
        assert moved.content_hash == "h1"
        with pytest.raises(InvariantViolationError, match="expected PENDING"):
            store.compare_and_set_item_status("i1", ItemStatus.PENDING, ItemStatus.FAILED)

    def test_missing_item(self) -> None:
        """Test missing item."""
        with pytest.raises(EntityNotFoundError):
            RegulatoryStore().get_item("nope")


class TestEvidence:
    """Tests for evidence storage."""

    def test_upsert_is_keyed_by_url_and_hash(self) -> None:
        """Test upsert is keyed by url and hash."""
        store = RegulatoryStore()

        first, created = store.upsert_evidence(_evidence("e1"))
        again, created_again = store.upsert_evidence(_evidence("e2"))
        other, created_other = store.upsert_evidence(_evidence("e3", content_hash="h2"))

        assert created and not created_again and created_other
        assert again.id == "e1"
        assert len(store.list_evidence(url="https://a.hr/pdv")) == 2

    def test_derived_text_is_only_mutation(self) -> None:
        """Test derived text is only mutation."""
        store = RegulatoryStore()
        store.upsert_evidence(_evidence("e1"))

        updated = store.attach_derived_text("e1", "PDV 25%")

        assert updated.derived_text == "PDV 25%"
        assert updated.raw_content == "<p>PDV 25%</p>"


class TestRules:
    """Tests for rule storage."""

    def test_duplicate_rule_id(self) -> None:
        """Test duplicate rule id."""
        store = RegulatoryStore()
        store.add_rule(RegulatoryRule(id="r1", concept_slug="x", value="1"))

        with pytest.raises(InvariantViolationError):
            store.add_rule(RegulatoryRule(id="r1", concept_slug="x", value="2"))

    def test_list_rules_filters(self) -> None:
        """Test list rules filters."""
        store = RegulatoryStore()
        store.add_rule(RegulatoryRule(id="r1", concept_slug="x", value="1"))
        store.add_rule(RegulatoryRule(id="r2", concept_slug="x", value="2", status=RuleStatus.REJECTED))
        store.add_rule(RegulatoryRule(id="r3", concept_slug="y", value="3"))

        rules = store.list_rules(concept_slug="x", statuses=(RuleStatus.DRAFT,))

        assert [r.id for r in rules] == ["r1"]

    def test_bulk_update_of_other_fields(self) -> None:
        """Test bulk update of other fields."""
        store = RegulatoryStore()
        store.add_rule(RegulatoryRule(id="r1", concept_slug="x", value="1"))

        assert store.update_rules_many(["r1", "missing"], title="Stopa PDV-a") == 1
        assert store.get_rule("r1").title == "Stopa PDV-a"


class TestQueues:
    """Tests for the work queues."""

    def test_fifo(self) -> None:
        """Test fifo."""
        store = RegulatoryStore()
        store.enqueue(EXTRACT_QUEUE, {"evidence_id": "e1"})
        store.enqueue(EXTRACT_QUEUE, {"evidence_id": "e2"})

        assert store.queue_size(EXTRACT_QUEUE) == 2
        assert store.dequeue(EXTRACT_QUEUE) == {"evidence_id": "e1"}
        assert store.dequeue(EXTRACT_QUEUE) == {"evidence_id": "e2"}
        assert store.dequeue(EXTRACT_QUEUE) is None

    def test_queue_contains(self) -> None:
        """Test payload lookup by field values."""
        store = RegulatoryStore()
        store.enqueue(EXTRACT_QUEUE, {"evidence_id": "e1", "item_id": "i1"})

        assert store.queue_contains(EXTRACT_QUEUE, evidence_id="e1")
        assert store.queue_contains(EXTRACT_QUEUE, evidence_id="e1", item_id="i1")
        assert not store.queue_contains(EXTRACT_QUEUE, evidence_id="e2")
        assert not store.queue_contains("ocr", evidence_id="e1")


class TestPersistence:
    """Tests for JSON snapshots."""

    def test_save_and_load(self, tmp_path) -> None:
        """Test save and load."""
        store = RegulatoryStore()
        store.add_endpoint(DiscoveryEndpoint(
            id="ep", domain="a.hr", path="/vijesti", name="Vijesti",
            listing_strategy=ListingStrategy.HTML_LIST,
            last_scraped_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))
        store.add_item(DiscoveredItem(
            id="i1", endpoint_id="ep", url="https://a.hr/x", publication_date=date(2025, 1, 2),
            processed_hash="h1",
        ))
        store.upsert_evidence(_evidence("e1"))
        store.add_source_pointer(SourcePointer(id="sp1", evidence_id="e1", exact_quote="PDV 25%"))
        store.add_rule(RegulatoryRule(
            id="r1", concept_slug="pdv", value="25%", effective_from=date(2013, 1, 1),
            source_pointer_ids=["sp1"],
        ))
        store.insert_conflict(RegulatoryConflict(
            id="c1", conflict_type=ConflictType.SOURCE_CONFLICT, source_pointer_ids=["sp1"]
        ))
        store.enqueue(EXTRACT_QUEUE, {"evidence_id": "e1"})

        path = store.save(tmp_path / "state" / "store.json")
        loaded = RegulatoryStore.load(path)

        assert loaded.get_endpoint("ep").last_scraped_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert loaded.get_item("i1").publication_date == date(2025, 1, 2)
        assert loaded.get_item("i1").processed_hash == "h1"
        assert loaded.get_rule("r1").effective_from == date(2013, 1, 1)
        assert loaded.get_conflict("c1").status == ConflictStatus.OPEN
        assert loaded.get_source_pointers(["sp1"])[0].exact_quote == "PDV 25%"
        assert loaded.dequeue(EXTRACT_QUEUE) == {"evidence_id": "e1"}
        _, created = loaded.upsert_evidence(_evidence("e9"))
        assert created is False

    def test_missing_file_gives_empty_store(self, tmp_path) -> None:
        """Test missing file gives empty store."""
        store = RegulatoryStore.load(tmp_path / "missing.json")

        assert store.list_rules() == []
