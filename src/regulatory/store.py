"""In-process relational store for pipeline entities.

``RegulatoryStore`` stands in for the relational database the pipeline
runs against. It enforces the same constraints:

- Evidence is unique on (url, content_hash).
- At most one OPEN conflict exists per pair of items.
- Single-row updates are atomic; item and rule status changes are
  compare-and-set and never go through the generic update methods.
- Bulk rule updates may never touch ``status``.

Reads return copies, so the only way to change a row is through an update
method. State can be snapshotted to a JSON file and loaded back.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections import defaultdict, deque
from dataclasses import fields
from pathlib import Path
from typing import Any, Iterable, TypeVar

from src import paths

from .errors import (
    BulkStatusUpdateNotAllowedError,
    DuplicateConflictError,
    EntityNotFoundError,
    InvariantViolationError,
)
from .types import (
    AgentRun,
    ConflictStatus,
    DiscoveredItem,
    DiscoveryEndpoint,
    Evidence,
    ItemStatus,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
    SourcePointer,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OCR_QUEUE = "ocr"
EXTRACT_QUEUE = "extract"


def _apply_changes(entity: T, changes: dict[str, Any]) -> T:
    valid = {f.name for f in fields(entity)}
    unknown = set(changes) - valid
    if unknown:
        raise ValueError(f"Unknown fields for {type(entity).__name__}: {sorted(unknown)}")
    for key, value in changes.items():
        setattr(entity, key, value)
    return entity


class RegulatoryStore:
    """Thread-safe store of endpoints, items, evidence, rules and conflicts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._endpoints: dict[str, DiscoveryEndpoint] = {}
        self._items: dict[str, DiscoveredItem] = {}
        self._evidence: dict[str, Evidence] = {}
        self._evidence_index: dict[tuple[str, str], str] = {}
        self._pointers: dict[str, SourcePointer] = {}
        self._rules: dict[str, RegulatoryRule] = {}
        self._conflicts: dict[str, RegulatoryConflict] = {}
        self._agent_runs: dict[str, AgentRun] = {}
        self._queues: dict[str, deque[dict[str, Any]]] = defaultdict(deque)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def add_endpoint(self, endpoint: DiscoveryEndpoint) -> DiscoveryEndpoint:
        with self._lock:
            self._endpoints[endpoint.id] = copy.deepcopy(endpoint)
        return endpoint

    def get_endpoint(self, endpoint_id: str) -> DiscoveryEndpoint:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                raise EntityNotFoundError("DiscoveryEndpoint", endpoint_id)
            return copy.deepcopy(endpoint)

    def list_endpoints(self, active_only: bool = False) -> list[DiscoveryEndpoint]:
        with self._lock:
            endpoints = [
                copy.deepcopy(e)
                for e in self._endpoints.values()
                if e.is_active or not active_only
            ]
        return endpoints

    def update_endpoint(self, endpoint_id: str, **changes: Any) -> DiscoveryEndpoint:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                raise EntityNotFoundError("DiscoveryEndpoint", endpoint_id)
            _apply_changes(endpoint, changes)
            return copy.deepcopy(endpoint)

    # ------------------------------------------------------------------
    # Discovered items
    # ------------------------------------------------------------------

    def add_item(self, item: DiscoveredItem) -> DiscoveredItem:
        with self._lock:
            if self._find_item_by_url(item.url) is not None:
                raise InvariantViolationError(f"Discovered item already exists for {item.url}")
            self._items[item.id] = copy.deepcopy(item)
        return item

    def _find_item_by_url(self, url: str) -> DiscoveredItem | None:
        for item in self._items.values():
            if item.url == url:
                return item
        return None

    def find_item_by_url(self, url: str) -> DiscoveredItem | None:
        with self._lock:
            item = self._find_item_by_url(url)
            return copy.deepcopy(item) if item else None

    def get_item(self, item_id: str) -> DiscoveredItem:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise EntityNotFoundError("DiscoveredItem", item_id)
            return copy.deepcopy(item)

    def list_items(
        self,
        statuses: Iterable[ItemStatus] | None = None,
        endpoint_id: str | None = None,
    ) -> list[DiscoveredItem]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(item)
                for item in self._items.values()
                if (wanted is None or item.status in wanted)
                and (endpoint_id is None or item.endpoint_id == endpoint_id)
            ]

    def update_item(self, item_id: str, **changes: Any) -> DiscoveredItem:
        """Atomically update non-status fields of one discovered item."""
        if "status" in changes:
            raise InvariantViolationError(
                "Item status can only be changed through the scheduler's transition_item"
            )
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise EntityNotFoundError("DiscoveredItem", item_id)
            _apply_changes(item, changes)
            return copy.deepcopy(item)

    def compare_and_set_item_status(
        self,
        item_id: str,
        expected: ItemStatus,
        new_status: ItemStatus,
        **changes: Any,
    ) -> DiscoveredItem:
        """Atomically move an item from ``expected`` to ``new_status``.

        Only ``scheduler.transition_item`` calls this.

        Raises:
            InvariantViolationError: If the item's status is no longer ``expected``.
        """
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise EntityNotFoundError("DiscoveredItem", item_id)
            if item.status != expected:
                raise InvariantViolationError(
                    f"Item {item_id} status changed concurrently: "
                    f"expected {expected.value}, found {item.status.value}"
                )
            _apply_changes(item, changes)
            item.status = new_status
            return copy.deepcopy(item)

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def upsert_evidence(self, evidence: Evidence) -> tuple[Evidence, bool]:
        """Insert evidence unless (url, content_hash) already exists.

        Returns:
            (stored evidence, created flag).
        """
        key = (evidence.url, evidence.content_hash)
        with self._lock:
            existing_id = self._evidence_index.get(key)
            if existing_id is not None:
                return copy.deepcopy(self._evidence[existing_id]), False
            self._evidence[evidence.id] = copy.deepcopy(evidence)
            self._evidence_index[key] = evidence.id
            return copy.deepcopy(evidence), True

    def get_evidence(self, evidence_id: str) -> Evidence:
        with self._lock:
            evidence = self._evidence.get(evidence_id)
            if evidence is None:
                raise EntityNotFoundError("Evidence", evidence_id)
            return copy.deepcopy(evidence)

    def list_evidence(self, url: str | None = None) -> list[Evidence]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._evidence.values()
                if url is None or e.url == url
            ]

    def attach_derived_text(self, evidence_id: str, text: str) -> Evidence:
        """Attach the derived text artifact; the only permitted evidence mutation."""
        with self._lock:
            evidence = self._evidence.get(evidence_id)
            if evidence is None:
                raise EntityNotFoundError("Evidence", evidence_id)
            evidence.derived_text = text
            return copy.deepcopy(evidence)

    # ------------------------------------------------------------------
    # Source pointers
    # ------------------------------------------------------------------

    def add_source_pointer(self, pointer: SourcePointer) -> SourcePointer:
        with self._lock:
            self._pointers[pointer.id] = copy.deepcopy(pointer)
        return pointer

    def get_source_pointers(self, pointer_ids: Iterable[str]) -> list[SourcePointer]:
        """Return the pointers that still exist, in the requested order."""
        with self._lock:
            return [
                copy.deepcopy(self._pointers[pid])
                for pid in pointer_ids
                if pid in self._pointers
            ]

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: RegulatoryRule) -> RegulatoryRule:
        with self._lock:
            if rule.id in self._rules:
                raise InvariantViolationError(f"Rule already exists: {rule.id}")
            self._rules[rule.id] = copy.deepcopy(rule)
        return rule

    def get_rule(self, rule_id: str) -> RegulatoryRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise EntityNotFoundError("RegulatoryRule", rule_id)
            return copy.deepcopy(rule)

    def list_rules(
        self,
        concept_slug: str | None = None,
        statuses: Iterable[RuleStatus] | None = None,
    ) -> list[RegulatoryRule]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(rule)
                for rule in self._rules.values()
                if (concept_slug is None or rule.concept_slug == concept_slug)
                and (wanted is None or rule.status in wanted)
            ]

    def update_rule(self, rule_id: str, **changes: Any) -> RegulatoryRule:
        """Update non-status fields of one rule."""
        if "status" in changes:
            raise InvariantViolationError(
                "Rule status can only be changed through the status gate"
            )
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise EntityNotFoundError("RegulatoryRule", rule_id)
            _apply_changes(rule, changes)
            rule.updated_at = utc_now()
            return copy.deepcopy(rule)

    def update_rules_many(self, rule_ids: Iterable[str], **changes: Any) -> int:
        """Apply the same non-status changes to many rules.

        Raises:
            BulkStatusUpdateNotAllowedError: If ``status`` is among the changes.
        """
        if "status" in changes:
            raise BulkStatusUpdateNotAllowedError()
        count = 0
        with self._lock:
            for rule_id in rule_ids:
                rule = self._rules.get(rule_id)
                if rule is None:
                    continue
                _apply_changes(rule, changes)
                rule.updated_at = utc_now()
                count += 1
        return count

    def compare_and_set_rule_status(
        self,
        rule_id: str,
        expected: RuleStatus,
        new_status: RuleStatus,
        review_notes: str | None = None,
    ) -> RegulatoryRule:
        """Atomically move a rule from ``expected`` to ``new_status``.

        Only the status gate calls this.

        Raises:
            InvariantViolationError: If the rule's status is no longer ``expected``.
        """
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise EntityNotFoundError("RegulatoryRule", rule_id)
            if rule.status != expected:
                raise InvariantViolationError(
                    f"Rule {rule_id} status changed concurrently: "
                    f"expected {expected.value}, found {rule.status.value}"
                )
            rule.status = new_status
            if review_notes is not None:
                rule.review_notes = review_notes
            rule.updated_at = utc_now()
            return copy.deepcopy(rule)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _find_open_conflict(self, item_a_id: str, item_b_id: str) -> RegulatoryConflict | None:
        for conflict in self._conflicts.values():
            if conflict.status == ConflictStatus.OPEN and conflict.involves_pair(item_a_id, item_b_id):
                return conflict
        return None

    def find_open_conflict(self, item_a_id: str, item_b_id: str) -> RegulatoryConflict | None:
        """Find an OPEN conflict between two items, in either order."""
        with self._lock:
            conflict = self._find_open_conflict(item_a_id, item_b_id)
            return copy.deepcopy(conflict) if conflict else None

    def insert_conflict(self, conflict: RegulatoryConflict) -> RegulatoryConflict:
        """Insert a conflict, enforcing one OPEN conflict per pair.

        Raises:
            DuplicateConflictError: If an OPEN conflict already covers the pair.
        """
        with self._lock:
            if conflict.item_a_id and conflict.item_b_id:
                existing = self._find_open_conflict(conflict.item_a_id, conflict.item_b_id)
                if existing is not None:
                    raise DuplicateConflictError(
                        conflict.item_a_id, conflict.item_b_id, existing.id
                    )
            self._conflicts[conflict.id] = copy.deepcopy(conflict)
        return conflict

    def get_conflict(self, conflict_id: str) -> RegulatoryConflict:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise EntityNotFoundError("RegulatoryConflict", conflict_id)
            return copy.deepcopy(conflict)

    def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        limit: int | None = None,
    ) -> list[RegulatoryConflict]:
        """Conflicts ordered oldest first."""
        with self._lock:
            result = sorted(
                (c for c in self._conflicts.values() if status is None or c.status == status),
                key=lambda c: c.created_at,
            )
            if limit is not None:
                result = result[:limit]
            return [copy.deepcopy(c) for c in result]

    def update_conflict(self, conflict_id: str, **changes: Any) -> RegulatoryConflict:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise EntityNotFoundError("RegulatoryConflict", conflict_id)
            _apply_changes(conflict, changes)
            return copy.deepcopy(conflict)

    # ------------------------------------------------------------------
    # Agent runs
    # ------------------------------------------------------------------

    def record_agent_run(self, run: AgentRun) -> AgentRun:
        """Insert or complete an agent run record. Runs are never deleted."""
        with self._lock:
            self._agent_runs[run.id] = copy.deepcopy(run)
        return run

    def list_agent_runs(self, conflict_id: str | None = None) -> list[AgentRun]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._agent_runs.values()
                if conflict_id is None or r.conflict_id == conflict_id
            ]

    # ------------------------------------------------------------------
    # Work queues
    # ------------------------------------------------------------------

    def enqueue(self, queue: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._queues[queue].append(dict(payload))

    def dequeue(self, queue: str) -> dict[str, Any] | None:
        with self._lock:
            pending = self._queues[queue]
            return pending.popleft() if pending else None

    def queue_size(self, queue: str) -> int:
        with self._lock:
            return len(self._queues[queue])

    def queue_contains(self, queue: str, **match: Any) -> bool:
        """Whether any payload in ``queue`` has all of the ``match`` values."""
        with self._lock:
            return any(
                all(payload.get(key) == value for key, value in match.items())
                for payload in self._queues[queue]
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "endpoints": [e.to_dict() for e in self._endpoints.values()],
                "items": [i.to_dict() for i in self._items.values()],
                "evidence": [e.to_dict() for e in self._evidence.values()],
                "source_pointers": [p.to_dict() for p in self._pointers.values()],
                "rules": [r.to_dict() for r in self._rules.values()],
                "conflicts": [c.to_dict() for c in self._conflicts.values()],
                "agent_runs": [r.to_dict() for r in self._agent_runs.values()],
                "queues": {name: list(q) for name, q in self._queues.items() if q},
            }

    def save(self, path: Path | None = None) -> Path:
        """Write a JSON snapshot atomically."""
        target = path or paths.get_store_file()
        paths.ensure_directory(target.parent)
        content = json.dumps(self.to_dict(), indent=2)
        tmp_path = target.with_suffix(".json.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(target)
        logger.debug("Saved regulatory store snapshot to %s", target)
        return target

    @classmethod
    def load(cls, path: Path | None = None) -> "RegulatoryStore":
        """Load a snapshot written by ``save``; a missing file yields an empty store."""
        source = path or paths.get_store_file()
        store = cls()
        if not source.exists():
            return store

        data = json.loads(source.read_text(encoding="utf-8"))
        for raw in data.get("endpoints", []):
            endpoint = DiscoveryEndpoint.from_dict(raw)
            store._endpoints[endpoint.id] = endpoint
        for raw in data.get("items", []):
            item = DiscoveredItem.from_dict(raw)
            store._items[item.id] = item
        for raw in data.get("evidence", []):
            evidence = Evidence.from_dict(raw)
            store._evidence[evidence.id] = evidence
            store._evidence_index[(evidence.url, evidence.content_hash)] = evidence.id
        for raw in data.get("source_pointers", []):
            pointer = SourcePointer.from_dict(raw)
            store._pointers[pointer.id] = pointer
        for raw in data.get("rules", []):
            rule = RegulatoryRule.from_dict(raw)
            store._rules[rule.id] = rule
        for raw in data.get("conflicts", []):
            conflict = RegulatoryConflict.from_dict(raw)
            store._conflicts[conflict.id] = conflict
        for raw in data.get("agent_runs", []):
            run = AgentRun.from_dict(raw)
            store._agent_runs[run.id] = run
        for name, payloads in data.get("queues", {}).items():
            store._queues[name].extend(payloads)
        return store
