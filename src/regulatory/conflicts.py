"""Structural conflict detection between rules of the same concept.

These checks are deterministic. A newly extracted rule is compared against
every live rule sharing its ``concept_slug``:

1. VALUE_MISMATCH: effective windows overlap and the values differ
2. AUTHORITY_SUPERSEDE: effective windows overlap and the new rule comes
   from a strictly higher authority

Rules with disjoint effective windows never conflict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable

from .errors import DuplicateConflictError
from .store import RegulatoryStore
from .types import (
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
    authority_rank,
    new_id,
)

logger = logging.getLogger(__name__)

LIVE_RULE_STATUSES = (
    RuleStatus.PUBLISHED,
    RuleStatus.APPROVED,
    RuleStatus.PENDING_REVIEW,
    RuleStatus.DRAFT,
)


@dataclass(frozen=True)
class ConflictSeed:
    """A detected conflict that has not been persisted yet."""

    conflict_type: ConflictType
    existing_rule_id: str
    new_rule_id: str
    reason: str


def windows_overlap(
    start_a: date | None,
    end_a: date | None,
    start_b: date | None,
    end_b: date | None,
) -> bool:
    """Whether two inclusive date windows overlap. None means open-ended."""
    s1 = start_a or date.min
    e1 = end_a or date.max
    s2 = start_b or date.min
    e2 = end_b or date.max
    return s1 <= e2 and s2 <= e1


def normalize_value(value: str) -> str | Decimal:
    """Canonical form of a rule value for comparison.

    "25%", " 25 " and "25.00" all normalize to Decimal("25").
    """
    text = value.strip().lower()
    if text.endswith("%"):
        text = text[:-1].strip()
    if text.count(",") == 1 and "." not in text:
        text = text.replace(",", ".")  # Croatian decimal comma
    try:
        return Decimal(text)
    except InvalidOperation:
        return text


def values_differ(value_a: str, value_b: str) -> bool:
    a = normalize_value(value_a)
    b = normalize_value(value_b)
    if isinstance(a, Decimal) and isinstance(b, Decimal):
        return a != b
    return str(a) != str(b)


def detect_structural_conflicts(
    store: RegulatoryStore,
    rule: RegulatoryRule,
) -> list[ConflictSeed]:
    """Compare ``rule`` against live rules sharing its concept."""
    seeds: list[ConflictSeed] = []
    candidates = store.list_rules(concept_slug=rule.concept_slug, statuses=LIVE_RULE_STATUSES)

    for existing in candidates:
        if existing.id == rule.id:
            continue
        if not windows_overlap(
            existing.effective_from,
            existing.effective_until,
            rule.effective_from,
            rule.effective_until,
        ):
            continue

        if values_differ(existing.value, rule.value):
            seeds.append(
                ConflictSeed(
                    conflict_type=ConflictType.VALUE_MISMATCH,
                    existing_rule_id=existing.id,
                    new_rule_id=rule.id,
                    reason=(
                        f'Same concept "{rule.concept_slug}" with different values: '
                        f'"{existing.value}" vs "{rule.value}" during overlapping period'
                    ),
                )
            )

        if authority_rank(rule.authority_level) < authority_rank(existing.authority_level):
            seeds.append(
                ConflictSeed(
                    conflict_type=ConflictType.AUTHORITY_SUPERSEDE,
                    existing_rule_id=existing.id,
                    new_rule_id=rule.id,
                    reason=(
                        f"New rule from higher authority ({rule.authority_level.value}) "
                        f"may supersede existing ({existing.authority_level.value})"
                    ),
                )
            )

    if seeds:
        logger.info("Detected %d structural conflict(s) for rule %s", len(seeds), rule.id)
    return seeds


def seed_conflicts(store: RegulatoryStore, seeds: Iterable[ConflictSeed]) -> int:
    """Persist conflict seeds, skipping pairs that already have an OPEN conflict.

    Returns:
        Number of conflicts created.
    """
    created = 0
    for seed in seeds:
        if store.find_open_conflict(seed.existing_rule_id, seed.new_rule_id) is not None:
            continue
        conflict = RegulatoryConflict(
            id=new_id("conflict"),
            conflict_type=seed.conflict_type,
            item_a_id=seed.existing_rule_id,
            item_b_id=seed.new_rule_id,
            status=ConflictStatus.OPEN,
            description=seed.reason,
        )
        try:
            store.insert_conflict(conflict)
        except DuplicateConflictError as exc:
            logger.debug("Conflict already exists: %s", exc)
            continue
        created += 1
        logger.info("Created %s conflict %s: %s", seed.conflict_type.value, conflict.id, seed.reason)
    return created
