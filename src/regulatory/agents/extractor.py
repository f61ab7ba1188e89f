"""Extraction stage: turn evidence text into draft rules.

Consumes the ``extract`` queue filled by the fetcher. Each extraction is
anchored to a SourcePointer quoting the evidence. Disagreeing extractions
for the same concept within one document become a SOURCE_CONFLICT instead
of a rule.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.config import get_config
from src.regulatory.conflicts import detect_structural_conflicts, normalize_value, seed_conflicts
from src.regulatory.errors import EntityNotFoundError
from src.regulatory.pipeline.scheduler import transition_item
from src.regulatory.review import ReviewReason
from src.regulatory.store import EXTRACT_QUEUE
from src.regulatory.types import (
    AgentType,
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    Evidence,
    ItemStatus,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    SourcePointer,
    new_id,
)

from .runner import AgentContext, run_agent
from .schemas import EXTRACTOR_OUTPUT_SCHEMA

logger = logging.getLogger(__name__)

# Evidence text beyond this is not sent to the model
MAX_EXTRACTION_CHARS = 30000

# Failed payloads go back on the queue until this many attempts
MAX_EXTRACTION_ATTEMPTS = 3


@dataclass
class ExtractionResult:
    processed: int = 0
    rules_created: int = 0
    pointers_created: int = 0
    conflicts_created: int = 0
    failed: int = 0
    requeued: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "rules_created": self.rules_created,
            "pointers_created": self.pointers_created,
            "conflicts_created": self.conflicts_created,
            "failed": self.failed,
            "requeued": self.requeued,
            "errors": list(self.errors),
        }


def _parse_date(value: str | None, field_name: str, concept_slug: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.warning("Dropping invalid %s %r for %s", field_name, value, concept_slug)
        return None


def _group_by_concept(extractions: list[dict[str, Any]]) -> "OrderedDict[str, list[dict[str, Any]]]":
    groups: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    for extraction in extractions:
        groups.setdefault(extraction["concept_slug"], []).append(extraction)
    return groups


def _create_rule(
    ctx: AgentContext,
    extraction: dict[str, Any],
    pointer_ids: list[str],
) -> RegulatoryRule:
    slug = extraction["concept_slug"]
    rule = RegulatoryRule(
        id=new_id("rule"),
        concept_slug=slug,
        value=extraction["extracted_value"],
        value_type=extraction["value_type"],
        authority_level=AuthorityLevel(extraction.get("authority_level") or AuthorityLevel.GUIDANCE.value),
        risk_tier=RiskTier(extraction.get("risk_tier") or RiskTier.T2.value),
        effective_from=_parse_date(extraction.get("effective_from"), "effective_from", slug),
        effective_until=_parse_date(extraction.get("effective_until"), "effective_until", slug),
        confidence=float(extraction["confidence"]),
        status=RuleStatus.DRAFT,
        title=extraction.get("title") or slug,
        source_pointer_ids=pointer_ids,
    )
    ctx.store.add_rule(rule)
    ctx.audit.log_event(
        "RULE_CREATED",
        "RULE",
        rule.id,
        {"concept_slug": slug, "value": rule.value, "pointer_count": len(pointer_ids)},
        performed_by="extractor",
    )
    return rule


def extract_from_evidence(ctx: AgentContext, evidence: Evidence, result: ExtractionResult) -> bool:
    """Run the extractor on one evidence record, updating ``result`` in place.

    Returns:
        True if the agent produced a valid answer.
    """
    store = ctx.store
    payload = {
        "evidence_id": evidence.id,
        "url": evidence.url,
        "content": (evidence.derived_text or "")[:MAX_EXTRACTION_CHARS],
    }
    agent = run_agent(
        ctx,
        AgentType.EXTRACTOR,
        payload,
        output_schema=EXTRACTOR_OUTPUT_SCHEMA,
        evidence_id=evidence.id,
    )
    if not agent.success or agent.output is None:
        result.failed += 1
        result.errors.append(f"{evidence.id}: {agent.error or 'Unknown error'}")
        return False

    threshold = get_config().rule_confidence_threshold
    for slug, group in _group_by_concept(agent.output["extractions"]).items():
        pointers = []
        for extraction in group:
            pointer = SourcePointer(
                id=new_id("ptr"),
                evidence_id=evidence.id,
                exact_quote=extraction["exact_quote"],
                extracted_value=extraction["extracted_value"],
                confidence=float(extraction["confidence"]),
            )
            store.add_source_pointer(pointer)
            pointers.append(pointer)
        result.pointers_created += len(pointers)

        distinct_values = {normalize_value(e["extracted_value"]) for e in group}
        if len(distinct_values) > 1:
            values = ", ".join(sorted({e["extracted_value"] for e in group}))
            conflict = RegulatoryConflict(
                id=new_id("conflict"),
                conflict_type=ConflictType.SOURCE_CONFLICT,
                source_pointer_ids=[p.id for p in pointers],
                status=ConflictStatus.OPEN,
                description=f'Conflicting values for "{slug}" in {evidence.url}: {values}',
            )
            store.insert_conflict(conflict)
            result.conflicts_created += 1
            logger.info("Source conflict %s for %s (%s)", conflict.id, slug, values)
            continue

        best = max(group, key=lambda e: e["confidence"])
        rule = _create_rule(ctx, best, [p.id for p in pointers])
        result.rules_created += 1

        if rule.confidence < threshold:
            ctx.reviews.request_review(
                entity_type="RULE",
                entity_id=rule.id,
                reason=ReviewReason.LOW_EXTRACTION_CONFIDENCE,
                context={"concept_slug": slug, "confidence": rule.confidence},
                requested_by="extractor",
            )

        result.conflicts_created += seed_conflicts(store, detect_structural_conflicts(store, rule))

    return True


def process_extraction_queue(ctx: AgentContext, limit: int = 10) -> ExtractionResult:
    """Extract rules from up to ``limit`` queued evidence records.

    A payload whose extraction fails is queued again with an ``attempts``
    count, up to MAX_EXTRACTION_ATTEMPTS. Retries are queued after the batch
    so one bad record is tried at most once per call. An item reaches
    PROCESSED only after a successful extraction, which also records the
    extracted content hash on the item.
    """
    store = ctx.store
    result = ExtractionResult()
    retries: list[dict] = []

    for _ in range(limit):
        payload = store.dequeue(EXTRACT_QUEUE)
        if payload is None:
            break
        result.processed += 1
        evidence_id = payload.get("evidence_id", "")

        try:
            evidence = store.get_evidence(evidence_id)
        except EntityNotFoundError as exc:
            result.failed += 1
            result.errors.append(f"{evidence_id}: {exc}")
            continue
        if not evidence.derived_text:
            result.failed += 1
            result.errors.append(f"{evidence_id}: no derived text")
            continue

        if not extract_from_evidence(ctx, evidence, result):
            attempts = int(payload.get("attempts", 0)) + 1
            if attempts < MAX_EXTRACTION_ATTEMPTS:
                retries.append({**payload, "attempts": attempts})
            else:
                logger.error(
                    "Giving up on evidence %s after %d extraction attempts; "
                    "it is queued again on the next fetch",
                    evidence_id,
                    attempts,
                )
            continue

        item_id = payload.get("item_id")
        if item_id:
            try:
                item = store.get_item(item_id)
            except EntityNotFoundError:
                logger.warning("Extracted evidence %s for unknown item %s", evidence_id, item_id)
                continue
            if item.status == ItemStatus.FETCHED:
                transition_item(store, item, ItemStatus.PROCESSED, processed_hash=evidence.content_hash)
            elif item.content_hash == evidence.content_hash:
                store.update_item(item.id, processed_hash=evidence.content_hash)

    for payload in retries:
        store.enqueue(EXTRACT_QUEUE, payload)
    result.requeued = len(retries)

    logger.info(
        "Extraction complete: %d processed, %d rules, %d conflicts, %d failed, %d requeued",
        result.processed,
        result.rules_created,
        result.conflicts_created,
        result.failed,
        result.requeued,
    )
    return result
