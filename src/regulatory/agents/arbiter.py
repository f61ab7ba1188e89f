"""Arbiter: resolve OPEN conflicts between rules.

Resolution combines an LLM arbitration call with deterministic business
rules that can only make the outcome more conservative (escalate), never
less. The losing rule of a resolved conflict is retired through the status
gate; escalated conflicts raise a categorized human review request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Sequence

from src.config import get_config
from src.parsing.urls import extract_domain
from src.regulatory.errors import EntityNotFoundError, InvariantViolationError
from src.regulatory.review import request_conflict_review
from src.regulatory.status import TransitionContext, set_rule_status
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import (
    AgentType,
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    authority_rank,
    utc_now,
)

from .runner import AgentContext, run_agent
from .schemas import ARBITER_OUTPUT_SCHEMA

logger = logging.getLogger(__name__)

ARBITER_SOURCE = "arbiter"


class ArbiterResolution(str, Enum):
    RULE_A_PREVAILS = "RULE_A_PREVAILS"
    RULE_B_PREVAILS = "RULE_B_PREVAILS"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"


# Status steps that take a losing rule out of circulation
_RETIREMENT_PATHS: dict[RuleStatus, tuple[RuleStatus, ...]] = {
    RuleStatus.PUBLISHED: (RuleStatus.DEPRECATED,),
    RuleStatus.APPROVED: (RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED),
    RuleStatus.PENDING_REVIEW: (RuleStatus.REJECTED,),
    RuleStatus.DRAFT: (RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED),
    RuleStatus.DEPRECATED: (),
    RuleStatus.REJECTED: (),
}

_ESCALATION_MESSAGES = {
    "model_requested": "Arbiter model requested human review",
    "low_confidence": "Arbitration confidence below threshold",
    "both_t0": "Both rules are T0 (critical); automatic resolution is not allowed",
    "equal_authority": "Equal authority levels; hierarchy cannot break the tie",
    "same_effective_date": "Identical effective dates; temporal strategy cannot break the tie",
    "low_rule_confidence": "A conflicting rule has low extraction confidence",
    "unknown_winner": "Arbiter chose an item outside the conflict",
}


@dataclass
class ArbiterResult:
    success: bool
    conflict_id: str
    resolution: ArbiterResolution | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ArbiterBatchResult:
    processed: int = 0
    resolved: int = 0
    escalated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "resolved": self.resolved,
            "escalated": self.escalated,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class PrecedenceResult:
    winning_rule_id: str
    reasoning: str
    overridden_rule_ids: list[str]


def check_escalation_criteria(
    rule_a: RegulatoryRule,
    rule_b: RegulatoryRule,
    arbitration: dict[str, Any],
    confidence_threshold: float = 0.8,
    rule_confidence_threshold: float = 0.85,
) -> str | None:
    """Business-rule escalation check applied regardless of the model's advice.

    Returns:
        The escalation reason code, or None if automatic resolution may stand.
    """
    strategy = arbitration["resolution"]["resolution_strategy"]
    if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
        return "both_t0"
    if arbitration["confidence"] < confidence_threshold:
        return "low_confidence"
    if authority_rank(rule_a.authority_level) == authority_rank(rule_b.authority_level) and strategy == "hierarchy":
        return "equal_authority"
    if rule_a.effective_from == rule_b.effective_from and strategy == "temporal":
        return "same_effective_date"
    if rule_a.confidence < rule_confidence_threshold or rule_b.confidence < rule_confidence_threshold:
        return "low_rule_confidence"
    return None


def build_rule_claim(store: RegulatoryStore, rule: RegulatoryRule) -> str:
    """Human-readable description of one side of a conflict."""
    sources = []
    for pointer in store.get_source_pointers(rule.source_pointer_ids):
        try:
            origin = extract_domain(store.get_evidence(pointer.evidence_id).url)
        except EntityNotFoundError:
            origin = "unknown"
        sources.append(f'"{pointer.exact_quote}" (from {origin}, confidence: {pointer.confidence})')

    effective_from = rule.effective_from.isoformat() if rule.effective_from else "unknown"
    effective_until = rule.effective_until.isoformat() if rule.effective_until else "indefinite"
    lines = [
        f"Rule: {rule.title or rule.concept_slug}",
        f"Value: {rule.value} ({rule.value_type})",
        f"Authority Level: {rule.authority_level.value}",
        f"Risk Tier: {rule.risk_tier.value}",
        f"Effective: {effective_from} to {effective_until}",
        f"Source Evidence: {'; '.join(sources) or 'none'}",
    ]
    return "\n".join(lines)


def _handle_source_conflict(ctx: AgentContext, conflict: RegulatoryConflict) -> ArbiterResult:
    store = ctx.store
    pointers = store.get_source_pointers(conflict.source_pointer_ids)

    if len(pointers) < 2:
        store.update_conflict(
            conflict.id,
            status=ConflictStatus.RESOLVED,
            resolution={
                "strategy": "auto_resolved",
                "rationale_hr": "Nedovoljno pokazivača za sukob",
                "rationale_en": "Insufficient pointers for conflict",
            },
            resolved_at=utc_now(),
        )
        ctx.audit.log_event(
            "CONFLICT_RESOLVED",
            "CONFLICT",
            conflict.id,
            {"conflict_type": conflict.conflict_type.value, "strategy": "auto_resolved", "pointer_count": len(pointers)},
        )
        logger.info("Auto-resolved source conflict %s with %d pointer(s)", conflict.id, len(pointers))
        return ArbiterResult(success=True, conflict_id=conflict.id, resolution=None)

    reason = (
        "SOURCE_CONFLICT detected - conflicting values in source data require human "
        "review to determine correct value"
    )
    store.update_conflict(
        conflict.id,
        status=ConflictStatus.ESCALATED,
        requires_human_review=True,
        human_review_reason=reason,
        resolution={
            "strategy": "human_review_required",
            "rationale_hr": "Pronađene su proturječne vrijednosti u izvornim podacima",
            "rationale_en": "Conflicting values found in source data",
            "source_pointer_ids": [p.id for p in pointers],
            "pointer_summary": [
                {"id": p.id, "value": p.extracted_value, "confidence": p.confidence} for p in pointers
            ],
        },
    )
    request_conflict_review(
        ctx.reviews,
        conflict.id,
        ConflictType.SOURCE_CONFLICT,
        escalation_reason="source_data_conflict",
    )
    ctx.audit.log_event(
        "CONFLICT_ESCALATED",
        "CONFLICT",
        conflict.id,
        {
            "conflict_type": ConflictType.SOURCE_CONFLICT.value,
            "pointer_count": len(pointers),
            "reason": "Conflicting source pointer values require human review",
        },
    )
    return ArbiterResult(
        success=True,
        conflict_id=conflict.id,
        resolution=ArbiterResolution.ESCALATE_TO_HUMAN,
    )


def retire_losing_rule(
    ctx: AgentContext,
    loser: RegulatoryRule,
    winner_id: str,
    conflict_id: str,
    resolution: ArbiterResolution,
    rationale: str,
) -> RegulatoryRule:
    """Take the losing rule out of circulation through the status gate.

    PUBLISHED rules become DEPRECATED. Rules that were never published are
    REJECTED (DRAFT and APPROVED rules pass through PENDING_REVIEW first).
    The structured note is stored in ``review_notes`` either way.
    """
    side = "A" if resolution == ArbiterResolution.RULE_A_PREVAILS else "B"
    notes = json.dumps(
        {
            "deprecated_reason": f"Conflict resolution - Rule {side} prevails",
            "conflict_id": conflict_id,
            "superseded_by": winner_id,
            "arbiter_rationale": rationale,
        },
        ensure_ascii=False,
    )
    context = TransitionContext(source=ARBITER_SOURCE, actor=ARBITER_SOURCE)
    path = _RETIREMENT_PATHS[loser.status]
    if not path:
        return ctx.store.update_rule(loser.id, review_notes=notes)

    updated = loser
    for step in path:
        updated = set_rule_status(ctx.store, loser.id, step, context, audit=ctx.audit, review_notes=notes)
    return updated


def arbitrate_conflict(conflict_id: str, ctx: AgentContext) -> ArbiterResult:
    """Resolve or escalate one OPEN conflict.

    A failed model call leaves the conflict OPEN and returns an unsuccessful
    result.
    """
    store = ctx.store
    try:
        conflict = store.get_conflict(conflict_id)
    except EntityNotFoundError:
        return ArbiterResult(success=False, conflict_id=conflict_id, error=f"Conflict not found: {conflict_id}")

    if conflict.status != ConflictStatus.OPEN:
        return ArbiterResult(
            success=False,
            conflict_id=conflict_id,
            error=f"Conflict {conflict_id} is {conflict.status.value}, not OPEN",
        )

    if conflict.conflict_type == ConflictType.SOURCE_CONFLICT:
        return _handle_source_conflict(ctx, conflict)

    try:
        if not conflict.item_a_id or not conflict.item_b_id:
            raise EntityNotFoundError("RegulatoryRule", conflict.item_a_id or conflict.item_b_id or "")
        rule_a = store.get_rule(conflict.item_a_id)
        rule_b = store.get_rule(conflict.item_b_id)
    except EntityNotFoundError:
        return ArbiterResult(
            success=False,
            conflict_id=conflict_id,
            error=f"One or both conflicting rules not found for conflict: {conflict_id}",
        )

    payload = {
        "conflict_id": conflict.id,
        "conflict_type": conflict.conflict_type.value,
        "description": conflict.description,
        "conflicting_items": [
            {"item_id": rule_a.id, "item_type": "rule", "claim": build_rule_claim(store, rule_a)},
            {"item_id": rule_b.id, "item_type": "rule", "claim": build_rule_claim(store, rule_b)},
        ],
    }
    result = run_agent(
        ctx,
        AgentType.ARBITER,
        payload,
        output_schema=ARBITER_OUTPUT_SCHEMA,
        temperature=0.1,
        max_retries=3,
        conflict_id=conflict.id,
    )
    if not result.success or result.output is None:
        logger.error("Arbitration failed for conflict %s: %s", conflict.id, result.error)
        return ArbiterResult(success=False, conflict_id=conflict.id, error=result.error)

    arbitration = result.output["arbitration"]
    winning_id = arbitration["resolution"]["winning_item_id"]
    escalation_reason: str | None = None

    if arbitration["requires_human_review"]:
        resolution = ArbiterResolution.ESCALATE_TO_HUMAN
        escalation_reason = "model_requested"
    elif winning_id == rule_a.id:
        resolution = ArbiterResolution.RULE_A_PREVAILS
    elif winning_id == rule_b.id:
        resolution = ArbiterResolution.RULE_B_PREVAILS
    else:
        resolution = ArbiterResolution.ESCALATE_TO_HUMAN
        escalation_reason = "unknown_winner"

    config = get_config()
    business_reason = check_escalation_criteria(
        rule_a,
        rule_b,
        arbitration,
        confidence_threshold=config.arbiter_confidence_threshold,
        rule_confidence_threshold=config.rule_confidence_threshold,
    )
    if business_reason is not None:
        resolution = ArbiterResolution.ESCALATE_TO_HUMAN
        escalation_reason = business_reason

    escalated = resolution == ArbiterResolution.ESCALATE_TO_HUMAN
    human_review_reason = None
    if escalated:
        human_review_reason = arbitration.get("human_review_reason") or _ESCALATION_MESSAGES[escalation_reason]
        if business_reason is not None and arbitration.get("human_review_reason"):
            human_review_reason = f"{_ESCALATION_MESSAGES[business_reason]}; {human_review_reason}"

    store.update_conflict(
        conflict.id,
        status=ConflictStatus.ESCALATED if escalated else ConflictStatus.RESOLVED,
        resolution={
            "winning_item_id": winning_id,
            "strategy": arbitration["resolution"]["resolution_strategy"],
            "rationale_hr": arbitration["resolution"]["rationale_hr"],
            "rationale_en": arbitration["resolution"]["rationale_en"],
            "resolution": resolution.value,
        },
        confidence=arbitration["confidence"],
        requires_human_review=escalated,
        human_review_reason=human_review_reason,
        resolved_at=None if escalated else utc_now(),
    )

    if escalated:
        request_conflict_review(
            ctx.reviews,
            conflict.id,
            conflict.conflict_type,
            rule_a_tier=rule_a.risk_tier.value,
            rule_b_tier=rule_b.risk_tier.value,
            confidence=arbitration["confidence"],
            escalation_reason=escalation_reason,
        )

    ctx.audit.log_event(
        "CONFLICT_ESCALATED" if escalated else "CONFLICT_RESOLVED",
        "CONFLICT",
        conflict.id,
        {
            "resolution": resolution.value,
            "strategy": arbitration["resolution"]["resolution_strategy"],
            "confidence": arbitration["confidence"],
            "escalation_reason": escalation_reason,
        },
        performed_by=ARBITER_SOURCE,
    )

    if not escalated:
        winner, loser = (rule_a, rule_b) if resolution == ArbiterResolution.RULE_A_PREVAILS else (rule_b, rule_a)
        try:
            retire_losing_rule(
                ctx,
                store.get_rule(loser.id),
                winner.id,
                conflict.id,
                resolution,
                arbitration["resolution"]["rationale_hr"],
            )
        except InvariantViolationError as exc:
            logger.error(
                "Conflict %s resolved but losing rule %s could not be retired: %s",
                conflict.id,
                loser.id,
                exc,
            )
            return ArbiterResult(
                success=True,
                conflict_id=conflict.id,
                resolution=resolution,
                output=result.output,
                error=str(exc),
            )

    logger.info("Conflict %s: %s", conflict.id, resolution.value)
    return ArbiterResult(success=True, conflict_id=conflict.id, resolution=resolution, output=result.output)


def run_arbiter_batch(ctx: AgentContext, limit: int = 10) -> ArbiterBatchResult:
    """Arbitrate up to ``limit`` OPEN conflicts, oldest first."""
    summary = ArbiterBatchResult()

    for conflict in ctx.store.list_conflicts(status=ConflictStatus.OPEN, limit=limit):
        logger.info("Processing conflict: %s", conflict.id)
        summary.processed += 1
        try:
            result = arbitrate_conflict(conflict.id, ctx)
        except Exception as exc:
            logger.exception("Arbitration crashed for conflict %s", conflict.id)
            summary.failed += 1
            summary.errors.append(f"{conflict.id}: {exc}")
            continue

        if not result.success:
            summary.failed += 1
            summary.errors.append(f"{conflict.id}: {result.error or 'Unknown error'}")
        elif result.resolution == ArbiterResolution.ESCALATE_TO_HUMAN:
            summary.escalated += 1
        else:
            summary.resolved += 1

    logger.info(
        "Batch complete: %d processed, %d resolved, %d escalated, %d failed",
        summary.processed,
        summary.resolved,
        summary.escalated,
        summary.failed,
    )
    return summary


def resolve_rule_precedence(store: RegulatoryStore, rule_ids: Sequence[str]) -> PrecedenceResult:
    """Pick the rule that applies when several rules match a concept.

    Order: lex specialis via the OVERRIDES graph, then strictly higher
    authority, then the latest effective date, then lexicographic id.

    Raises:
        ValueError: If ``rule_ids`` is empty.
        EntityNotFoundError: If a rule does not exist.
    """
    if not rule_ids:
        raise ValueError("No rules to resolve")
    if len(rule_ids) == 1:
        return PrecedenceResult(rule_ids[0], "Single rule matched", [])

    rules = [store.get_rule(rule_id) for rule_id in rule_ids]
    ids = {rule.id for rule in rules}

    for rule in rules:
        overridden_by_candidate = any(rule.id in other.overrides for other in rules if other.id != rule.id)
        if overridden_by_candidate:
            continue
        overridden = [other.id for other in rules if other.id != rule.id and other.id in rule.overrides]
        if overridden:
            return PrecedenceResult(
                rule.id,
                f"Lex specialis: Rule {rule.concept_slug} overrides {len(overridden)} general rule(s)",
                overridden,
            )

    by_authority = sorted(rules, key=lambda r: authority_rank(r.authority_level))
    top_rank = authority_rank(by_authority[0].authority_level)
    if top_rank < authority_rank(by_authority[1].authority_level):
        return PrecedenceResult(
            by_authority[0].id,
            f"Authority: {by_authority[0].authority_level.value} takes precedence over "
            f"{by_authority[1].authority_level.value}",
            [r.id for r in by_authority[1:]],
        )

    tied = [r for r in rules if authority_rank(r.authority_level) == top_rank]
    latest = max(r.effective_from or date.min for r in tied)
    newest = sorted((r for r in tied if (r.effective_from or date.min) == latest), key=lambda r: r.id)
    winner = newest[0]
    if len(newest) > 1:
        reasoning = (
            f"Same effective date ({latest.isoformat()}), using deterministic id ordering "
            "as final tiebreaker"
        )
    else:
        reasoning = f"Recency: Rule effective from {latest.isoformat()} is most recent"
    return PrecedenceResult(winner.id, reasoning, sorted(ids - {winner.id}))
