"""Rule status gate.

Every change to ``RegulatoryRule.status`` goes through this module. Normal
transitions follow ``ALLOWED_STATUS_TRANSITIONS``; two narrow system
actions allow specific downgrades:

- QUARANTINE_DOWNGRADE: APPROVED/PUBLISHED → PENDING_REVIEW
- ROLLBACK: PUBLISHED → APPROVED

The legacy ``bypass_approval`` flag only permits downgrades and can never
approve or publish a rule.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .audit import AuditLog
from .errors import EntityNotFoundError, InvariantViolationError, StatusTransitionError
from .store import RegulatoryStore
from .types import RegulatoryRule, RiskTier, RuleStatus

logger = logging.getLogger(__name__)


class SystemAction(str, Enum):
    QUARANTINE_DOWNGRADE = "QUARANTINE_DOWNGRADE"
    ROLLBACK = "ROLLBACK"


ALLOWED_STATUS_TRANSITIONS: dict[RuleStatus, tuple[RuleStatus, ...]] = {
    RuleStatus.DRAFT: (RuleStatus.PENDING_REVIEW,),
    RuleStatus.PENDING_REVIEW: (RuleStatus.APPROVED, RuleStatus.REJECTED, RuleStatus.DRAFT),
    RuleStatus.APPROVED: (RuleStatus.PUBLISHED, RuleStatus.PENDING_REVIEW),
    RuleStatus.PUBLISHED: (RuleStatus.DEPRECATED,),
    RuleStatus.DEPRECATED: (),
    RuleStatus.REJECTED: (RuleStatus.DRAFT,),
}

_DOWNGRADE_SOURCES = (RuleStatus.APPROVED, RuleStatus.PUBLISHED)


@dataclass(frozen=True)
class TransitionContext:
    """Who is changing a rule's status and under which authority.

    Attributes:
        source: Name of the calling process, e.g. "arbiter" or "rollback".
            Required for publishing and for any system action.
        system_action: Explicit downgrade permission.
        bypass_approval: Deprecated downgrade flag; prefer ``system_action``.
        actor: User or process id recorded in the audit trail.
    """

    source: str | None = None
    system_action: SystemAction | None = None
    bypass_approval: bool = False
    actor: str = "system"


def _reject(message: str, from_status: RuleStatus, to_status: RuleStatus) -> StatusTransitionError:
    allowed = [s.value for s in ALLOWED_STATUS_TRANSITIONS[from_status]]
    return StatusTransitionError(message, from_status.value, to_status.value, allowed)


def validate_status_transition(
    from_status: RuleStatus,
    to_status: RuleStatus,
    context: TransitionContext | None = None,
) -> None:
    """Check a rule status transition against the gate.

    Raises:
        StatusTransitionError: If the transition is not permitted.
    """
    context = context or TransitionContext()
    if from_status == to_status:
        return

    allowed = ALLOWED_STATUS_TRANSITIONS[from_status]
    if to_status not in allowed:
        if context.system_action is not None and context.source:
            if context.system_action == SystemAction.QUARANTINE_DOWNGRADE:
                if to_status == RuleStatus.PENDING_REVIEW and from_status in _DOWNGRADE_SOURCES:
                    return
                raise _reject(
                    "QUARANTINE_DOWNGRADE only allows APPROVED/PUBLISHED → PENDING_REVIEW",
                    from_status,
                    to_status,
                )
            if context.system_action == SystemAction.ROLLBACK:
                if from_status == RuleStatus.PUBLISHED and to_status == RuleStatus.APPROVED:
                    return
                raise _reject("ROLLBACK only allows PUBLISHED → APPROVED", from_status, to_status)

        if context.bypass_approval and context.source:
            if to_status == RuleStatus.APPROVED:
                if from_status == RuleStatus.PUBLISHED and "rollback" in context.source.lower():
                    logger.warning(
                        "bypass_approval rollback from %s is deprecated; use SystemAction.ROLLBACK",
                        context.source,
                    )
                    return
                raise _reject(
                    "bypass_approval cannot be used for approval. Use approve_rule() instead.",
                    from_status,
                    to_status,
                )
            if to_status == RuleStatus.PUBLISHED:
                raise _reject(
                    "bypass_approval cannot be used for publishing. "
                    "Publishing requires normal approval flow.",
                    from_status,
                    to_status,
                )
            if to_status == RuleStatus.PENDING_REVIEW and from_status in _DOWNGRADE_SOURCES:
                return

        allowed_text = ", ".join(s.value for s in allowed) or "none"
        raise _reject(
            f"Illegal status transition: {from_status.value} → {to_status.value}. "
            f"Allowed transitions from {from_status.value}: [{allowed_text}].",
            from_status,
            to_status,
        )

    if to_status == RuleStatus.PUBLISHED and not context.source:
        raise _reject(
            "Publishing requires explicit source context. Pass TransitionContext(source=...).",
            from_status,
            to_status,
        )


def set_rule_status(
    store: RegulatoryStore,
    rule_id: str,
    to_status: RuleStatus,
    context: TransitionContext | None = None,
    audit: AuditLog | None = None,
    review_notes: str | None = None,
) -> RegulatoryRule:
    """Validate and apply a single rule status change.

    The write is a compare-and-set against the status that was validated,
    so a concurrent change makes this call fail instead of overwriting it.

    Raises:
        StatusTransitionError: If the gate rejects the transition.
        InvariantViolationError: If the rule changed concurrently.
        EntityNotFoundError: If the rule does not exist.
    """
    context = context or TransitionContext()
    rule = store.get_rule(rule_id)
    previous = rule.status

    try:
        validate_status_transition(previous, to_status, context)
    except StatusTransitionError as exc:
        logger.warning(
            "Rejected status change for rule %s (%s → %s, source=%s): %s",
            rule_id,
            previous.value,
            to_status.value,
            context.source,
            exc,
        )
        raise

    if previous == to_status and review_notes is None:
        return rule

    updated = store.compare_and_set_rule_status(rule_id, previous, to_status, review_notes)
    if previous != to_status and audit is not None:
        audit.log_event(
            "RULE_STATUS_CHANGED",
            "RULE",
            rule_id,
            {
                "previous_status": previous.value,
                "new_status": to_status.value,
                "source": context.source,
                "system_action": context.system_action.value if context.system_action else None,
            },
            performed_by=context.actor,
        )
    logger.info(
        "Rule %s status %s → %s (source=%s)",
        rule_id,
        previous.value,
        to_status.value,
        context.source,
    )
    return updated


# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s+")


def _normalize_quote(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


def validate_rule_provenance(store: RegulatoryStore, rule: RegulatoryRule) -> list[str]:
    """Check that each of the rule's quotes appears in its evidence.

    T0/T1 rules require an exact match; T2/T3 rules accept a match after
    whitespace and case normalization.

    Returns:
        Problems found; empty when the rule's provenance is valid.
    """
    if not rule.source_pointer_ids:
        return [f"Rule {rule.id} has no source pointers"]

    exact = rule.risk_tier in (RiskTier.T0, RiskTier.T1)
    pointers = store.get_source_pointers(rule.source_pointer_ids)
    problems: list[str] = []
    if len(pointers) != len(rule.source_pointer_ids):
        problems.append(f"Rule {rule.id} references missing source pointers")

    for pointer in pointers:
        try:
            evidence = store.get_evidence(pointer.evidence_id)
        except EntityNotFoundError:
            problems.append(f"Pointer {pointer.id} references missing evidence {pointer.evidence_id}")
            continue
        haystacks = [evidence.derived_text or ""]
        if evidence.raw_encoding == "utf-8":
            haystacks.append(evidence.raw_content)
        if exact:
            found = any(pointer.exact_quote in text for text in haystacks)
        else:
            quote = _normalize_quote(pointer.exact_quote)
            found = any(quote in _normalize_quote(text) for text in haystacks)
        if not found:
            problems.append(f"Quote of pointer {pointer.id} not found in evidence {evidence.id}")
    return problems


# ---------------------------------------------------------------------------
# Service operations
# ---------------------------------------------------------------------------


@dataclass
class StatusChangeResult:
    rule_id: str
    success: bool
    previous_status: RuleStatus | None
    new_status: RuleStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "success": self.success,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value,
            "error": self.error,
        }


@dataclass
class BulkStatusResult:
    """Outcome of a multi-rule status operation."""

    success: bool = True
    results: list[StatusChangeResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


def approve_rule(
    store: RegulatoryStore,
    rule_id: str,
    approved_by: str,
    source: str,
    audit: AuditLog | None = None,
) -> StatusChangeResult:
    """Approve a PENDING_REVIEW rule after validating its provenance."""
    try:
        rule = store.get_rule(rule_id)
    except EntityNotFoundError:
        return StatusChangeResult(rule_id, False, None, RuleStatus.APPROVED, "Rule not found")

    if rule.status != RuleStatus.PENDING_REVIEW:
        return StatusChangeResult(
            rule_id,
            False,
            rule.status,
            RuleStatus.APPROVED,
            f"Rule must be PENDING_REVIEW to approve, was {rule.status.value}",
        )

    problems = validate_rule_provenance(store, rule)
    if problems:
        return StatusChangeResult(rule_id, False, rule.status, RuleStatus.APPROVED, "; ".join(problems))

    try:
        set_rule_status(
            store,
            rule_id,
            RuleStatus.APPROVED,
            TransitionContext(source=source, actor=approved_by),
            audit=audit,
        )
    except InvariantViolationError as exc:
        return StatusChangeResult(rule_id, False, rule.status, RuleStatus.APPROVED, str(exc))
    return StatusChangeResult(rule_id, True, rule.status, RuleStatus.APPROVED)


def publish_rules(
    store: RegulatoryStore,
    rule_ids: Iterable[str],
    source: str,
    audit: AuditLog | None = None,
    actor: str = "system",
) -> BulkStatusResult:
    """Publish APPROVED rules, all or nothing.

    Every rule is checked (existence, APPROVED status, provenance) before any
    is published; a single failure publishes none of them.
    """
    result = BulkStatusResult()
    checked: list[RegulatoryRule] = []

    for rule_id in rule_ids:
        try:
            rule = store.get_rule(rule_id)
        except EntityNotFoundError:
            result.results.append(
                StatusChangeResult(rule_id, False, None, RuleStatus.PUBLISHED, "Rule not found")
            )
            result.errors.append(f"Rule {rule_id} not found")
            continue
        if rule.status != RuleStatus.APPROVED:
            message = f"Rule must be APPROVED to publish, was {rule.status.value}"
            result.results.append(
                StatusChangeResult(rule_id, False, rule.status, RuleStatus.PUBLISHED, message)
            )
            result.errors.append(f"Rule {rule_id} ({rule.concept_slug}) is {rule.status.value}, not APPROVED")
            continue
        problems = validate_rule_provenance(store, rule)
        if problems:
            result.results.append(
                StatusChangeResult(rule_id, False, rule.status, RuleStatus.PUBLISHED, "; ".join(problems))
            )
            result.errors.extend(problems)
            continue
        checked.append(rule)

    if result.errors:
        result.success = False
        logger.warning("Publishing aborted, %d rule(s) failed checks: %s", len(result.errors), result.errors)
        return result

    context = TransitionContext(source=source, actor=actor)
    for rule in checked:
        try:
            set_rule_status(store, rule.id, RuleStatus.PUBLISHED, context, audit=audit)
        except InvariantViolationError as exc:
            result.success = False
            result.errors.append(f"Rule {rule.id}: {exc}")
            result.results.append(
                StatusChangeResult(rule.id, False, rule.status, RuleStatus.PUBLISHED, str(exc))
            )
            continue
        result.results.append(StatusChangeResult(rule.id, True, rule.status, RuleStatus.PUBLISHED))
    return result


def _apply_each(
    store: RegulatoryStore,
    rule_ids: Iterable[str],
    to_status: RuleStatus,
    context: TransitionContext,
    audit: AuditLog | None,
    review_notes: str | None = None,
) -> BulkStatusResult:
    result = BulkStatusResult()
    for rule_id in rule_ids:
        previous: RuleStatus | None = None
        try:
            previous = store.get_rule(rule_id).status
            set_rule_status(store, rule_id, to_status, context, audit=audit, review_notes=review_notes)
        except (InvariantViolationError, EntityNotFoundError) as exc:
            result.success = False
            result.errors.append(f"Rule {rule_id}: {exc}")
            result.results.append(StatusChangeResult(rule_id, False, previous, to_status, str(exc)))
            continue
        result.results.append(StatusChangeResult(rule_id, True, previous, to_status))
    return result


def revert_rules(
    store: RegulatoryStore,
    rule_ids: Iterable[str],
    source: str,
    audit: AuditLog | None = None,
) -> BulkStatusResult:
    """Roll PUBLISHED rules back to APPROVED."""
    context = TransitionContext(source=source, system_action=SystemAction.ROLLBACK)
    return _apply_each(store, rule_ids, RuleStatus.APPROVED, context, audit)


def quarantine_rules(
    store: RegulatoryStore,
    rule_ids: Iterable[str],
    source: str,
    reason: str,
    audit: AuditLog | None = None,
) -> BulkStatusResult:
    """Send APPROVED/PUBLISHED rules back to review."""
    context = TransitionContext(source=source, system_action=SystemAction.QUARANTINE_DOWNGRADE)
    notes = json.dumps({"quarantine_reason": reason, "source": source})
    return _apply_each(store, rule_ids, RuleStatus.PENDING_REVIEW, context, audit, review_notes=notes)
