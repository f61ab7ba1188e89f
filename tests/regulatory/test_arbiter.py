"""Tests for src/regulatory/agents/arbiter.py."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from src.integrations.models import ChatCompletion, ModelsClientError
from src.regulatory.agents.arbiter import (
    ArbiterResolution,
    arbitrate_conflict,
    check_escalation_criteria,
    resolve_rule_precedence,
    run_arbiter_batch,
)
from src.regulatory.agents.runner import AgentContext
from src.regulatory.review import ReviewReason
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import (
    AgentRunStatus,
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    SourcePointer,
)


def arbitration(
    winner: str,
    strategy: str = "hierarchy",
    confidence: float = 0.9,
    requires_human_review: bool = False,
    human_review_reason: str | None = None,
) -> dict:
    return {
        "arbitration": {
            "resolution": {
                "winning_item_id": winner,
                "resolution_strategy": strategy,
                "rationale_hr": "Zakon ima prednost pred uputom",
                "rationale_en": "The law takes precedence over guidance",
            },
            "confidence": confidence,
            "requires_human_review": requires_human_review,
            "human_review_reason": human_review_reason,
        }
    }


def completion(payload: dict) -> ChatCompletion:
    return ChatCompletion(id="cmpl", model="gpt-4o-mini", content=json.dumps(payload))


def make_rule(rule_id: str, **kwargs) -> RegulatoryRule:
    kwargs.setdefault("concept_slug", "pdv-standardna-stopa")
    kwargs.setdefault("value", "25%")
    kwargs.setdefault("effective_from", date(2024, 1, 1))
    kwargs.setdefault("confidence", 0.95)
    kwargs.setdefault("risk_tier", RiskTier.T1)
    return RegulatoryRule(id=rule_id, **kwargs)


@pytest.fixture
def store() -> RegulatoryStore:
    return RegulatoryStore()


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def ctx(store, client) -> AgentContext:
    return AgentContext(store=store, client=client, sleep=lambda _: None)


def add_conflict(store: RegulatoryStore, a: RegulatoryRule, b: RegulatoryRule, conflict_id: str = "c1") -> str:
    store.add_rule(a)
    store.add_rule(b)
    store.insert_conflict(RegulatoryConflict(
        id=conflict_id,
        conflict_type=ConflictType.VALUE_MISMATCH,
        item_a_id=a.id,
        item_b_id=b.id,
        description="Different values",
    ))
    return conflict_id


class TestCheckEscalationCriteria:
    """Tests for the deterministic escalation rules."""

    def test_both_t0_first(self) -> None:
        """Test the both-T0 check comes first."""
        a = make_rule("a", risk_tier=RiskTier.T0)
        b = make_rule("b", risk_tier=RiskTier.T0)

        assert check_escalation_criteria(a, b, arbitration("a", confidence=0.99)["arbitration"]) == "both_t0"

    def test_low_confidence(self) -> None:
        """Test low confidence."""
        a, b = make_rule("a"), make_rule("b")

        assert check_escalation_criteria(a, b, arbitration("a", confidence=0.5)["arbitration"]) == "low_confidence"

    def test_equal_authority_only_for_hierarchy(self) -> None:
        """Test equal authority only for hierarchy."""
        a, b = make_rule("a"), make_rule("b", effective_from=date(2025, 1, 1))

        assert check_escalation_criteria(a, b, arbitration("a")["arbitration"]) == "equal_authority"
        assert check_escalation_criteria(a, b, arbitration("b", strategy="temporal")["arbitration"]) is None

    def test_same_effective_date_for_temporal(self) -> None:
        """Test same effective date for temporal."""
        a, b = make_rule("a"), make_rule("b")

        assert check_escalation_criteria(a, b, arbitration("a", strategy="temporal")["arbitration"]) == "same_effective_date"

    def test_low_rule_confidence(self) -> None:
        """Test low rule confidence."""
        a = make_rule("a", authority_level=AuthorityLevel.LAW)
        b = make_rule("b", confidence=0.6)

        assert check_escalation_criteria(a, b, arbitration("a")["arbitration"]) == "low_rule_confidence"

    def test_clear_case_passes(self) -> None:
        """Test clear case passes."""
        a = make_rule("a", authority_level=AuthorityLevel.LAW)
        b = make_rule("b")

        assert check_escalation_criteria(a, b, arbitration("a")["arbitration"]) is None


class TestArbitrateConflict:
    """Tests for arbitrate_conflict."""

    def test_both_t0_escalates_despite_confident_model(self, ctx, store, client) -> None:
        """Test two T0 rules escalate despite a confident model."""
        conflict_id = add_conflict(
            store,
            make_rule("a", risk_tier=RiskTier.T0, authority_level=AuthorityLevel.LAW),
            make_rule("b", risk_tier=RiskTier.T0, value="13%"),
        )
        client.chat_completion.return_value = completion(arbitration("a", confidence=0.95))

        result = arbitrate_conflict(conflict_id, ctx)

        assert result.success
        assert result.resolution == ArbiterResolution.ESCALATE_TO_HUMAN
        conflict = store.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.ESCALATED
        assert conflict.requires_human_review is True
        assert conflict.human_review_reason
        assert conflict.resolved_at is None
        review = ctx.reviews.pending_reviews()[0]
        assert review.reason == ReviewReason.CONFLICT_BOTH_T0
        assert store.get_rule("b").status == RuleStatus.DRAFT
        assert ctx.audit.events(action="CONFLICT_ESCALATED")[0].metadata["escalation_reason"] == "both_t0"

    def test_resolution_deprecates_published_loser(self, ctx, store, client) -> None:
        """Test resolution deprecates published loser."""
        conflict_id = add_conflict(
            store,
            make_rule("old", status=RuleStatus.PUBLISHED),
            make_rule("law", value="13%", authority_level=AuthorityLevel.LAW),
        )
        client.chat_completion.return_value = completion(arbitration("law"))

        result = arbitrate_conflict(conflict_id, ctx)

        assert result.resolution == ArbiterResolution.RULE_B_PREVAILS
        conflict = store.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.RESOLVED
        assert conflict.resolved_at is not None
        assert conflict.resolution["winning_item_id"] == "law"
        loser = store.get_rule("old")
        assert loser.status == RuleStatus.DEPRECATED
        notes = json.loads(loser.review_notes)
        assert notes["superseded_by"] == "law"
        assert notes["conflict_id"] == conflict_id
        assert ctx.audit.events(action="CONFLICT_RESOLVED")[0].performed_by == "arbiter"

    def test_draft_loser_is_rejected(self, ctx, store, client) -> None:
        """Test draft loser is rejected."""
        conflict_id = add_conflict(
            store,
            make_rule("law", authority_level=AuthorityLevel.LAW),
            make_rule("draft", value="13%"),
        )
        client.chat_completion.return_value = completion(arbitration("law"))

        result = arbitrate_conflict(conflict_id, ctx)

        assert result.resolution == ArbiterResolution.RULE_A_PREVAILS
        assert store.get_rule("draft").status == RuleStatus.REJECTED
        assert store.get_rule("law").status == RuleStatus.DRAFT

    def test_model_requested_review_keeps_its_reason(self, ctx, store, client) -> None:
        """Test model requested review keeps its reason."""
        conflict_id = add_conflict(
            store, make_rule("a", authority_level=AuthorityLevel.LAW), make_rule("b", value="13%")
        )
        client.chat_completion.return_value = completion(
            arbitration("a", requires_human_review=True, human_review_reason="Nejasan prijelazni period")
        )

        arbitrate_conflict(conflict_id, ctx)

        conflict = store.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.ESCALATED
        assert conflict.human_review_reason == "Nejasan prijelazni period"

    def test_unknown_winner_escalates(self, ctx, store, client) -> None:
        """Test unknown winner escalates."""
        conflict_id = add_conflict(
            store, make_rule("a", authority_level=AuthorityLevel.LAW), make_rule("b", value="13%")
        )
        client.chat_completion.return_value = completion(arbitration("rule_elsewhere"))

        result = arbitrate_conflict(conflict_id, ctx)

        assert result.resolution == ArbiterResolution.ESCALATE_TO_HUMAN
        assert store.get_conflict(conflict_id).human_review_reason == "Arbiter chose an item outside the conflict"

    def test_agent_failure_leaves_conflict_open(self, ctx, store, client) -> None:
        """Test agent failure leaves conflict open."""
        conflict_id = add_conflict(store, make_rule("a"), make_rule("b", value="13%"))
        client.chat_completion.side_effect = ModelsClientError("HTTP 500")

        result = arbitrate_conflict(conflict_id, ctx)

        assert not result.success
        assert store.get_conflict(conflict_id).status == ConflictStatus.OPEN
        runs = store.list_agent_runs(conflict_id=conflict_id)
        assert len(runs) == 1
        assert runs[0].status == AgentRunStatus.FAILED
        assert runs[0].attempts == 3

    def test_not_open_is_rejected(self, ctx, store) -> None:
        """Test not open is rejected."""
        add_conflict(store, make_rule("a"), make_rule("b"))
        store.update_conflict("c1", status=ConflictStatus.RESOLVED)

        result = arbitrate_conflict("c1", ctx)

        assert not result.success
        assert "not OPEN" in result.error

    def test_missing_conflict(self, ctx) -> None:
        """Test missing conflict."""
        assert not arbitrate_conflict("nope", ctx).success


class TestSourceConflicts:
    """Tests for SOURCE_CONFLICT handling."""

    def _pointer(self, store, pointer_id, value):
        store.add_source_pointer(SourcePointer(
            id=pointer_id, evidence_id="ev", exact_quote=f"stopa {value}", extracted_value=value
        ))

    def test_single_pointer_auto_resolves(self, ctx, store, client) -> None:
        """Test single pointer auto resolves."""
        self._pointer(store, "p1", "25%")
        store.insert_conflict(RegulatoryConflict(
            id="sc", conflict_type=ConflictType.SOURCE_CONFLICT, source_pointer_ids=["p1", "gone"]
        ))

        arbitrate_conflict("sc", ctx)

        conflict = store.get_conflict("sc")
        assert conflict.status == ConflictStatus.RESOLVED
        assert conflict.resolution["strategy"] == "auto_resolved"
        client.chat_completion.assert_not_called()

    def test_disagreeing_pointers_escalate(self, ctx, store, client) -> None:
        """Test disagreeing pointers escalate."""
        self._pointer(store, "p1", "25%")
        self._pointer(store, "p2", "13%")
        store.insert_conflict(RegulatoryConflict(
            id="sc", conflict_type=ConflictType.SOURCE_CONFLICT, source_pointer_ids=["p1", "p2"]
        ))

        result = arbitrate_conflict("sc", ctx)

        assert result.resolution == ArbiterResolution.ESCALATE_TO_HUMAN
        conflict = store.get_conflict("sc")
        assert conflict.status == ConflictStatus.ESCALATED
        assert [p["value"] for p in conflict.resolution["pointer_summary"]] == ["25%", "13%"]
        assert ctx.reviews.pending_reviews()[0].reason == ReviewReason.SOURCE_CONFLICT
        client.chat_completion.assert_not_called()


class TestRunArbiterBatch:
    """Tests for run_arbiter_batch."""

    def test_counts_outcomes(self, ctx, store, client) -> None:
        """Test counts outcomes."""
        add_conflict(store, make_rule("a", authority_level=AuthorityLevel.LAW), make_rule("b", value="13%"), "c1")
        store.insert_conflict(RegulatoryConflict(
            id="c2", conflict_type=ConflictType.VALUE_MISMATCH, item_a_id="a", item_b_id="missing"
        ))
        client.chat_completion.return_value = completion(arbitration("a"))

        summary = run_arbiter_batch(ctx, limit=10)

        assert summary.processed == 2
        assert summary.resolved == 1
        assert summary.failed == 1
        assert summary.errors[0].startswith("c2:")

    def test_limit(self, ctx, store, client) -> None:
        """Test limit."""
        add_conflict(store, make_rule("a"), make_rule("b", value="13%"), "c1")
        add_conflict(store, make_rule("x"), make_rule("y", value="13%"), "c2")
        client.chat_completion.return_value = completion(arbitration("a", confidence=0.1))

        summary = run_arbiter_batch(ctx, limit=1)

        assert summary.processed == 1
        assert summary.escalated == 1


class TestResolveRulePrecedence:
    """Tests for resolve_rule_precedence."""

    def test_empty(self, store) -> None:
        """Test empty."""
        with pytest.raises(ValueError):
            resolve_rule_precedence(store, [])

    def test_single(self, store) -> None:
        """Test single."""
        assert resolve_rule_precedence(store, ["only"]).reasoning == "Single rule matched"

    def test_lex_specialis(self, store) -> None:
        """Test lex specialis."""
        store.add_rule(make_rule("general", authority_level=AuthorityLevel.LAW))
        store.add_rule(make_rule("special", concept_slug="pdv-snizena-stopa-hrana", overrides=["general"]))

        result = resolve_rule_precedence(store, ["general", "special"])

        assert result.winning_rule_id == "special"
        assert result.overridden_rule_ids == ["general"]
        assert result.reasoning.startswith("Lex specialis")

    def test_authority(self, store) -> None:
        """Test authority."""
        store.add_rule(make_rule("guidance"))
        store.add_rule(make_rule("law", authority_level=AuthorityLevel.LAW, effective_from=date(2013, 1, 1)))

        result = resolve_rule_precedence(store, ["guidance", "law"])

        assert result.winning_rule_id == "law"
        assert result.reasoning == "Authority: LAW takes precedence over GUIDANCE"

    def test_recency_among_top_authority(self, store) -> None:
        """Test recency among top authority."""
        store.add_rule(make_rule("law_old", authority_level=AuthorityLevel.LAW, effective_from=date(2013, 1, 1)))
        store.add_rule(make_rule("law_new", authority_level=AuthorityLevel.LAW, effective_from=date(2024, 1, 1)))
        store.add_rule(make_rule("guidance", effective_from=date(2025, 1, 1)))

        result = resolve_rule_precedence(store, ["law_old", "law_new", "guidance"])

        assert result.winning_rule_id == "law_new"
        assert result.reasoning.startswith("Recency")
        assert result.overridden_rule_ids == ["guidance", "law_old"]

    def test_deterministic_tiebreak(self, store) -> None:
        """Test deterministic tiebreak."""
        store.add_rule(make_rule("rule_b"))
        store.add_rule(make_rule("rule_a"))

        result = resolve_rule_precedence(store, ["rule_b", "rule_a"])

        assert result.winning_rule_id == "rule_a"
        assert "deterministic id ordering" in result.reasoning
