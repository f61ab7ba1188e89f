"""Tests for src/regulatory/agents/runner.py."""

from __future__ import annotations

from unittest.mock import MagicMock

from src.integrations.models import ChatCompletion
from src.regulatory.agents.runner import AgentContext, run_agent
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import AgentRunStatus, AgentType

SCHEMA = {
    "type": "object",
    "required": ["answer"],
    "properties": {"answer": {"type": "integer"}},
}


def _reply(content: str) -> ChatCompletion:
    return ChatCompletion(id="cmpl", model="gpt-4o-mini", content=content)


class TestRunAgent:
    """Tests for run_agent."""

    def test_valid_output(self) -> None:
        """Test valid output."""
        client = MagicMock()
        client.chat_completion.return_value = _reply('```json\n{"answer": 42}\n```')
        ctx = AgentContext(store=RegulatoryStore(), client=client, sleep=lambda _: None)

        result = run_agent(ctx, AgentType.EXTRACTOR, {"content": "x"}, output_schema=SCHEMA, evidence_id="ev")

        assert result.success
        assert result.output == {"answer": 42}
        assert result.attempts == 1
        run = ctx.store.list_agent_runs()[0]
        assert run.status == AgentRunStatus.COMPLETED
        assert run.evidence_id == "ev"
        kwargs = client.chat_completion.call_args.kwargs
        assert kwargs["json_mode"] is True
        assert kwargs["temperature"] == 0.1

    def test_retries_invalid_json_then_schema(self) -> None:
        """Test retries invalid json then schema."""
        client = MagicMock()
        client.chat_completion.side_effect = [
            _reply("not json"),
            _reply('{"answer": "forty-two"}'),
            _reply('{"answer": 42}'),
        ]
        sleep = MagicMock()
        ctx = AgentContext(store=RegulatoryStore(), client=client, sleep=sleep)

        result = run_agent(ctx, AgentType.ARBITER, {}, output_schema=SCHEMA)

        assert result.success
        assert result.attempts == 3
        assert sleep.call_count == 2

    def test_exhausted_retries(self) -> None:
        """Test exhausted retries."""
        client = MagicMock()
        client.chat_completion.return_value = _reply('{"answer": "no"}')
        ctx = AgentContext(store=RegulatoryStore(), client=client, sleep=lambda _: None)

        result = run_agent(ctx, AgentType.ARBITER, {}, output_schema=SCHEMA, max_retries=2, conflict_id="c1")

        assert not result.success
        assert "answer" in result.error
        run = ctx.store.list_agent_runs(conflict_id="c1")[0]
        assert run.status == AgentRunStatus.FAILED
        assert run.attempts == 2
        assert run.completed_at is not None
