"""LLM agents: schema-validated invocation, extraction and arbitration."""

from __future__ import annotations


from .runner import AgentContext, AgentResult, run_agent


__all__ = [
    "AgentContext",
    "AgentResult",
    "run_agent",
]
