"""Schema-validated LLM agent invocation.

``run_agent`` is the retry boundary for model calls: it never raises for
model or validation failures and instead returns an ``AgentResult``. Every
invocation is recorded as an ``AgentRun``.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import jsonschema

from src.integrations.models import ModelsClient, ModelsClientError, parse_json_content
from src.regulatory.audit import AuditLog
from src.regulatory.errors import AgentOutputError
from src.regulatory.fetching.rate_limiter import calculate_backoff_delay
from src.regulatory.review import HumanReviewService
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import AgentRun, AgentRunStatus, AgentType, new_id, utc_now

from .schemas import AGENT_OUTPUT_SCHEMAS, AGENT_PROMPTS

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Collaborators shared by the agent-driven pipeline stages."""

    store: RegulatoryStore
    client: ModelsClient
    audit: AuditLog = field(default_factory=AuditLog)
    reviews: HumanReviewService = field(default_factory=HumanReviewService)
    model: str | None = None
    sleep: Callable[[float], None] = time.sleep


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    run_id: str | None = None
    attempts: int = 0


def _call_model(
    ctx: AgentContext,
    agent_type: AgentType,
    payload: dict[str, Any],
    schema: dict,
    temperature: float,
) -> dict[str, Any]:
    messages = [
        {"role": "system", "content": AGENT_PROMPTS[agent_type]},
        {"role": "user", "content": json.dumps(payload, ensure_ascii=False, default=str)},
    ]
    completion = ctx.client.chat_completion(
        messages,
        model=ctx.model,
        temperature=temperature,
        json_mode=True,
    )
    try:
        output = parse_json_content(completion.content)
    except json.JSONDecodeError as exc:
        raise AgentOutputError(f"Model returned invalid JSON: {exc}") from exc
    try:
        jsonschema.validate(output, schema)
    except jsonschema.ValidationError as exc:
        path = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise AgentOutputError(f"Schema validation failed at {path}: {exc.message}") from exc
    return output


def run_agent(
    ctx: AgentContext,
    agent_type: AgentType,
    payload: dict[str, Any],
    *,
    output_schema: dict | None = None,
    temperature: float = 0.1,
    max_retries: int = 3,
    evidence_id: str | None = None,
    rule_id: str | None = None,
    conflict_id: str | None = None,
) -> AgentResult:
    """Invoke an agent and validate its output.

    Args:
        ctx: Shared collaborators.
        agent_type: Which agent prompt to use.
        payload: JSON-serializable agent input.
        output_schema: Schema the output must satisfy; defaults to the
            agent's registered schema.
        temperature: Sampling temperature.
        max_retries: Total attempts before giving up.
        evidence_id: Linked evidence recorded on the AgentRun.
        rule_id: Linked rule recorded on the AgentRun.
        conflict_id: Linked conflict recorded on the AgentRun.

    Returns:
        AgentResult: ``success`` with validated ``output``, or the last error.
    """
    schema = output_schema or AGENT_OUTPUT_SCHEMAS[agent_type]
    run = AgentRun(
        id=new_id("run"),
        agent_type=agent_type,
        input=payload,
        evidence_id=evidence_id,
        rule_id=rule_id,
        conflict_id=conflict_id,
    )
    ctx.store.record_agent_run(run)

    last_error = "Agent was not invoked"
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        run.attempts = attempt + 1
        try:
            output = _call_model(ctx, agent_type, payload, schema, temperature)
        except (AgentOutputError, ModelsClientError) as exc:
            last_error = str(exc)
            logger.warning(
                "%s agent attempt %d/%d failed: %s",
                agent_type.value,
                attempt + 1,
                attempts,
                last_error,
            )
            if attempt + 1 < attempts:
                ctx.sleep(calculate_backoff_delay(attempt))
            continue

        run.status = AgentRunStatus.COMPLETED
        run.output = output
        run.completed_at = utc_now()
        ctx.store.record_agent_run(run)
        logger.info(
            "%s agent completed in %d attempt(s) (%s ms)",
            agent_type.value,
            run.attempts,
            run.duration_ms,
        )
        return AgentResult(success=True, output=output, run_id=run.id, attempts=run.attempts)

    run.status = AgentRunStatus.FAILED
    run.error = last_error
    run.completed_at = utc_now()
    ctx.store.record_agent_run(run)
    logger.error("%s agent failed after %d attempt(s): %s", agent_type.value, run.attempts, last_error)
    return AgentResult(success=False, error=last_error, run_id=run.id, attempts=run.attempts)
