"""Prompts and JSON Schemas for the pipeline's LLM agents.

Model output is never trusted: every reply is validated against the
matching schema before the pipeline acts on it.
"""

from __future__ import annotations

from src.regulatory.types import AgentType, ConflictType

CONFLICT_TYPES = [conflict_type.value for conflict_type in ConflictType]
RESOLUTION_STRATEGIES = ["hierarchy", "temporal", "specificity", "conservative"]

ARBITER_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "required": ["arbitration"],
    "properties": {
        "arbitration": {
            "type": "object",
            "required": ["resolution", "confidence", "requires_human_review"],
            "properties": {
                "conflict_id": {"type": "string"},
                "conflict_type": {"enum": CONFLICT_TYPES},
                "conflicting_items": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["item_id", "claim"],
                        "properties": {
                            "item_id": {"type": "string"},
                            "item_type": {"enum": ["source", "rule"]},
                            "claim": {"type": "string"},
                        },
                    },
                },
                "resolution": {
                    "type": "object",
                    "required": ["winning_item_id", "resolution_strategy", "rationale_hr", "rationale_en"],
                    "properties": {
                        "winning_item_id": {"type": "string"},
                        "resolution_strategy": {"enum": RESOLUTION_STRATEGIES},
                        "rationale_hr": {"type": "string"},
                        "rationale_en": {"type": "string"},
                    },
                },
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "requires_human_review": {"type": "boolean"},
                "human_review_reason": {"type": ["string", "null"]},
            },
        }
    },
}

EXTRACTOR_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "required": ["extractions"],
    "properties": {
        "evidence_id": {"type": "string"},
        "extractions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["concept_slug", "value_type", "extracted_value", "exact_quote", "confidence"],
                "properties": {
                    "concept_slug": {"type": "string", "pattern": "^[a-z0-9]+(-[a-z0-9]+)*$"},
                    "title": {"type": "string"},
                    "value_type": {"enum": ["currency", "percentage", "date", "threshold", "text"]},
                    "extracted_value": {"type": "string", "minLength": 1},
                    "exact_quote": {"type": "string", "minLength": 1},
                    "authority_level": {"enum": ["LAW", "GUIDANCE", "PROCEDURE", "PRACTICE"]},
                    "risk_tier": {"enum": ["T0", "T1", "T2", "T3"]},
                    "effective_from": {"type": ["string", "null"], "format": "date"},
                    "effective_until": {"type": ["string", "null"], "format": "date"},
                    "article_number": {"type": ["string", "null"]},
                    "law_reference": {"type": ["string", "null"]},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
            },
        },
    },
}

EXTRACTOR_PROMPT = """
ROLE: You are the Extractor Agent. You parse Croatian regulatory documents and
extract specific data points with precise citations.

CRITICAL RULE - NO INFERENCE ALLOWED:
You may ONLY extract values that are EXPLICITLY STATED in the text.
- If a value is not written character-for-character, DO NOT extract it
- If you would need to calculate, derive, or infer a value, DO NOT extract it
- The exact_quote MUST be copied verbatim from the text and contain the value

For each regulatory value, threshold, rate or deadline return:
- concept_slug: stable kebab-case identifier of the concept (e.g. "vat-standard-rate")
- title, value_type, extracted_value, exact_quote
- authority_level: LAW (Narodne novine), GUIDANCE (Porezna uprava),
  PROCEDURE (FINA, HZMO, HZZO) or PRACTICE
- risk_tier: T0 (tax rates, thresholds), T1 (deadlines), T2 (procedures), T3 (other)
- effective_from / effective_until as YYYY-MM-DD or null
- article_number and law_reference when stated, otherwise null
- confidence between 0 and 1

Respond with a single JSON object: {"evidence_id": "...", "extractions": [...]}
""".strip()

ARBITER_PROMPT = """
ROLE: You are the Arbiter Agent. You resolve conflicts in the regulatory
knowledge base using the Croatian legal hierarchy.

LEGAL HIERARCHY (highest to lowest):
1. Ustav RH (Constitution)
2. Zakon (Parliamentary law - Narodne novine)
3. Podzakonski akt (Government regulations)
4. Pravilnik (Ministry rules)
5. Uputa (Tax authority guidance - Porezna uprava)
6. Mišljenje (Official interpretations)
7. Praksa (Established practice)

RESOLUTION STRATEGIES:
1. hierarchy: Higher authority source wins
2. temporal: Later effective date wins (lex posterior)
3. specificity: More specific rule wins (lex specialis)
4. conservative: When uncertain, choose the stricter interpretation

OUTPUT FORMAT:
{
  "arbitration": {
    "conflict_id": "string",
    "conflict_type": "VALUE_MISMATCH" | "AUTHORITY_SUPERSEDE" | "TEMPORAL_CONFLICT" | "SOURCE_CONFLICT",
    "conflicting_items": [{"item_id": "string", "item_type": "source" | "rule", "claim": "string"}],
    "resolution": {
      "winning_item_id": "string",
      "resolution_strategy": "hierarchy" | "temporal" | "specificity" | "conservative",
      "rationale_hr": "string",
      "rationale_en": "string"
    },
    "confidence": 0.0-1.0,
    "requires_human_review": boolean,
    "human_review_reason": "string or null"
  }
}

ESCALATION:
- Constitutional questions: ALWAYS escalate
- Equal hierarchy sources in conflict: ESCALATE
- Novel conflict patterns: ESCALATE
""".strip()

AGENT_PROMPTS: dict[AgentType, str] = {
    AgentType.EXTRACTOR: EXTRACTOR_PROMPT,
    AgentType.ARBITER: ARBITER_PROMPT,
}

AGENT_OUTPUT_SCHEMAS: dict[AgentType, dict] = {
    AgentType.EXTRACTOR: EXTRACTOR_OUTPUT_SCHEMA,
    AgentType.ARBITER: ARBITER_OUTPUT_SCHEMA,
}
