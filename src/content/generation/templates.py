"""
Prompt templates for grounded content generation.

Every template asks the model for the same JSON contract so that
structured_output.parse_template_json() can validate any of them.
"""
from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

DEFAULT_TEMPLATE_ID = "explanation.v1"

OUTPUT_CONTRACT = (
    "JSON with fields: title, content_markdown, key_points[], common_pitfall, next_steps[], source_ids[]"
)


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    intent: str
    output_contract: str = OUTPUT_CONTRACT


TEMPLATE_CATALOG: dict[str, PromptTemplate] = {
    "explanation.v1": PromptTemplate(
        id="explanation.v1",
        intent="Produce a concise grounded explanation after escalation.",
    ),
    "notebook_unit.v1": PromptTemplate(
        id="notebook_unit.v1",
        intent="Produce a reflective My Notes unit for notebook storage.",
    ),
}

_INSTRUCTIONS = (
    "You are a constrained SQL learning content realizer.",
    "Use ONLY facts from the provided Sources.",
    'If a required detail is absent, write exactly: "Not found in provided sources."',
    "Do not add outside facts, external SQL rules, or fabricated examples.",
    "Return ONLY valid JSON and no surrounding text.",
    "Output must be a single JSON object (not markdown, not prose, not arrays).",
    "Do not wrap the JSON in code fences.",
    "Use double quotes for all keys and string values.",
    "Do not use comments or trailing commas.",
    "Required arrays must contain at least one item: key_points, next_steps, source_ids.",
)

_SCHEMA_GUIDANCE = (
    "JSON schema guidance:",
    "{",
    '  "title": "string",',
    '  "content_markdown": "string",',
    '  "key_points": ["string"],',
    '  "common_pitfall": "string",',
    '  "next_steps": ["string"],',
    '  "source_ids": ["string"]',
    "}",
)


def get_template(template_id: str) -> PromptTemplate:
    """Look up a template; unknown ids fall back to explanation.v1."""
    template = TEMPLATE_CATALOG.get(template_id)
    if template is None:
        logger.warning(f"Unknown template '{template_id}', using {DEFAULT_TEMPLATE_ID}")
        template = TEMPLATE_CATALOG[DEFAULT_TEMPLATE_ID]
    return template


def render_prompt(template_id: str, sources_json: str) -> str:
    """Render the full prompt with the serialized retrieval bundle as Sources."""
    template = get_template(template_id)
    lines = [
        *_INSTRUCTIONS,
        template.intent,
        f"Template ID: {template.id}",
        f"Output contract: {template.output_contract}",
        "Sources:",
        sources_json,
        *_SCHEMA_GUIDANCE,
    ]
    return "\n".join(lines)
