"""Grounded content generation for instructional units.

Pipeline:
1. Hash the retrieval bundle and consult the LLM cache
2. Render a template prompt and call the text generator
3. Extract structured JSON from the raw text (several strategies)
4. Fall back to deterministic content when anything fails

Usage:
    from src.content.generation import GenerateUnitOptions, InstructionalUnitGenerator

    pipeline = InstructionalUnitGenerator(generator, store)
    result = await pipeline.generate_unit(
        GenerateUnitOptions(learner_id="l1", template_id="explanation.v1", bundle=bundle)
    )
"""

from .fallback import build_fallback_markdown
from .retrieval import RetrievalBundle
from .structured_output import ParseTelemetry, StructuredTemplateOutput, parse_template_json
from .templates import TEMPLATE_CATALOG, render_prompt
from .unit_generator import (
    GenerateUnitOptions,
    GenerateUnitResult,
    InstructionalUnitGenerator,
    TextGenerator,
)

__all__ = [
    "InstructionalUnitGenerator",
    "GenerateUnitOptions",
    "GenerateUnitResult",
    "TextGenerator",
    "RetrievalBundle",
    "StructuredTemplateOutput",
    "ParseTelemetry",
    "parse_template_json",
    "build_fallback_markdown",
    "TEMPLATE_CATALOG",
    "render_prompt",
]
