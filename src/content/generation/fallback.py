"""
Deterministic fallback content.

Used whenever model output cannot be used (replay mode, generator error,
unparseable response). Built only from the retrieval bundle, so the same
bundle always yields the same text.
"""
from __future__ import annotations

from src.content.generation.retrieval import RetrievalBundle
from src.content.generation.structured_output import NOT_FOUND_TEXT

FALLBACK_NEXT_STEPS = (
    "Re-run a minimal query and validate each clause incrementally.",
    "Apply one fix at a time and re-check the same problem.",
    "If schema details are missing, use only the provided schema text.",
)


def fallback_title(bundle: RetrievalBundle) -> str:
    return f"Help with {bundle.problem_title or NOT_FOUND_TEXT}"


def build_fallback_markdown(bundle: RetrievalBundle) -> str:
    """Markdown help note grounded only in the bundle."""
    anchor = bundle.grounding_anchor
    concept = bundle.concept_candidates[0] if bundle.concept_candidates else None

    lines = [
        f"# {fallback_title(bundle)}",
        "",
        f"Error subtype: {bundle.last_error_subtype_id or NOT_FOUND_TEXT}",
        f"Concept: {(concept.name if concept else '') or NOT_FOUND_TEXT}",
        "",
        "## Grounded Sources",
        f"- Grounding row: {(anchor.row_id if anchor else '') or NOT_FOUND_TEXT}",
        f"- Intended learning outcome: {(anchor.intended_learning_outcome if anchor else '') or NOT_FOUND_TEXT}",
        f"- Feedback target: {(anchor.feedback_target if anchor else '') or NOT_FOUND_TEXT}",
        "",
        "## Hint History",
    ]
    if bundle.hint_history:
        lines.extend(f"- [L{hint.hint_level}] {hint.hint_text}" for hint in bundle.hint_history)
    else:
        lines.append(f"- {NOT_FOUND_TEXT}")

    lines.extend(["", "## Next Steps"])
    lines.extend(f"{index}. {step}" for index, step in enumerate(FALLBACK_NEXT_STEPS, start=1))
    return "\n".join(lines)
