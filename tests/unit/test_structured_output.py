"""
Unit tests for extracting structured output from model text.
"""

import json

import pytest

from src.content.generation.structured_output import (
    DEFAULT_NEXT_STEP,
    NOT_FOUND_TEXT,
    ParseFail,
    ParseOk,
    extract_balanced_object_candidates,
    extract_list_items,
    parse_template_json,
    repair_likely_json,
    validate_structured_output,
)
from src.textbook.models import ParseMode, ParserStatus

VALID = {
    "title": "Fixing column names",
    "content_markdown": "Use the columns listed in the schema.",
    "key_points": ["Columns must exist"],
    "next_steps": ["Check the schema"],
    "source_ids": ["sql-engage:4"],
}


def as_json(payload=None):
    return json.dumps(payload or VALID)


class TestParseModes:
    """Tests for which extraction strategy wins."""

    def test_clean_json_is_strict(self):
        result = parse_template_json(as_json())

        assert result.ok
        assert result.telemetry.status == ParserStatus.SUCCESS
        assert result.telemetry.mode == ParseMode.STRICT_JSON
        assert result.telemetry.attempts == 1
        assert result.output.title == "Fixing column names"
        assert result.output.source_ids == ["sql-engage:4"]

    def test_code_fence(self):
        raw = f"Here is the note:\n```json\n{as_json()}\n```\nGood luck!"
        result = parse_template_json(raw)

        assert result.telemetry.mode == ParseMode.CODE_FENCE_JSON
        assert result.telemetry.attempts == 2

    def test_brace_extraction_from_prose(self):
        raw = f"Sure! {as_json()} Hope that helps."
        result = parse_template_json(raw)

        assert result.telemetry.mode == ParseMode.BRACE_EXTRACT
        assert result.output.key_points == ["Columns must exist"]

    def test_trailing_comma_is_repaired(self):
        raw = '{"title": "T", "content_markdown": "C", "key_points": ["a",], "next_steps": ["b"],}'
        result = parse_template_json(raw)

        assert result.telemetry.mode == ParseMode.JSON_REPAIR
        assert result.telemetry.attempts == 2
        assert result.output.key_points == ["a"]

    def test_curly_quotes_are_repaired(self):
        raw = "{“title”: “T”, “content”: “C”}"
        result = parse_template_json(raw)

        assert result.ok
        assert result.telemetry.mode == ParseMode.JSON_REPAIR

    def test_leading_bom_is_ignored(self):
        result = parse_template_json("\ufeff" + as_json())
        assert result.telemetry.mode == ParseMode.STRICT_JSON

    def test_single_object_list(self):
        result = parse_template_json(f"[{as_json()}]")
        assert result.output.title == "Fixing column names"


class TestParseFailures:
    """Tests for failure telemetry."""

    @pytest.mark.parametrize("raw", [None, "", "   \n"])
    def test_empty_response(self, raw):
        result = parse_template_json(raw)

        assert result.output is None
        assert result.telemetry.status == ParserStatus.FAILURE
        assert result.telemetry.attempts == 0
        assert result.telemetry.failure_reason == "empty_response"

    def test_plain_text(self):
        result = parse_template_json("not json")

        assert not result.ok
        assert result.telemetry.attempts == 1
        assert result.telemetry.failure_reason == "invalid_json"
        assert result.telemetry.raw_length == len("not json")

    def test_non_object_payload(self):
        assert parse_template_json("[1, 2]").telemetry.failure_reason == "non_object_payload"

    def test_missing_required_fields(self):
        result = parse_template_json('{"content_markdown": "Only content"}')
        assert result.telemetry.failure_reason == "missing_required_fields"


class TestFieldNormalization:
    """Tests for synonyms, wrappers and list recovery."""

    def test_synonyms_inside_wrapper(self):
        payload = {
            "output": {
                "heading": " Joins ",
                "content": "Match keys.",
                "keyPoints": "- Use ON\n- Match types",
                "nextSteps": "Rewrite the join; Run again",
                "commonPitfall": "Joining on names",
            }
        }
        result = validate_structured_output(json.dumps(payload))

        assert isinstance(result, ParseOk)
        assert result.output.title == "Joins"
        assert result.output.key_points == ["Use ON", "Match types"]
        assert result.output.next_steps == ["Rewrite the join", "Run again"]
        assert result.output.common_pitfall == "Joining on names"

    def test_lists_recovered_from_markdown_bullets(self):
        content = "Intro\n- first\n- second\n1. third\n* fourth"
        result = validate_structured_output(json.dumps({"title": "T", "content_markdown": content}))

        assert result.output.key_points == ["first", "second", "third"]
        assert result.output.next_steps == ["first", "second", "third"]

    def test_lists_fall_back_to_placeholders(self):
        result = validate_structured_output(json.dumps({"title": "T", "content_markdown": "No bullets."}))

        assert result.output.key_points == [NOT_FOUND_TEXT]
        assert result.output.next_steps == [DEFAULT_NEXT_STEP]

    def test_blank_list_entries_dropped(self):
        payload = dict(VALID, key_points=["  ", "kept", 7])
        result = validate_structured_output(json.dumps(payload))
        assert result.output.key_points == ["kept"]

    def test_invalid_json_reason(self):
        assert validate_structured_output("{nope") == ParseFail("invalid_json")


class TestHelpers:
    """Tests for candidate extraction helpers."""

    def test_braces_inside_strings_do_not_split(self):
        raw = 'x {"title": "Use {braces} \\" ok"} y {"b": 1}'
        assert extract_balanced_object_candidates(raw) == [
            '{"title": "Use {braces} \\" ok"}',
            '{"b": 1}',
        ]

    def test_repair_is_identity_on_clean_json(self):
        assert repair_likely_json(as_json()) == as_json()

    def test_extract_list_items_skips_long_lines(self):
        text = "- short\n- " + "x" * 181
        assert extract_list_items(text) == ["short"]
