"""
Unit tests for the grounding catalog: subtypes, anchors and hint ladder text.
"""

import pytest

from src.adaptive.hint_catalog import (
    SUBTYPE_LADDER_GUIDANCE,
    SYNTHETIC_FALLBACK_ROW_ID,
    AnchorCatalog,
    canonicalize_subtype,
    classify_error_message,
    concept_ids_for_subtype,
    deterministic_anchor,
    get_anchor_catalog,
    get_concept,
    load_anchor_catalog,
    progressive_hint_text,
    set_anchor_catalog,
)


@pytest.fixture
def restore_catalog():
    original = get_anchor_catalog()
    yield
    set_anchor_catalog(original)


class TestCanonicalizeSubtype:
    """Tests for subtype alias resolution."""

    def test_alias_resolves(self):
        assert canonicalize_subtype("No Such Column") == "undefined column"
        assert canonicalize_subtype("ambiguous table") == "ambiguous reference"

    def test_known_subtype_is_kept(self):
        assert canonicalize_subtype("  Missing Commas ") == "missing commas"

    @pytest.mark.parametrize("raw", [None, "", "   ", "totally-new-error"])
    def test_blank_or_unknown_defaults(self, raw):
        assert canonicalize_subtype(raw) == "incomplete query"


class TestProgressiveHintText:
    """Tests for the three-rung ladder."""

    def anchor(self):
        return get_anchor_catalog().by_subtype["undefined column"][0]

    def test_level_one_is_plain_nudge(self):
        text = progressive_hint_text("undefined column", 1, self.anchor())
        assert text == "One or more column names do not match the schema."

    def test_level_two_appends_learning_outcome(self):
        text = progressive_hint_text("undefined column", 2, self.anchor())
        assert text == (
            "Compare your selected/filtered columns against the exact column names in the table. "
            "Select columns that are defined in the referenced tables."
        )

    def test_level_three_scrubs_quoted_identifiers(self):
        text = progressive_hint_text("undefined column", 3, self.anchor())
        assert text == (
            "Rewrite the query with only verified column names, then add extra fields one at a time. "
            "Replace the referenced item with a column that exists in the table."
        )

    def test_level_is_clamped(self):
        assert progressive_hint_text("undefined column", 9) == SUBTYPE_LADDER_GUIDANCE["undefined column"][2]
        assert progressive_hint_text("undefined column", 0) == SUBTYPE_LADDER_GUIDANCE["undefined column"][0]


class TestDeterministicAnchor:
    """Tests for seeded row selection."""

    def test_same_seed_same_row(self):
        first = deterministic_anchor("undefined column", "learner-1|p1|undefined column|L2")
        second = deterministic_anchor("undefined column", "learner-1|p1|undefined column|L2")
        assert first == second

    def test_row_matches_subtype(self):
        row = deterministic_anchor("no such column", "seed")
        assert row.row_id in {"sql-engage:4", "sql-engage:5"}
        assert row.error_subtype == "undefined column"

    def test_empty_catalog_uses_synthetic_row(self, restore_catalog):
        set_anchor_catalog(AnchorCatalog.from_rows([]))
        row = deterministic_anchor("undefined column", "seed")

        assert row.row_id == SYNTHETIC_FALLBACK_ROW_ID
        assert row.error_subtype == "incomplete query"


class TestLoadAnchorCatalog:
    """Tests for CSV-backed grounding rows."""

    def test_loads_rows_and_assigns_positional_ids(self, tmp_path, restore_catalog):
        csv_path = tmp_path / "anchors.csv"
        csv_path.write_text(
            "rowId,error_subtype,feedback_target,intended_learning_outcome\n"
            "custom-1,undefined column,Check 'salary'.,Use real columns.\n"
            ",missing commas,Add a comma.,Separate items.\n"
            ",,Ignored.,Ignored.\n",
            encoding="utf-8",
        )

        catalog = load_anchor_catalog(csv_path)

        assert [row.row_id for row in catalog.rows] == ["custom-1", "sql-engage:2"]
        assert catalog.by_subtype["missing commas"][0].feedback_target == "Add a comma."

        set_anchor_catalog(catalog)
        assert deterministic_anchor("undefined column", "any").row_id == "custom-1"


class TestClassifyErrorMessage:
    """Tests for mapping SQLite errors to subtypes."""

    @pytest.mark.parametrize(
        "message,query,expected",
        [
            ("no such column: user_name", "", "undefined column"),
            ("no such table: staff", "", "undefined table"),
            ("no such function: MEDIAN", "", "undefined function"),
            ("ambiguous column name: id", "", "ambiguous reference"),
            ("incomplete input", "", "incomplete query"),
            ('near "FROM": syntax error', "SELECT name FROM", "incomplete query"),
            ('near "SELECT": syntax error', "FROM users SELECT *", "wrong positioning"),
            ("datatype mismatch", "", "data type mismatch"),
            ("something odd happened", "", "incomplete query"),
        ],
    )
    def test_classification(self, message, query, expected):
        assert classify_error_message(message, query) == expected


class TestConcepts:
    """Tests for concept lookups."""

    def test_blank_subtype_has_no_concepts(self):
        assert concept_ids_for_subtype("") == []

    def test_subtype_concepts(self):
        assert concept_ids_for_subtype("undefined column") == ["select-basic"]
        assert concept_ids_for_subtype("incorrect join usage") == ["joins"]

    def test_get_concept(self):
        assert get_concept("joins").prerequisites == ("select-basic", "where-clause")
        assert get_concept("nope") is None
