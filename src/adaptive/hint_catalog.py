"""
Grounding Catalog.

Static knowledge the escalation ladder is grounded in:
- SQL concept nodes (name, description, prerequisites, examples)
- Canonical error subtypes with a three-rung hint ladder each
- Grounding anchor rows (feedback target + intended learning outcome)

Anchors are selected deterministically from a seed so the same
learner/problem/subtype/level always resolves the same grounding row.
A CSV dataset can replace the built-in anchor rows (see load_anchor_catalog).
"""
from __future__ import annotations

import csv
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from loguru import logger

POLICY_VERSION = "sql-engage-index-v3-hintid-contract"
DEFAULT_SUBTYPE = "incomplete query"
SYNTHETIC_FALLBACK_ROW_ID = "sql-engage:fallback-synthetic"
NOT_FOUND_TEXT = "Not found in provided sources."


@dataclass(frozen=True)
class ConceptNode:
    """A SQL concept learners are taught."""
    id: str
    name: str
    description: str
    prerequisites: tuple[str, ...] = ()
    difficulty: str = "beginner"
    examples: tuple[str, ...] = ()


@dataclass(frozen=True)
class GroundingAnchor:
    """A dataset row a hint or explanation is grounded in."""
    row_id: str
    error_subtype: str
    feedback_target: str
    intended_learning_outcome: str
    query: str = ""
    error_type: str = "construction"

    def to_dict(self) -> dict:
        return {
            "row_id": self.row_id,
            "error_subtype": self.error_subtype,
            "feedback_target": self.feedback_target,
            "intended_learning_outcome": self.intended_learning_outcome,
        }


CONCEPT_NODES: tuple[ConceptNode, ...] = (
    ConceptNode(
        id="select-basic",
        name="Basic SELECT",
        description="Retrieving data from a single table using SELECT statement",
        examples=("SELECT * FROM users;", "SELECT name, email FROM users;"),
    ),
    ConceptNode(
        id="where-clause",
        name="WHERE Clause",
        description="Filtering rows based on conditions",
        prerequisites=("select-basic",),
        examples=("SELECT * FROM users WHERE age > 18;",),
    ),
    ConceptNode(
        id="joins",
        name="JOIN Operations",
        description="Combining data from multiple tables",
        prerequisites=("select-basic", "where-clause"),
        difficulty="intermediate",
        examples=("SELECT u.name, o.order_id FROM users u JOIN orders o ON u.id = o.user_id;",),
    ),
    ConceptNode(
        id="aggregation",
        name="Aggregate Functions",
        description="Using COUNT, SUM, AVG, MAX, MIN with GROUP BY",
        prerequisites=("select-basic",),
        difficulty="intermediate",
        examples=(
            "SELECT COUNT(*) FROM users;",
            "SELECT category, AVG(price) FROM products GROUP BY category;",
        ),
    ),
    ConceptNode(
        id="subqueries",
        name="Subqueries",
        description="Using nested queries for complex filtering",
        prerequisites=("select-basic", "where-clause"),
        difficulty="advanced",
        examples=("SELECT * FROM users WHERE id IN (SELECT user_id FROM orders);",),
    ),
    ConceptNode(
        id="order-by",
        name="ORDER BY Clause",
        description="Sorting query results",
        prerequisites=("select-basic",),
        examples=("SELECT * FROM users ORDER BY age DESC;",),
    ),
)

_CONCEPTS_BY_ID = {concept.id: concept for concept in CONCEPT_NODES}


# =============================================================================
# Hint ladder: rung 1 (nudge), rung 2 (direction), rung 3 (procedure)
# =============================================================================

SUBTYPE_LADDER_GUIDANCE: dict[str, tuple[str, str, str]] = {
    "incomplete query": (
        "Start by completing the missing part of your SQL statement.",
        "Check whether each clause is present and complete before running again.",
        "Build the query incrementally: SELECT -> FROM -> WHERE/JOIN/GROUP BY, validating each step.",
    ),
    "undefined table": (
        "The table reference is likely incorrect.",
        "Verify the exact table name from the schema and use that spelling.",
        "Match every table in your query to a real schema table, then retry.",
    ),
    "undefined column": (
        "One or more column names do not match the schema.",
        "Compare your selected/filtered columns against the exact column names in the table.",
        "Rewrite the query with only verified column names, then add extra fields one at a time.",
    ),
    "undefined function": (
        "A function in the query is not recognized.",
        "Replace unsupported function names with functions available in this SQL dialect.",
        "Confirm function signatures and test the function on a small query first.",
    ),
    "ambiguous reference": (
        "A column reference is ambiguous across multiple tables.",
        "Prefix overlapping columns with table names or aliases.",
        "Use explicit aliases throughout SELECT, WHERE, GROUP BY, and ORDER BY.",
    ),
    "wrong positioning": (
        "A clause appears in the wrong order.",
        "Reorder clauses to standard SQL order.",
        "Use a fixed skeleton (SELECT -> FROM -> JOIN -> WHERE -> GROUP BY -> HAVING -> ORDER BY).",
    ),
    "aggregation misuse": (
        "Your aggregate function or grouping logic needs adjustment.",
        "Check that all non-aggregated columns in SELECT appear in GROUP BY.",
        "Apply aggregates only to values you want to summarize, and ensure GROUP BY includes all other selected columns.",
    ),
    "data type mismatch": (
        "A value does not match the expected data type for this operation.",
        "Compare the column type with the value you are providing.",
        "Convert values to the correct type before comparison or insertion.",
    ),
    "incorrect distinct usage": (
        "DISTINCT may be unnecessary or incorrectly applied.",
        "Check if the columns are already unique or if DISTINCT duplicates removal is actually needed.",
        "Remove redundant DISTINCT and rely on unique keys or GROUP BY when appropriate.",
    ),
    "incorrect group by usage": (
        "The GROUP BY clause is missing or contains incorrect columns.",
        "Ensure every non-aggregated column in SELECT is included in GROUP BY.",
        "Refactor the query to group by the exact set of non-aggregated columns.",
    ),
    "incorrect having clause": (
        "HAVING is being used incorrectly or filters are in the wrong place.",
        "Use HAVING only for conditions on aggregate results; move row filters to WHERE.",
        "Validate that aggregate conditions reference grouped data correctly.",
    ),
    "incorrect join usage": (
        "The JOIN condition or type is incorrect.",
        "Verify the join keys exist in both tables and the join type matches your intent.",
        "Specify explicit ON conditions and prefer explicit JOIN syntax over comma joins.",
    ),
    "incorrect order by usage": (
        "ORDER BY columns or direction are incorrect.",
        "Check that the sorting columns exist in the result set and ASC/DESC is intended.",
        "Limit sorting to necessary columns and ensure the order aligns with the requirement.",
    ),
    "incorrect select usage": (
        "The SELECT clause is missing required columns or includes invalid ones.",
        "List only columns needed and ensure they exist in the source tables.",
        "Build the column list incrementally, validating each against the schema.",
    ),
    "incorrect wildcard usage": (
        "Wildcards (*) are used incorrectly or too broadly.",
        "Replace * with explicit column names for clarity and performance.",
        "Select only the columns your application actually needs.",
    ),
    "inefficient query": (
        "The query can be rewritten for better performance.",
        "Look for unnecessary subqueries, redundant joins, or missing indexes.",
        "Simplify the query structure and ensure filters are applied as early as possible.",
    ),
    "missing commas": (
        "A comma is missing between columns or table references.",
        "Review the SELECT or FROM list and insert commas between items.",
        "Format lists with one item per line to make missing commas obvious.",
    ),
    "missing quotes": (
        "String literals are missing required quotes.",
        "Wrap text values in single quotes and escape embedded quotes properly.",
        "Consistently quote all string literals and verify special characters are escaped.",
    ),
    "missing semicolons": (
        "A statement terminator may be missing.",
        "End each SQL statement with a semicolon for clarity.",
        "Use semicolons consistently, especially in multi-statement batches.",
    ),
    "misspelling": (
        "A keyword or identifier appears to be misspelled.",
        "Compare the spelling against the schema and SQL keywords.",
        "Use consistent naming conventions and verify against the database catalog.",
    ),
    "non-standard operators": (
        "An operator is not recognized or is non-standard.",
        "Replace with standard SQL operators (e.g., = instead of ==).",
        "Verify operator syntax in the target SQL dialect documentation.",
    ),
    "operator misuse": (
        "An operator is being used incorrectly for this context.",
        "Check that the operator fits the data types and logic of the comparison.",
        "Review operator precedence and use parentheses to clarify intent.",
    ),
    "unmatched brackets": (
        "Opening and closing brackets or parentheses do not match.",
        "Count brackets to locate the mismatch and ensure proper nesting.",
        "Balance every opening bracket with a corresponding closing bracket.",
    ),
}

SUBTYPE_ALIASES: dict[str, str] = {
    "unknown column": "undefined column",
    "no such column": "undefined column",
    "column not found": "undefined column",
    "unknown table": "undefined table",
    "no such table": "undefined table",
    "table not found": "undefined table",
    "unknown function": "undefined function",
    "no such function": "undefined function",
    "function not found": "undefined function",
    "ambiguous column": "ambiguous reference",
    "ambiguous table": "ambiguous reference",
    "ambiguous identifier": "ambiguous reference",
}

EXPLICIT_SUBTYPE_CONCEPTS: dict[str, tuple[str, ...]] = {
    "aggregation misuse": ("aggregation",),
    "ambiguous reference": ("joins",),
    "data type mismatch": ("where-clause",),
    "incomplete query": ("select-basic",),
    "incorrect distinct usage": ("select-basic",),
    "incorrect group by usage": ("aggregation",),
    "incorrect having clause": ("aggregation",),
    "incorrect join usage": ("joins",),
    "incorrect order by usage": ("order-by",),
    "incorrect select usage": ("select-basic",),
    "incorrect wildcard usage": ("select-basic",),
    "inefficient query": ("select-basic",),
    "missing commas": ("select-basic",),
    "missing quotes": ("select-basic",),
    "missing semicolons": ("select-basic",),
    "misspelling": ("where-clause",),
    "non-standard operators": ("where-clause",),
    "operator misuse": ("where-clause",),
    "undefined column": ("select-basic",),
    "undefined function": ("aggregation",),
    "undefined table": ("joins",),
    "unmatched brackets": ("where-clause",),
    "wrong positioning": ("order-by",),
}

# Built-in rows; replaced wholesale by load_anchor_catalog()
_BUILTIN_ANCHORS: tuple[GroundingAnchor, ...] = (
    GroundingAnchor("sql-engage:1", "incomplete query",
                    "Complete the query structure before execution.",
                    "Build valid SQL statements incrementally."),
    GroundingAnchor("sql-engage:2", "incomplete query",
                    "Add the missing FROM clause naming the source table.",
                    "Recognize the minimum clauses a SELECT statement requires."),
    GroundingAnchor("sql-engage:3", "undefined table",
                    "Use the table name exactly as it appears in the schema.",
                    "Map every table reference to an existing schema object."),
    GroundingAnchor("sql-engage:4", "undefined column",
                    "Replace 'user_name' with a column that exists in the table.",
                    "Select columns that are defined in the referenced tables."),
    GroundingAnchor("sql-engage:5", "undefined column",
                    "Check the column list against the table definition.",
                    "Verify column identifiers against the schema before running a query."),
    GroundingAnchor("sql-engage:6", "undefined function",
                    "Use an aggregate function supported by the dialect.",
                    "Choose functions that exist in the target SQL dialect."),
    GroundingAnchor("sql-engage:7", "ambiguous reference",
                    "Qualify the shared column with its table alias.",
                    "Disambiguate columns that appear in more than one joined table."),
    GroundingAnchor("sql-engage:8", "wrong positioning",
                    "Move the WHERE clause before ORDER BY.",
                    "Write clauses in the order SQL evaluates them syntactically."),
    GroundingAnchor("sql-engage:9", "aggregation misuse",
                    "Group by every non-aggregated column in the SELECT list.",
                    "Combine aggregate functions with a matching GROUP BY."),
    GroundingAnchor("sql-engage:10", "data type mismatch",
                    "Compare the numeric column with a number, not a string.",
                    "Match literal types to column types in predicates."),
    GroundingAnchor("sql-engage:11", "incorrect distinct usage",
                    "Remove DISTINCT when the key already guarantees uniqueness.",
                    "Apply DISTINCT only when duplicate rows must be removed."),
    GroundingAnchor("sql-engage:12", "incorrect group by usage",
                    "Add the missing column to GROUP BY.",
                    "Define groups that match the non-aggregated output columns."),
    GroundingAnchor("sql-engage:13", "incorrect having clause",
                    "Move the row-level condition from HAVING into WHERE.",
                    "Distinguish row filters from group filters."),
    GroundingAnchor("sql-engage:14", "incorrect join usage",
                    "Join on the foreign key column instead of the name column.",
                    "Write join conditions that relate matching keys."),
    GroundingAnchor("sql-engage:15", "incorrect order by usage",
                    "Sort by the requested column in descending order.",
                    "Order result sets by the columns the task specifies."),
    GroundingAnchor("sql-engage:16", "incorrect select usage",
                    "Select only the columns the task asks for.",
                    "Project exactly the required columns."),
    GroundingAnchor("sql-engage:17", "incorrect wildcard usage",
                    "Replace SELECT * with the named columns.",
                    "Prefer explicit column lists over wildcards."),
    GroundingAnchor("sql-engage:18", "inefficient query",
                    "Replace the correlated subquery with a join.",
                    "Recognize simpler equivalent query formulations."),
    GroundingAnchor("sql-engage:19", "missing commas",
                    "Insert a comma between the selected columns.",
                    "Separate list items in SELECT and FROM with commas."),
    GroundingAnchor("sql-engage:20", "missing quotes",
                    "Wrap the text literal in single quotes.",
                    "Quote string literals in predicates."),
    GroundingAnchor("sql-engage:21", "missing semicolons",
                    "Terminate the statement with a semicolon.",
                    "End each SQL statement explicitly."),
    GroundingAnchor("sql-engage:22", "misspelling",
                    "Correct the spelling of the keyword 'SELCT'.",
                    "Spell SQL keywords and identifiers precisely."),
    GroundingAnchor("sql-engage:23", "non-standard operators",
                    "Use = for equality instead of ==.",
                    "Use standard SQL comparison operators."),
    GroundingAnchor("sql-engage:24", "operator misuse",
                    "Use IN for set membership instead of =.",
                    "Pick operators that match the comparison being made."),
    GroundingAnchor("sql-engage:25", "unmatched brackets",
                    "Close the parenthesis opened in the subquery.",
                    "Balance parentheses in nested expressions."),
)


@dataclass
class AnchorCatalog:
    """Grounding rows indexed by canonical subtype."""
    rows: list[GroundingAnchor] = field(default_factory=list)
    by_subtype: dict[str, list[GroundingAnchor]] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: list[GroundingAnchor]) -> "AnchorCatalog":
        index: dict[str, list[GroundingAnchor]] = {}
        for row in rows:
            key = row.error_subtype.strip().lower()
            if not key:
                continue
            index.setdefault(key, []).append(row)
        return cls(rows=list(rows), by_subtype=index)

    @property
    def canonical_subtypes(self) -> list[str]:
        known = set(self.by_subtype) | set(SUBTYPE_LADDER_GUIDANCE)
        return sorted(known)


_active_catalog = AnchorCatalog.from_rows(list(_BUILTIN_ANCHORS))


def get_anchor_catalog() -> AnchorCatalog:
    return _active_catalog


def set_anchor_catalog(catalog: AnchorCatalog) -> None:
    global _active_catalog
    _active_catalog = catalog


def load_anchor_catalog(path: str | Path) -> AnchorCatalog:
    """
    Load grounding rows from a CSV dataset.

    Expected columns: error_subtype, feedback_target, intended_learning_outcome,
    and optionally rowId/row_id, query, error_type. Rows without an id get a
    positional 'sql-engage:{n}' id.
    """
    csv_path = Path(path)
    rows: list[GroundingAnchor] = []
    with csv_path.open("r", encoding="utf-8", newline="") as handle:
        for position, record in enumerate(csv.DictReader(handle), start=1):
            subtype = (record.get("error_subtype") or "").strip().lower()
            if not subtype:
                continue
            row_id = (record.get("rowId") or record.get("row_id") or "").strip()
            rows.append(
                GroundingAnchor(
                    row_id=row_id or f"sql-engage:{position}",
                    error_subtype=subtype,
                    feedback_target=(record.get("feedback_target") or "").strip(),
                    intended_learning_outcome=(record.get("intended_learning_outcome") or "").strip(),
                    query=(record.get("query") or "").strip(),
                    error_type=(record.get("error_type") or "construction").strip(),
                )
            )
    logger.info(f"Loaded {len(rows)} grounding rows from {csv_path.name}")
    return AnchorCatalog.from_rows(rows)


# =============================================================================
# Lookup helpers
# =============================================================================


def _seed_hash(text: str) -> int:
    """Polynomial-31 string hash used to pick a row from a seed."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return value


def get_concept(concept_id: str) -> Optional[ConceptNode]:
    return _CONCEPTS_BY_ID.get(concept_id)


def known_subtypes() -> list[str]:
    return sorted(SUBTYPE_LADDER_GUIDANCE)


def canonicalize_subtype(subtype: Optional[str]) -> str:
    """Resolve aliases; unknown or blank subtypes fall back to 'incomplete query'."""
    raw = (subtype or "").strip().lower()
    if not raw:
        return DEFAULT_SUBTYPE
    aliased = SUBTYPE_ALIASES.get(raw, raw)
    if aliased in SUBTYPE_LADDER_GUIDANCE or aliased in get_anchor_catalog().by_subtype:
        return aliased
    return DEFAULT_SUBTYPE


def rows_for_subtype(subtype: str) -> list[GroundingAnchor]:
    return list(get_anchor_catalog().by_subtype.get(canonicalize_subtype(subtype), []))


def _fallback_anchor() -> GroundingAnchor:
    catalog = get_anchor_catalog()
    default_rows = catalog.by_subtype.get(DEFAULT_SUBTYPE)
    if default_rows:
        return default_rows[0]
    if catalog.rows:
        first = catalog.rows[0]
        return replace(first, error_subtype=canonicalize_subtype(first.error_subtype))
    return GroundingAnchor(
        row_id=SYNTHETIC_FALLBACK_ROW_ID,
        error_subtype=DEFAULT_SUBTYPE,
        feedback_target="Complete the query structure before execution.",
        intended_learning_outcome="Build valid SQL statements incrementally.",
    )


def deterministic_anchor(subtype: Optional[str], seed: str) -> GroundingAnchor:
    """Pick the grounding row for a seed; identical inputs always pick the same row."""
    canonical = canonicalize_subtype(subtype)
    rows = get_anchor_catalog().by_subtype.get(canonical) or [_fallback_anchor()]
    row = rows[_seed_hash(f"{canonical}|{seed}") % len(rows)]
    return replace(
        row,
        row_id=row.row_id.strip() or SYNTHETIC_FALLBACK_ROW_ID,
        error_subtype=canonicalize_subtype(row.error_subtype or canonical),
    )


def _normalize_spacing(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _scrub_identifiers(text: str) -> str:
    """Replace quoted identifiers so hints do not give away exact names."""
    text = re.sub(r"'[\w\s._]+'", "the referenced item", text)
    text = re.sub(r'"[\w\s._]+"', "the referenced item", text)
    return _normalize_spacing(text)


def _append_sentence(base: str, addon: str) -> str:
    cleaned = _normalize_spacing(addon)
    if not cleaned:
        return base
    if not re.search(r"[.!?]$", cleaned):
        cleaned = f"{cleaned}."
    return f"{base} {cleaned}"


def progressive_hint_text(
    subtype: Optional[str],
    hint_level: int,
    anchor: Optional[GroundingAnchor] = None,
) -> str:
    """Hint text for a rung; rungs 2 and 3 append the scrubbed anchor guidance."""
    canonical = canonicalize_subtype(subtype)
    level = max(1, min(3, int(hint_level)))
    ladder = SUBTYPE_LADDER_GUIDANCE.get(canonical) or SUBTYPE_LADDER_GUIDANCE[DEFAULT_SUBTYPE]

    if level == 1:
        return ladder[0]
    if level == 2:
        outcome = anchor.intended_learning_outcome if anchor else ""
        return _append_sentence(ladder[1], _scrub_identifiers(outcome))
    feedback = anchor.feedback_target if anchor else ""
    return _append_sentence(ladder[2], _scrub_identifiers(feedback))


def concept_ids_for_subtype(subtype: Optional[str]) -> list[str]:
    if not subtype:
        return []
    concept_ids = EXPLICIT_SUBTYPE_CONCEPTS.get(canonicalize_subtype(subtype), ())
    return [cid for cid in concept_ids if cid in _CONCEPTS_BY_ID] or ["select-basic"]


def _looks_like_wrong_positioning(query: str) -> bool:
    compact = query.strip().lower()
    return compact.startswith(("from ", "where ", "group by ", "order by ", "join "))


def _looks_incomplete(query: str) -> bool:
    compact = query.strip().lower()
    return bool(compact) and bool(
        re.search(r"(\bselect\b|\bfrom\b|\bwhere\b|\bgroup by\b|\border by\b|\bjoin\b)\s*$", compact)
    )


_ERROR_PATTERNS: tuple[tuple[str, str], ...] = (
    (r"no such column|unknown column|has no column named|column not found|does not exist.*column|invalid column",
     "undefined column"),
    (r"no such table|unknown table|no such relation|table not found|does not exist.*table|invalid table|no such view",
     "undefined table"),
    (r"no such function|unknown function|undefined function|function not found",
     "undefined function"),
    (r"ambiguous column|ambiguous table|ambiguous reference|is ambiguous|ambiguous identifier",
     "ambiguous reference"),
)


def classify_error_message(error_message: str, query: str = "") -> str:
    """Map a SQLite error message (and the failing query) to a canonical subtype."""
    error = (error_message or "").lower()

    for pattern, subtype in _ERROR_PATTERNS:
        if re.search(pattern, error):
            return canonicalize_subtype(subtype)
    if re.search(r"incomplete input|unterminated|unexpected end|unexpected eof|incomplete sql", error) \
            or _looks_incomplete(query):
        return canonicalize_subtype("incomplete query")
    if re.search(r"syntax error|unexpected token|wrong order", error) and _looks_like_wrong_positioning(query):
        return canonicalize_subtype("wrong positioning")
    if re.search(r"datatype mismatch|type mismatch|cannot convert|incompatible types", error):
        return canonicalize_subtype("data type mismatch")
    if re.search(r"division by zero|divide by zero|like pattern|invalid escape", error):
        return canonicalize_subtype("operator misuse")
    if re.search(r"unmatched.*(bracket|parenthes)|unclosed.*paren|mismatched.*bracket", error):
        return canonicalize_subtype("unmatched brackets")
    if re.search(r"missing comma|expected comma", error):
        return canonicalize_subtype("missing commas")
    return DEFAULT_SUBTYPE
