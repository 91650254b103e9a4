"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.content.generation.retrieval import RetrievalBundle  # noqa: E402
from src.db.store import InMemoryStore  # noqa: E402
from src.integrations.ollama_client import GeneratorResponse  # noqa: E402
from src.textbook.models import GenerationParams  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


class FakeGenerator:
    """Scripted TextGenerator: returns canned text or raises, and counts calls."""

    def __init__(self, text="", error=None, delay=0.0, tokens_used=None):
        self.text = text
        self.error = error
        self.delay = delay
        self.tokens_used = tokens_used
        self.calls = []

    async def generate(self, prompt, model=None, params=None):
        import asyncio

        self.calls.append({"prompt": prompt, "model": model, "params": params})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratorResponse(
            text=self.text,
            model=model or "fake-model",
            params=params or GenerationParams(),
            tokens_used=self.tokens_used,
        )


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def memory_store():
    """Fresh in-memory learning store."""
    return InMemoryStore()


@pytest.fixture
def fake_generator_factory():
    """Build FakeGenerator instances inside tests."""
    return FakeGenerator


@pytest.fixture
def sample_bundle_dict():
    """Retrieval bundle as written by the browser client (camelCase)."""
    return {
        "learnerId": "learner-1",
        "problemId": "problem-7",
        "problemTitle": "Employees in Sales",
        "schemaText": "employees(id, name, dept, salary)",
        "lastErrorSubtypeId": "undefined column",
        "hintHistory": [
            {"hintLevel": 1, "hintText": "Check the column names.", "interactionId": "evt-3"},
            {"hintLevel": 2, "hintText": "Compare against the schema.", "interactionId": "evt-5"},
        ],
        "sqlEngageAnchor": {
            "rowId": "sql-engage:4",
            "errorSubtype": "undefined column",
            "feedbackTarget": "Use columns that exist in the table.",
            "intendedLearningOutcome": "Reference valid columns.",
        },
        "conceptCandidates": [
            {"id": "select-basic", "name": "SELECT basics", "description": "Choosing columns"},
        ],
        "recentInteractionsSummary": {"errors": 3, "retries": 2, "timeSpent": 90000, "hintCount": 2},
        "retrievedSourceIds": ["doc-1:p3:c2", "sql-engage:4", "pdf:doc-1:p5"],
        "triggerInteractionIds": ["evt-6"],
        "pdfPassages": [
            {"docId": "doc-1", "chunkId": "doc-1:p3:c2", "page": 3, "text": "SELECT lists columns.", "score": 0.8},
            {"docId": "doc-1", "chunkId": "doc-1:p3:c2", "page": 3, "text": "SELECT lists columns.", "score": 0.9},
            {"docId": "doc-1", "chunkId": "pdf:doc-1:p5", "page": 5, "text": "WHERE filters rows.", "score": 0.4},
        ],
    }


@pytest.fixture
def sample_bundle(sample_bundle_dict):
    """Parsed retrieval bundle."""
    return RetrievalBundle.from_dict(sample_bundle_dict)
