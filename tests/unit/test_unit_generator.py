"""
Unit tests for the cached, single-flight content pipeline.

The text generator is a scripted fake; the store is in-memory.
"""

import asyncio
import json
import time

import pytest

from src.content.generation.unit_generator import (
    GenerateUnitOptions,
    InstructionalUnitGenerator,
    build_cache_key,
    filter_claimed_source_ids,
    normalize_source_ids,
    resolve_generation_params,
    select_pdf_citations,
)
from src.db.store import InMemoryStore
from src.integrations.ollama_client import DEFAULT_MODEL, GeneratorError
from src.textbook.models import (
    FallbackReason,
    GenerationParams,
    ParseMode,
    ParserStatus,
    UnitType,
)

MODEL_OUTPUT = json.dumps(
    {
        "title": "Checking column names",
        "content_markdown": "Only reference columns from the schema.",
        "key_points": ["Columns must exist"],
        "next_steps": ["Compare with the schema"],
        "common_pitfall": "Guessing column names",
        "source_ids": ["sql-engage:4", "made-up:1", "doc-1:p3:c2"],
    }
)


class SlowStore(InMemoryStore):
    """In-memory store whose cache reads block like a remote database."""

    def get_cache_record(self, cache_key):
        time.sleep(0.3)
        return super().get_cache_record(cache_key)


def options_for(bundle, **overrides):
    values = {"learner_id": "learner-1", "template_id": "explanation.v1", "bundle": bundle}
    values.update(overrides)
    return GenerateUnitOptions(**values)


@pytest.fixture
def make_pipeline(memory_store, fake_generator_factory):
    def build(**generator_kwargs):
        generator = fake_generator_factory(**generator_kwargs)
        return InstructionalUnitGenerator(generator=generator, store=memory_store), generator

    return build


class TestGenerateUnit:
    """Tests for a fresh generation."""

    @pytest.mark.asyncio
    async def test_successful_generation(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT, tokens_used=42)

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert len(generator.calls) == 1
        assert result.from_cache is False
        assert result.used_fallback is False
        assert result.fallback_reason == FallbackReason.NONE
        assert result.unit.title == "Checking column names"
        assert result.unit.type == UnitType.EXPLANATION
        assert result.unit.concept_ids == ["select-basic"]
        assert result.unit.source_interaction_ids == ["evt-6"]
        assert result.parse_telemetry.status == ParserStatus.SUCCESS
        assert result.parse_telemetry.mode == ParseMode.STRICT_JSON
        assert result.parse_telemetry.tokens_used == 42
        assert result.parse_telemetry.cache_hit is False
        assert result.parse_telemetry.retrieval_metrics.pdf_chunks_retrieved == 3

    @pytest.mark.asyncio
    async def test_ids_and_keys(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT)

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert result.input_hash.startswith("fnv1a32:")
        assert result.cache_key == f"learner-1::explanation.v1::{result.input_hash}"
        assert result.unit.id == f"unit-explanation.v1-{result.input_hash}"
        assert result.model == DEFAULT_MODEL

    @pytest.mark.asyncio
    async def test_claimed_sources_are_filtered_to_retrieved(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT)

        result = await pipeline.generate_unit(options_for(sample_bundle))
        provenance = result.unit.provenance

        assert provenance.retrieved_source_ids == ["sql-engage:4", "doc-1:p3:c2"]
        assert [c.to_dict() for c in provenance.retrieved_pdf_citations] == [
            {"doc_id": "doc-1", "chunk_id": "doc-1:p3:c2", "page": 3, "score": 0.9}
        ]
        assert result.unit.quality_score == 0.16

    @pytest.mark.asyncio
    async def test_markdown_is_rendered_and_sanitized(self, make_pipeline, sample_bundle):
        text = json.dumps(
            {
                "title": "T",
                "content_markdown": "Use **real** columns. <script>alert(1)</script>",
                "key_points": ["k"],
                "next_steps": ["n"],
            }
        )
        pipeline, _ = make_pipeline(text=text)

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert "<script" not in result.unit.content
        assert "alert(1)" not in result.unit.content
        assert "<strong>real</strong>" in result.unit.content
        assert "## Key Points" in result.markdown

    @pytest.mark.asyncio
    async def test_notebook_template_produces_summary(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT)

        result = await pipeline.generate_unit(options_for(sample_bundle, template_id="notebook_unit.v1"))
        assert result.unit.type == UnitType.SUMMARY

    @pytest.mark.asyncio
    async def test_unknown_template_resolves_to_explanation(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT)

        result = await pipeline.generate_unit(options_for(sample_bundle, template_id="mystery.v9"))

        assert result.cache_key.startswith("learner-1::explanation.v1::")
        assert result.unit.type == UnitType.EXPLANATION


class TestFallbacks:
    """Tests for deterministic fallback content."""

    @pytest.mark.asyncio
    async def test_replay_mode_never_calls_generator(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)

        result = await pipeline.generate_unit(options_for(sample_bundle, replay_mode=True))

        assert generator.calls == []
        assert result.used_fallback is True
        assert result.fallback_reason == FallbackReason.REPLAY_MODE
        assert result.parse_telemetry.status == ParserStatus.NOT_ATTEMPTED
        assert result.parse_telemetry.failure_reason == "replay_mode"
        assert result.unit.title == "Help with Employees in Sales"
        assert result.unit.provenance.retrieved_source_ids == [
            "sql-engage:4",
            "doc-1:p3:c2",
            "pdf:doc-1:p5",
        ]

    @pytest.mark.asyncio
    async def test_replay_output_is_not_cached(self, make_pipeline, memory_store, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)

        replayed = await pipeline.generate_unit(options_for(sample_bundle, replay_mode=True))
        live = await pipeline.generate_unit(options_for(sample_bundle))

        assert live.cache_key == replayed.cache_key
        assert live.from_cache is False
        assert live.fallback_reason == FallbackReason.NONE
        assert len(generator.calls) == 1
        assert memory_store.get_cache_record(live.cache_key).unit.provenance.fallback_reason == FallbackReason.NONE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text,reason", [("", "empty_response"), ("not json", "invalid_json")])
    async def test_unparseable_output(self, make_pipeline, sample_bundle, text, reason):
        pipeline, generator = make_pipeline(text=text)

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert len(generator.calls) == 1
        assert result.fallback_reason == FallbackReason.PARSE_FAILURE
        assert result.parse_telemetry.status == ParserStatus.FAILURE
        assert result.parse_telemetry.failure_reason == reason
        assert result.unit.provenance.fallback_reason == FallbackReason.PARSE_FAILURE
        assert "Help with Employees in Sales" in result.unit.content

    @pytest.mark.asyncio
    async def test_generator_error(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(error=GeneratorError("NETWORK", "connection refused"))

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert result.fallback_reason == FallbackReason.LLM_ERROR
        assert result.parse_telemetry.status == ParserStatus.NOT_ATTEMPTED
        assert result.parse_telemetry.failure_reason == "connection refused"

    @pytest.mark.asyncio
    async def test_generator_timeout(self, make_pipeline, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT, delay=1.0)

        result = await pipeline.generate_unit(options_for(sample_bundle, params={"timeout_ms": 50}))

        assert result.fallback_reason == FallbackReason.LLM_ERROR
        assert result.parse_telemetry.failure_reason == "Generator timed out after 50ms."

    @pytest.mark.asyncio
    async def test_fallback_content_is_sanitized(self, make_pipeline, sample_bundle):
        sample_bundle.problem_title = "<img src=x onerror=alert(1)>"
        pipeline, _ = make_pipeline(text="not json")

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert "<img" not in result.unit.content
        assert "onerror" not in result.unit.content


class TestCache:
    """Tests for cache reuse and single-flight."""

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)

        first = await pipeline.generate_unit(options_for(sample_bundle))
        second = await pipeline.generate_unit(options_for(sample_bundle))

        assert len(generator.calls) == 1
        assert second.from_cache is True
        assert second.unit.id == first.unit.id
        assert second.cache_key == first.cache_key
        assert second.parse_telemetry.cache_hit is True
        assert second.parse_telemetry.mode == ParseMode.STRICT_JSON

    @pytest.mark.asyncio
    async def test_cache_hit_merges_trigger_ids(self, make_pipeline, memory_store, sample_bundle):
        pipeline, _ = make_pipeline(text=MODEL_OUTPUT)

        first = await pipeline.generate_unit(options_for(sample_bundle))
        second = await pipeline.generate_unit(
            options_for(sample_bundle, trigger_interaction_ids=["evt-9", "evt-6"])
        )

        assert second.unit.source_interaction_ids == ["evt-6", "evt-9"]
        stored = memory_store.get_cache_record(first.cache_key)
        assert stored.unit.source_interaction_ids == ["evt-6", "evt-9"]

    @pytest.mark.asyncio
    async def test_cached_fallback_keeps_its_reason(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text="not json")

        await pipeline.generate_unit(options_for(sample_bundle))
        second = await pipeline.generate_unit(options_for(sample_bundle))

        assert len(generator.calls) == 1
        assert second.from_cache is True
        assert second.used_fallback is True
        assert second.fallback_reason == FallbackReason.PARSE_FAILURE

    @pytest.mark.asyncio
    async def test_params_change_the_key(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)

        first = await pipeline.generate_unit(options_for(sample_bundle))
        second = await pipeline.generate_unit(options_for(sample_bundle, params={"temperature": 0.7}))

        assert first.input_hash != second.input_hash
        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_call_generator_once(self, make_pipeline, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT, delay=0.05)

        results = await asyncio.gather(
            pipeline.generate_unit(options_for(sample_bundle)),
            pipeline.generate_unit(options_for(sample_bundle)),
        )

        assert len(generator.calls) == 1
        assert sorted(r.from_cache for r in results) == [False, True]
        assert pipeline._inflight == {}

    @pytest.mark.asyncio
    async def test_cache_record_without_provenance(self, make_pipeline, memory_store, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)
        input_hash = pipeline.compute_input_hash(
            "explanation.v1", DEFAULT_MODEL, GenerationParams(), sample_bundle
        )
        cache_key = build_cache_key("learner-1", "explanation.v1", input_hash)
        memory_store.put_raw_cache_record(
            cache_key,
            {
                "cache_key": cache_key,
                "learner_id": "learner-1",
                "template_id": "explanation.v1",
                "input_hash": input_hash,
                "unit": {"id": "unit-legacy", "type": "explanation", "title": "Legacy", "content": "<p>Old</p>"},
                "created_at": 1,
            },
        )

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert generator.calls == []
        assert result.unit.id == "unit-legacy"
        assert result.used_fallback is False
        assert result.parse_telemetry.failure_reason == "cache_record_missing_provenance"

    @pytest.mark.asyncio
    async def test_malformed_cache_record_is_a_miss(self, make_pipeline, memory_store, sample_bundle):
        pipeline, generator = make_pipeline(text=MODEL_OUTPUT)
        first = await pipeline.generate_unit(options_for(sample_bundle, replay_mode=True))
        memory_store.put_raw_cache_record(first.cache_key, {"cache_key": first.cache_key, "unit": {}})

        result = await pipeline.generate_unit(options_for(sample_bundle))

        assert result.from_cache is False
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_store_calls_leave_event_loop_free(self, fake_generator_factory, sample_bundle):
        pipeline = InstructionalUnitGenerator(generator=fake_generator_factory(text=MODEL_OUTPUT), store=SlowStore())
        started = time.perf_counter()

        task = asyncio.create_task(pipeline.generate_unit(options_for(sample_bundle)))
        for _ in range(5):
            await asyncio.sleep(0.01)

        assert time.perf_counter() - started < 0.25
        assert not task.done()
        result = await task
        assert result.from_cache is False


class TestHelpers:
    """Tests for params, source ids and citations."""

    def test_params_are_clamped(self):
        params = resolve_generation_params({"temperature": 5, "top_p": -1, "timeout_ms": 0})

        assert params.temperature == 2.0
        assert params.top_p == 0.0
        assert params.timeout_ms == 25000

    def test_camel_case_params_and_non_finite_values(self):
        params = resolve_generation_params({"topP": 0.5, "temperature": float("nan")})

        assert params.top_p == 0.5
        assert params.temperature == 0.0

    def test_params_object_replaces_defaults(self):
        defaults = GenerationParams(temperature=0.3, timeout_ms=9000)
        params = resolve_generation_params(GenerationParams(temperature=1.0), defaults)
        assert (params.temperature, params.timeout_ms) == (1.0, 25000)

    def test_normalize_source_ids(self):
        ids = [" pdf:a ", "sql-engage:2", "other", "doc:p1:c1", "sql-engage:2", ""]
        assert normalize_source_ids(ids) == ["sql-engage:2", "doc:p1:c1", "pdf:a", "other"]

    def test_no_surviving_claims_uses_all_retrieved(self):
        assert filter_claimed_source_ids(["ghost"], ["pdf:x", "sql-engage:1"]) == ["sql-engage:1", "pdf:x"]

    def test_citations_fall_back_to_all_passages(self, sample_bundle):
        citations = select_pdf_citations(sample_bundle, ["sql-engage:4"])
        assert [(c.chunk_id, c.score) for c in citations] == [("doc-1:p3:c2", 0.9), ("pdf:doc-1:p5", 0.4)]
