"""
Instructional Unit Generator.

Turns a retrieval bundle into a grounded InstructionalUnit:
1. Resolve generation params and hash the inputs (cache key)
2. Serve from the LLM cache when the same inputs were seen before
3. Otherwise render the prompt, call the text generator once, parse
4. Fall back to deterministic content on replay, generator error or
   unparseable output
5. Cache the unit (fallbacks included, replay output excluded) and report
   telemetry

Concurrent misses on one cache key are single-flighted: the second caller
waits for the first and is then served from the cache.

generate_unit() does not raise for generator or parser problems; those are
reported through fallback_reason and parse telemetry.
"""
from __future__ import annotations

import asyncio
import math
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Union

from loguru import logger

from src.content.generation.fallback import build_fallback_markdown, fallback_title
from src.content.generation.retrieval import RetrievalBundle
from src.content.generation.structured_output import (
    NOT_FOUND_TEXT,
    ParseTelemetry,
    RetrievalMetrics,
    StructuredTemplateOutput,
    parse_template_json,
)
from src.content.generation.templates import get_template, render_prompt
from src.content.rendering import ContentRenderer
from src.core.hashing import create_input_hash, stable_stringify
from src.db.store import LearningStore
from src.integrations.ollama_client import DEFAULT_MODEL, GeneratorResponse
from src.textbook.models import (
    FallbackReason,
    GenerationParams,
    InstructionalUnit,
    LLMCacheRecord,
    ParserStatus,
    PdfCitation,
    UnitProvenance,
    UnitType,
    now_ms,
)
from src.textbook.reconciliation import calculate_quality_score

DEFAULT_CONCEPT_ID = "select-basic"
MAX_TEMPERATURE = 2.0

_PASSAGE_ID_RE = re.compile(r":p\d+:c\d+$", re.IGNORECASE)


class TextGenerator(Protocol):
    """Anything that can complete a prompt (OllamaClient, test fakes)."""

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        params: Optional[GenerationParams] = None,
    ) -> GeneratorResponse: ...


@dataclass
class GenerateUnitOptions:
    learner_id: str
    template_id: str
    bundle: RetrievalBundle
    # None means the bundle's trigger ids
    trigger_interaction_ids: Optional[list[str]] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    params: Optional[Union[GenerationParams, dict]] = None
    replay_mode: bool = False


@dataclass
class GenerateUnitResult:
    unit: InstructionalUnit
    input_hash: str
    cache_key: str
    from_cache: bool
    used_fallback: bool
    fallback_reason: FallbackReason
    model: str
    params: GenerationParams
    parse_telemetry: ParseTelemetry
    generation_time_ms: int = 0
    # Markdown the content was rendered from; None for cache hits
    markdown: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "unit": self.unit.to_dict(),
            "input_hash": self.input_hash,
            "cache_key": self.cache_key,
            "from_cache": self.from_cache,
            "used_fallback": self.used_fallback,
            "fallback_reason": self.fallback_reason.value,
            "model": self.model,
            "params": self.params.to_dict(),
            "parse_telemetry": self.parse_telemetry.to_dict(),
            "generation_time_ms": self.generation_time_ms,
        }


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# =============================================================================
# Params, keys and sources
# =============================================================================


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def resolve_generation_params(
    params: Optional[Union[GenerationParams, dict]] = None,
    defaults: Optional[GenerationParams] = None,
) -> GenerationParams:
    """Overlay caller params on the defaults and clamp to valid ranges."""
    base = defaults or GenerationParams()
    overrides = params.to_dict() if isinstance(params, GenerationParams) else dict(params or {})

    temperature = overrides.get("temperature", base.temperature)
    top_p = overrides.get("top_p", overrides.get("topP", base.top_p))
    timeout_ms = overrides.get("timeout_ms", overrides.get("timeoutMs", base.timeout_ms))
    stream = overrides.get("stream", base.stream)

    return GenerationParams(
        temperature=min(MAX_TEMPERATURE, max(0.0, float(temperature))) if _finite(temperature) else base.temperature,
        top_p=min(1.0, max(0.0, float(top_p))) if _finite(top_p) else base.top_p,
        stream=bool(stream),
        timeout_ms=int(timeout_ms) if _finite(timeout_ms) and timeout_ms > 0 else base.timeout_ms,
    )


def build_cache_key(learner_id: str, template_id: str, input_hash: str) -> str:
    return f"{learner_id}::{template_id}::{input_hash}"


def _source_group(source_id: str) -> int:
    if source_id.startswith("sql-engage:"):
        return 0
    if source_id.startswith("pdf:") or _PASSAGE_ID_RE.search(source_id):
        return 1
    return 2


def normalize_source_ids(source_ids: list[str]) -> list[str]:
    """Trim, dedupe and order: grounding rows, then passages, then the rest."""
    unique = dict.fromkeys(s.strip() for s in source_ids if isinstance(s, str) and s.strip())
    return sorted(unique, key=lambda s: (_source_group(s), s))


def filter_claimed_source_ids(claimed: list[str], retrieved: list[str]) -> list[str]:
    """Keep only source ids that were actually retrieved; all retrieved ids if none survive."""
    retrieved_set = set(retrieved)
    kept = []
    for source_id in claimed:
        if source_id in retrieved_set:
            kept.append(source_id)
        else:
            logger.warning(f"Source id {source_id!r} from model output not in retrieved sources, dropped")
    return normalize_source_ids(kept or list(retrieved))


def select_pdf_citations(bundle: RetrievalBundle, source_ids: list[str]) -> list[PdfCitation]:
    """One citation per chunk (highest score) among selected passages, or all passages."""
    selected = set(source_ids)
    passages = [p for p in bundle.pdf_passages if p.chunk_id in selected] or bundle.pdf_passages

    by_chunk: dict[str, PdfCitation] = {}
    for passage in passages:
        existing = by_chunk.get(passage.chunk_id)
        if existing is None or passage.score > existing.score:
            by_chunk[passage.chunk_id] = PdfCitation(
                chunk_id=passage.chunk_id,
                page=passage.page,
                score=passage.score,
                doc_id=passage.doc_id or None,
            )
    return list(by_chunk.values())


def compose_markdown(output: StructuredTemplateOutput) -> str:
    lines = [
        output.content_markdown,
        "",
        "## Key Points",
        *(f"- {point}" for point in output.key_points),
        "",
        "## Next Steps",
        *(f"{index}. {step}" for index, step in enumerate(output.next_steps, start=1)),
        "",
        f"Common pitfall: {output.common_pitfall or NOT_FOUND_TEXT}",
    ]
    return "\n".join(lines)


def _retrieval_metrics(bundle: RetrievalBundle) -> RetrievalMetrics:
    return RetrievalMetrics(
        pdf_chunks_retrieved=len(bundle.pdf_passages),
        anchor_rows_used=1 if bundle.grounding_anchor else 0,
        hint_history_count=len(bundle.hint_history),
    )


def _telemetry_from_provenance(unit: InstructionalUnit) -> ParseTelemetry:
    provenance = unit.provenance
    if provenance is None:
        return ParseTelemetry(
            status=ParserStatus.NOT_ATTEMPTED,
            failure_reason="cache_record_missing_provenance",
        )
    return ParseTelemetry(
        status=provenance.parser_status or ParserStatus.NOT_ATTEMPTED,
        mode=provenance.parser_mode,
        attempts=provenance.parser_attempts,
        raw_length=provenance.parser_raw_length,
        failure_reason=provenance.parser_failure_reason,
    )


# =============================================================================
# Generator
# =============================================================================


class InstructionalUnitGenerator:
    """
    Cached, single-flight content pipeline.

    One instance should be shared per process so concurrent callers see the
    same in-flight locks.
    """

    def __init__(
        self,
        generator: TextGenerator,
        store: LearningStore,
        default_model: str = DEFAULT_MODEL,
        default_params: Optional[GenerationParams] = None,
        renderer: Optional[ContentRenderer] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            generator: Text generator used on cache misses
            store: Where LLM cache records are read and written
            default_model: Model used when options do not name one
            default_params: Params the caller's params are overlaid on
            renderer: Markdown renderer/sanitizer for stored content
        """
        self.generator = generator
        self.store = store
        self.default_model = default_model
        self.default_params = default_params or GenerationParams()
        self.renderer = renderer or ContentRenderer()
        self._inflight: dict[str, _Flight] = {}

    @classmethod
    def from_settings(cls, generator: TextGenerator, store: LearningStore, settings: Any) -> "InstructionalUnitGenerator":
        return cls(
            generator=generator,
            store=store,
            default_model=settings.llm_model,
            default_params=resolve_generation_params(
                {
                    "temperature": settings.llm_temperature,
                    "top_p": settings.llm_top_p,
                    "timeout_ms": settings.llm_timeout_ms,
                }
            ),
        )

    @asynccontextmanager
    async def _single_flight(self, cache_key: str) -> AsyncIterator[None]:
        flight = self._inflight.get(cache_key)
        if flight is None:
            flight = self._inflight[cache_key] = _Flight()
        flight.users += 1
        try:
            async with flight.lock:
                yield
        finally:
            flight.users -= 1
            if flight.users == 0:
                self._inflight.pop(cache_key, None)

    def compute_input_hash(self, template_id: str, model: str, params: GenerationParams, bundle: RetrievalBundle) -> str:
        return create_input_hash(
            {
                "template_id": template_id,
                "model": model,
                "params": params.to_dict(),
                "bundle": bundle.hash_projection(),
            }
        )

    async def generate_unit(self, options: GenerateUnitOptions) -> GenerateUnitResult:
        """
        Produce a unit for the bundle, from cache when possible.

        Args:
            options: Learner, template, bundle and generation overrides

        Returns:
            GenerateUnitResult; used_fallback/fallback_reason say whether
            the content came from the model or the deterministic builder
        """
        started = time.perf_counter()
        template_id = get_template(options.template_id).id
        model = options.model or self.default_model
        params = resolve_generation_params(options.params, self.default_params)
        input_hash = self.compute_input_hash(template_id, model, params, options.bundle)
        cache_key = build_cache_key(options.learner_id, template_id, input_hash)
        trigger_ids = list(
            options.trigger_interaction_ids
            if options.trigger_interaction_ids is not None
            else options.bundle.trigger_interaction_ids
        )

        async with self._single_flight(cache_key):
            # store calls may block (SQLAlchemy), keep them off the event loop
            cached = await asyncio.to_thread(self.store.get_cache_record, cache_key)
            if cached is not None:
                return await self._serve_cached(cached, trigger_ids, input_hash, model, params, started)

            logger.info(f"LLM cache miss for {cache_key}")
            result = await self._generate_fresh(
                options, template_id, model, params, input_hash, cache_key, trigger_ids, started
            )
            if result.fallback_reason == FallbackReason.REPLAY_MODE:
                # replay output never stands in for a live generation
                return result
            await asyncio.to_thread(
                self.store.save_cache_record,
                LLMCacheRecord(
                    cache_key=cache_key,
                    learner_id=options.learner_id,
                    template_id=template_id,
                    input_hash=input_hash,
                    unit=result.unit,
                    created_at=now_ms(),
                )
            )
            return result

    async def _serve_cached(
        self,
        cached: LLMCacheRecord,
        trigger_ids: list[str],
        input_hash: str,
        model: str,
        params: GenerationParams,
        started: float,
    ) -> GenerateUnitResult:
        merged_ids = list(dict.fromkeys([*cached.unit.source_interaction_ids, *trigger_ids]))
        cached.unit.source_interaction_ids = merged_ids
        await asyncio.to_thread(self.store.save_cache_record, cached)

        elapsed = int(round((time.perf_counter() - started) * 1000))
        telemetry = _telemetry_from_provenance(cached.unit)
        telemetry.cache_hit = True
        telemetry.generation_time_ms = elapsed
        fallback_reason = cached.unit.provenance.fallback_reason if cached.unit.provenance else FallbackReason.NONE

        logger.info(f"LLM cache hit for {cached.cache_key}")
        return GenerateUnitResult(
            unit=cached.unit,
            input_hash=input_hash,
            cache_key=cached.cache_key,
            from_cache=True,
            used_fallback=fallback_reason != FallbackReason.NONE,
            fallback_reason=fallback_reason,
            model=model,
            params=params,
            parse_telemetry=telemetry,
            generation_time_ms=elapsed,
        )

    async def _generate_fresh(
        self,
        options: GenerateUnitOptions,
        template_id: str,
        model: str,
        params: GenerationParams,
        input_hash: str,
        cache_key: str,
        trigger_ids: list[str],
        started: float,
    ) -> GenerateUnitResult:
        bundle = options.bundle
        metrics = _retrieval_metrics(bundle)

        def elapsed_ms() -> int:
            return int(round((time.perf_counter() - started) * 1000))

        def fallback(reason: FallbackReason, telemetry: ParseTelemetry, used_model: str, used_params: GenerationParams) -> GenerateUnitResult:
            markdown = build_fallback_markdown(bundle)
            source_ids = normalize_source_ids(bundle.retrieved_source_ids)
            unit = self._build_unit(
                options, template_id, fallback_title(bundle), markdown, used_model, used_params,
                input_hash, source_ids, telemetry, reason, trigger_ids,
            )
            return GenerateUnitResult(
                unit=unit,
                input_hash=input_hash,
                cache_key=cache_key,
                from_cache=False,
                used_fallback=True,
                fallback_reason=reason,
                model=used_model,
                params=used_params,
                parse_telemetry=telemetry,
                generation_time_ms=telemetry.generation_time_ms or elapsed_ms(),
                markdown=markdown,
            )

        if options.replay_mode:
            logger.debug(f"Replay mode, skipping generator for {cache_key}")
            telemetry = ParseTelemetry(
                status=ParserStatus.NOT_ATTEMPTED,
                failure_reason="replay_mode",
                generation_time_ms=elapsed_ms(),
                cache_hit=False,
                retrieval_metrics=metrics,
            )
            return fallback(FallbackReason.REPLAY_MODE, telemetry, model, params)

        prompt = render_prompt(template_id, stable_stringify(bundle.to_dict()))
        try:
            response = await asyncio.wait_for(
                self.generator.generate(prompt, model=model, params=params),
                timeout=params.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            failure = f"Generator timed out after {params.timeout_ms}ms."
            logger.warning(f"LLM call failed for {cache_key}: {failure}")
            return fallback(FallbackReason.LLM_ERROR, self._error_telemetry(failure, elapsed_ms(), metrics), model, params)
        except Exception as e:  # any generator failure degrades to fallback content
            failure = str(e) or "llm_request_failed"
            logger.warning(f"LLM call failed for {cache_key}: {failure}")
            return fallback(FallbackReason.LLM_ERROR, self._error_telemetry(failure, elapsed_ms(), metrics), model, params)

        parsed = parse_template_json(response.text)
        telemetry = parsed.telemetry
        telemetry.generation_time_ms = elapsed_ms()
        telemetry.cache_hit = False
        telemetry.retrieval_metrics = metrics
        telemetry.tokens_used = response.tokens_used

        if parsed.output is None:
            logger.warning(f"Unparseable model output for {cache_key}: {telemetry.failure_reason}")
            return fallback(FallbackReason.PARSE_FAILURE, telemetry, response.model, response.params)

        output = parsed.output
        markdown = compose_markdown(output)
        source_ids = filter_claimed_source_ids(output.source_ids, bundle.retrieved_source_ids)
        title = output.title.strip() or fallback_title(bundle)
        unit = self._build_unit(
            options, template_id, title, markdown, response.model, response.params,
            input_hash, source_ids, telemetry, FallbackReason.NONE, trigger_ids,
        )
        return GenerateUnitResult(
            unit=unit,
            input_hash=input_hash,
            cache_key=cache_key,
            from_cache=False,
            used_fallback=False,
            fallback_reason=FallbackReason.NONE,
            model=response.model,
            params=response.params,
            parse_telemetry=telemetry,
            generation_time_ms=telemetry.generation_time_ms or 0,
            markdown=markdown,
        )

    @staticmethod
    def _error_telemetry(failure: str, elapsed: int, metrics: RetrievalMetrics) -> ParseTelemetry:
        return ParseTelemetry(
            status=ParserStatus.NOT_ATTEMPTED,
            attempts=0,
            raw_length=0,
            failure_reason=failure,
            generation_time_ms=elapsed,
            cache_hit=False,
            retrieval_metrics=metrics,
        )

    def _build_unit(
        self,
        options: GenerateUnitOptions,
        template_id: str,
        title: str,
        markdown: str,
        model: str,
        params: GenerationParams,
        input_hash: str,
        source_ids: list[str],
        telemetry: ParseTelemetry,
        fallback_reason: FallbackReason,
        trigger_ids: list[str],
    ) -> InstructionalUnit:
        bundle = options.bundle
        timestamp = now_ms()
        concept_ids = [c.id for c in bundle.concept_candidates if c.id]

        unit = InstructionalUnit(
            id=f"unit-{template_id}-{input_hash}",
            concept_id=concept_ids[0] if concept_ids else DEFAULT_CONCEPT_ID,
            concept_ids=concept_ids or [DEFAULT_CONCEPT_ID],
            type=UnitType.EXPLANATION if template_id == "explanation.v1" else UnitType.SUMMARY,
            title=title,
            content=self.renderer.render_safe(markdown),
            source_interaction_ids=list(dict.fromkeys(trigger_ids)),
            session_id=options.session_id,
            updated_session_ids=[options.session_id] if options.session_id else [],
            last_error_subtype_id=bundle.last_error_subtype_id or None,
            added_timestamp=timestamp,
            provenance=UnitProvenance(
                model=model,
                params=params,
                template_id=template_id,
                input_hash=input_hash,
                retrieved_source_ids=source_ids,
                retrieved_pdf_citations=select_pdf_citations(bundle, source_ids),
                created_at=timestamp,
                parser_status=telemetry.status,
                parser_mode=telemetry.mode,
                parser_attempts=telemetry.attempts,
                parser_raw_length=telemetry.raw_length,
                parser_failure_reason=telemetry.failure_reason,
                fallback_reason=fallback_reason,
            ),
        )
        unit.quality_score = calculate_quality_score(unit)
        return unit
