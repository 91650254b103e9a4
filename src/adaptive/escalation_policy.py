"""
Escalation Policy.

Decides, for the problem a learner is working on, whether to:
- Stay at the hint level (progressive hints)
- Escalate to a full explanation
- Aggregate what was learned into the learner's textbook

Decisions are pure functions of the interaction history, the learner's
strategy and an explicit "now" so that historical traces can be replayed
bit-for-bit (see replay_decision_trace).

Rule order:
1. No errors on the problem               -> show_hint
2. Hint threshold reached, no explanation -> show_explanation (auto-escalation)
3. Error + retry threshold met            -> show_explanation
4. Error aggregate threshold or long time -> add_to_textbook
5. Otherwise                              -> show_hint at the next level
"""
from __future__ import annotations

import math
from typing import Any, Iterable, Optional, Union

from loguru import logger

from src.adaptive.hint_catalog import (
    POLICY_VERSION,
    SYNTHETIC_FALLBACK_ROW_ID,
    canonicalize_subtype,
    deterministic_anchor,
    progressive_hint_text,
)
from src.adaptive.models import (
    STRATEGY_THRESHOLDS,
    AdaptiveDecision,
    AutoEscalationMode,
    AutoEscalationState,
    DecisionContext,
    DecisionRule,
    DecisionType,
    EventType,
    HintSelection,
    InteractionEvent,
    LearnerProfile,
    ReplayDecisionPoint,
    Strategy,
    StrategyThresholds,
    parse_strategy,
)
from src.core.hashing import create_input_hash

POLICY_SEMANTICS_VERSION = "orchestrator-auto-escalation-variant-v2"

REPLAY_EVENT_TYPES = frozenset({
    EventType.EXECUTION,
    EventType.ERROR,
    EventType.HINT_VIEW,
    EventType.EXPLANATION_VIEW,
})

MAX_HINT_LEVEL = 3
RECENT_ERROR_WINDOW = 5
DEFAULT_HINT_THRESHOLD = 3
DEFAULT_AGGREGATION_TIME_MS = 600_000

EventLike = Union[InteractionEvent, dict]


def _coerce_events(events: Optional[Iterable[EventLike]]) -> list[InteractionEvent]:
    """Accept events or raw dict records; anything else is dropped."""
    coerced: list[InteractionEvent] = []
    for event in events or []:
        if isinstance(event, InteractionEvent):
            coerced.append(event)
        elif isinstance(event, dict):
            coerced.append(InteractionEvent.from_dict(event))
        else:
            logger.warning(f"Skipping malformed interaction of type {type(event).__name__}")
    return coerced


def _parse_mode(mode: Any, default: AutoEscalationMode) -> AutoEscalationMode:
    if isinstance(mode, AutoEscalationMode):
        return mode
    if mode is None:
        return default
    try:
        return AutoEscalationMode(str(mode).strip())
    except ValueError:
        return default


def _format_threshold(value: float) -> str:
    if not math.isfinite(value):
        return "Infinity"
    return str(int(value)) if float(value).is_integer() else str(value)


class EscalationPolicy:
    """
    Stateless escalation policy.

    Instantiate once and pass it to whoever needs decisions; nothing is cached
    between calls.
    """

    def __init__(
        self,
        hint_threshold: int = DEFAULT_HINT_THRESHOLD,
        aggregation_time_ms: int = DEFAULT_AGGREGATION_TIME_MS,
        default_mode: AutoEscalationMode = AutoEscalationMode.ALWAYS_AFTER_HINT_THRESHOLD,
    ):
        self.hint_threshold = max(1, int(hint_threshold))
        self.aggregation_time_ms = int(aggregation_time_ms)
        self.default_mode = _parse_mode(default_mode, AutoEscalationMode.ALWAYS_AFTER_HINT_THRESHOLD)

    @classmethod
    def from_settings(cls, settings: Any) -> "EscalationPolicy":
        return cls(
            hint_threshold=settings.hint_escalation_threshold,
            aggregation_time_ms=settings.aggregation_time_ms,
            default_mode=settings.auto_escalation_mode,
        )

    @staticmethod
    def get_thresholds(strategy: Any) -> StrategyThresholds:
        """Thresholds for a strategy; unknown strategies use adaptive-medium."""
        return STRATEGY_THRESHOLDS[parse_strategy(strategy)]

    @staticmethod
    def get_policy_semantics_version() -> str:
        return POLICY_SEMANTICS_VERSION

    # =========================================================================
    # Decisions
    # =========================================================================

    def make_decision(
        self,
        profile: LearnerProfile,
        interactions: Iterable[EventLike],
        problem_id: str,
        now: int,
        auto_escalation_mode: Optional[AutoEscalationMode] = None,
    ) -> AdaptiveDecision:
        """
        Decide what the learner should see next on a problem.

        Args:
            profile: Learner profile (its strategy selects the thresholds)
            interactions: Interaction history, any order
            problem_id: Problem being worked on
            now: Current time in epoch milliseconds
            auto_escalation_mode: Overrides the policy's default mode

        Returns:
            AdaptiveDecision with the context it was computed from
        """
        events = _coerce_events(interactions)
        problem_key = problem_id or ""
        mode = _parse_mode(auto_escalation_mode, self.default_mode)

        context = self.analyze_context(events, problem_key, now)
        thresholds = self.get_thresholds(profile.current_strategy)
        auto_state = self.get_auto_escalation_state(events, problem_key)
        decision, rule, reasoning = self._select_decision(context, thresholds, auto_state, mode)

        return AdaptiveDecision(
            timestamp=now,
            learner_id=profile.id or "",
            context=context,
            decision=decision,
            rule_fired=rule,
            reasoning=reasoning,
        )

    def analyze_context(
        self,
        interactions: Iterable[EventLike],
        problem_id: str,
        now: int,
    ) -> DecisionContext:
        """Summarize one problem's interactions (list order is preserved)."""
        problem_events = [e for e in _coerce_events(interactions) if e.problem_id == problem_id]
        errors = [e for e in problem_events if e.event_type == EventType.ERROR]
        hint_views = [e for e in problem_events if e.event_type == EventType.HINT_VIEW]

        recent_errors = [
            e.error_subtype_id for e in errors[-RECENT_ERROR_WINDOW:] if e.error_subtype_id
        ]
        time_spent = now - problem_events[0].timestamp if problem_events else 0

        return DecisionContext(
            error_count=len(errors),
            # failed re-attempts after the first failure
            retry_count=max(0, len(errors) - 1),
            time_spent=time_spent,
            current_hint_level=min(len(hint_views), MAX_HINT_LEVEL),
            recent_errors=recent_errors,
        )

    def get_auto_escalation_state(
        self,
        interactions: Iterable[EventLike],
        problem_id: str,
        hint_threshold: Optional[int] = None,
    ) -> AutoEscalationState:
        """
        Whether hint exhaustion alone warrants an explanation.

        The Nth hint view on the problem is the threshold hint. Escalation is
        due when no explanation was viewed at or after it. The trigger is the
        latest error at or after the threshold hint, else the hint itself.
        """
        threshold = max(1, int(hint_threshold or self.hint_threshold))
        problem_events = sorted(
            (e for e in _coerce_events(interactions) if e.problem_id == problem_id),
            key=lambda e: e.timestamp,
        )
        hint_views = [e for e in problem_events if e.event_type == EventType.HINT_VIEW]

        if len(hint_views) < threshold:
            return AutoEscalationState(should_escalate=False, hint_count=len(hint_views))

        threshold_hint = hint_views[threshold - 1]
        explained = any(
            e.event_type == EventType.EXPLANATION_VIEW and e.timestamp >= threshold_hint.timestamp
            for e in problem_events
        )
        latest_error = next(
            (
                e for e in reversed(problem_events)
                if e.event_type == EventType.ERROR and e.timestamp >= threshold_hint.timestamp
            ),
            None,
        )
        trigger_id = (latest_error.id if latest_error and latest_error.id else None) or threshold_hint.id

        return AutoEscalationState(
            should_escalate=not explained,
            hint_count=len(hint_views),
            trigger_interaction_id=trigger_id or None,
        )

    def _select_decision(
        self,
        context: DecisionContext,
        thresholds: StrategyThresholds,
        auto_state: AutoEscalationState,
        mode: AutoEscalationMode,
    ) -> tuple[DecisionType, DecisionRule, str]:
        if context.error_count == 0:
            return (
                DecisionType.SHOW_HINT,
                DecisionRule.NO_ERRORS_SHOW_HINT,
                "No errors detected, showing basic hint",
            )

        threshold_met = context.error_count >= thresholds.escalate and context.retry_count >= 2
        should_auto_escalate = (
            math.isfinite(thresholds.escalate)
            and auto_state.should_escalate
            and (mode == AutoEscalationMode.ALWAYS_AFTER_HINT_THRESHOLD or threshold_met)
        )

        if should_auto_escalate:
            if mode == AutoEscalationMode.THRESHOLD_GATED:
                reasoning = (
                    f"Threshold-gated auto-escalation triggered after {auto_state.hint_count} "
                    f"hints and threshold match"
                )
            else:
                reasoning = (
                    f"Auto-escalation triggered after {auto_state.hint_count} hints "
                    f"with no explanation yet"
                )
            return DecisionType.SHOW_EXPLANATION, DecisionRule.AUTO_ESCALATION_AFTER_HINTS, reasoning

        escalate_label = _format_threshold(thresholds.escalate)

        if threshold_met:
            return (
                DecisionType.SHOW_EXPLANATION,
                DecisionRule.ESCALATION_THRESHOLD_MET,
                f"Error count ({context.error_count}) and retries ({context.retry_count}) "
                f"exceed escalation threshold ({escalate_label})",
            )

        # either condition alone aggregates
        if context.error_count >= thresholds.aggregate or context.time_spent > self.aggregation_time_ms:
            seconds = int(math.floor(context.time_spent / 1000 + 0.5))
            return (
                DecisionType.ADD_TO_TEXTBOOK,
                DecisionRule.AGGREGATION_THRESHOLD_MET,
                f"High error count ({context.error_count}) or extended time ({seconds}s) "
                f"suggests need for comprehensive notes",
            )

        return (
            DecisionType.SHOW_HINT,
            DecisionRule.PROGRESSIVE_HINT,
            f"Below escalation threshold ({escalate_label}), "
            f"showing level {context.current_hint_level + 1} hint",
        )

    # =========================================================================
    # Replay
    # =========================================================================

    @staticmethod
    def get_policy_replay_trace(events: Iterable[EventLike]) -> list[InteractionEvent]:
        """Decision-relevant events with a problem id, stably sorted by time."""
        relevant = [
            e for e in _coerce_events(events)
            if e.problem_id and e.event_type in REPLAY_EVENT_TYPES
        ]
        return sorted(relevant, key=lambda e: e.timestamp)

    def replay_decision_trace(
        self,
        profile: LearnerProfile,
        events: Iterable[EventLike],
        strategy_override: Any,
        mode: Optional[AutoEscalationMode] = None,
    ) -> list[ReplayDecisionPoint]:
        """
        Recompute the decision after every event of a historical trace.

        Each point sees only the events up to and including itself, with the
        event's own timestamp as "now", so replays are reproducible.
        """
        trace = self.get_policy_replay_trace(events)
        strategy = parse_strategy(strategy_override)
        thresholds = self.get_thresholds(strategy)
        replay_mode = _parse_mode(mode, self.default_mode)

        points: list[ReplayDecisionPoint] = []
        running: list[InteractionEvent] = []
        for index, event in enumerate(trace, start=1):
            running.append(event)
            context = self.analyze_context(running, event.problem_id, event.timestamp)
            auto_state = self.get_auto_escalation_state(running, event.problem_id)
            decision, rule, reasoning = self._select_decision(
                context, thresholds, auto_state, replay_mode
            )
            points.append(
                ReplayDecisionPoint(
                    index=index,
                    event_id=event.id,
                    learner_id=profile.id or "",
                    timestamp=event.timestamp,
                    problem_id=event.problem_id,
                    event_type=event.event_type,
                    error_subtype_id=event.error_subtype_id,
                    strategy=strategy,
                    thresholds=thresholds,
                    context=context,
                    decision=decision,
                    rule_fired=rule,
                    policy_version=POLICY_VERSION,
                    policy_semantics_version=POLICY_SEMANTICS_VERSION,
                    auto_escalation_mode=replay_mode,
                    reasoning=reasoning,
                )
            )

        logger.debug(f"Replayed {len(points)} decision points for learner {profile.id!r} ({strategy.value})")
        return points

    @staticmethod
    def replay_fingerprint(points: Iterable[ReplayDecisionPoint]) -> str:
        """Hash of a replay, for comparing two runs of the same trace."""
        return create_input_hash([point.to_dict() for point in points])

    # =========================================================================
    # Hints
    # =========================================================================

    def get_next_hint(
        self,
        error_subtype_id: Optional[str],
        current_level: int,
        profile: LearnerProfile,
        problem_id: Optional[str],
        known_subtype_override: Optional[str] = None,
        is_subtype_override_active: bool = False,
        help_request_index: Optional[int] = None,
    ) -> HintSelection:
        """
        Select the next hint deterministically.

        The same learner, problem, subtype and level always resolve the same
        grounding row and therefore the same text.
        """
        if isinstance(help_request_index, (int, float)) and not isinstance(help_request_index, bool) \
                and math.isfinite(help_request_index):
            requested = int(help_request_index)
        else:
            try:
                requested = int(current_level) + 1
            except (TypeError, ValueError):
                requested = 1
        level = max(1, min(MAX_HINT_LEVEL, requested))

        effective_subtype = error_subtype_id
        if is_subtype_override_active:
            effective_subtype = known_subtype_override or error_subtype_id
        canonical = canonicalize_subtype(effective_subtype)

        learner_key = (profile.id or "").strip() or "anonymous-learner"
        problem_key = (problem_id or "").strip() or "unknown-problem"
        seed = f"{learner_key}|{problem_key}|{canonical}|L{level}"

        row = deterministic_anchor(canonical, seed)
        subtype_used = canonicalize_subtype(row.error_subtype or canonical)

        return HintSelection(
            hint_text=progressive_hint_text(subtype_used, level, row),
            error_subtype=subtype_used,
            grounding_row_id=row.row_id.strip() or SYNTHETIC_FALLBACK_ROW_ID,
            hint_level=level,
            policy_version=POLICY_VERSION,
            should_escalate=requested > MAX_HINT_LEVEL,
        )


__all__ = [
    "EscalationPolicy",
    "POLICY_SEMANTICS_VERSION",
    "REPLAY_EVENT_TYPES",
    "Strategy",
]
