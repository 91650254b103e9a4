"""
Adaptive Escalation Models.

Data models for the hint -> explanation -> textbook escalation ladder:
- Interaction events recorded while a learner works a problem
- Learner strategy profiles and their thresholds
- Decisions, decision context and policy replay points
- Deterministic hint selections
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """Kinds of learner interaction the engine understands."""
    ERROR = "error"
    EXECUTION = "execution"
    HINT_VIEW = "hint_view"
    EXPLANATION_VIEW = "explanation_view"
    TEXTBOOK_ADD = "textbook_add"
    TEXTBOOK_UPDATE = "textbook_update"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "EventType":
        try:
            return cls(str(value).strip())
        except ValueError:
            return cls.OTHER


class Strategy(str, Enum):
    """Escalation strategy assigned to a learner."""
    HINT_ONLY = "hint-only"
    ADAPTIVE_LOW = "adaptive-low"
    ADAPTIVE_MEDIUM = "adaptive-medium"
    ADAPTIVE_HIGH = "adaptive-high"


class DecisionType(str, Enum):
    """What the learner should be shown next."""
    SHOW_HINT = "show_hint"
    SHOW_EXPLANATION = "show_explanation"
    ADD_TO_TEXTBOOK = "add_to_textbook"


class DecisionRule(str, Enum):
    """Rule that produced a decision (recorded for auditing)."""
    NO_ERRORS_SHOW_HINT = "no-errors-show-hint"
    AUTO_ESCALATION_AFTER_HINTS = "auto-escalation-after-hints"
    ESCALATION_THRESHOLD_MET = "escalation-threshold-met"
    AGGREGATION_THRESHOLD_MET = "aggregation-threshold-met"
    PROGRESSIVE_HINT = "progressive-hint"


class AutoEscalationMode(str, Enum):
    """Whether hint exhaustion alone escalates, or also needs the error threshold."""
    ALWAYS_AFTER_HINT_THRESHOLD = "always-after-hint-threshold"
    THRESHOLD_GATED = "threshold-gated"


@dataclass(frozen=True)
class StrategyThresholds:
    """Error counts at which a strategy escalates and aggregates."""
    escalate: float
    aggregate: float

    def to_dict(self) -> dict:
        return {
            "escalate": _finite_or_none(self.escalate),
            "aggregate": _finite_or_none(self.aggregate),
        }


# escalate <= aggregate for every strategy
STRATEGY_THRESHOLDS: dict[Strategy, StrategyThresholds] = {
    Strategy.HINT_ONLY: StrategyThresholds(escalate=math.inf, aggregate=math.inf),
    Strategy.ADAPTIVE_LOW: StrategyThresholds(escalate=5, aggregate=10),
    Strategy.ADAPTIVE_MEDIUM: StrategyThresholds(escalate=3, aggregate=6),
    Strategy.ADAPTIVE_HIGH: StrategyThresholds(escalate=2, aggregate=4),
}

DEFAULT_STRATEGY = Strategy.ADAPTIVE_MEDIUM


def _finite_or_none(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def parse_strategy(value: Any) -> Strategy:
    """Map any stored strategy label to a Strategy, defaulting to adaptive-medium."""
    if isinstance(value, Strategy):
        return value
    try:
        return Strategy(str(value).strip())
    except ValueError:
        return DEFAULT_STRATEGY


@dataclass
class InteractionEvent:
    """A single learner interaction with a problem."""
    id: str
    learner_id: str
    problem_id: str
    timestamp: int  # epoch milliseconds
    event_type: EventType
    error_subtype_id: Optional[str] = None
    hint_level: Optional[int] = None
    hint_text: Optional[str] = None
    grounding_row_id: Optional[str] = None
    help_request_index: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "InteractionEvent":
        """Build an event from a stored record, tolerating camelCase and gaps."""
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        timestamp = pick("timestamp")
        try:
            timestamp = int(timestamp)
        except (TypeError, ValueError):
            timestamp = 0

        hint_level = pick("hint_level", "hintLevel")
        help_index = pick("help_request_index", "helpRequestIndex")

        return cls(
            id=str(pick("id") or ""),
            learner_id=str(pick("learner_id", "learnerId") or ""),
            problem_id=str(pick("problem_id", "problemId") or ""),
            timestamp=timestamp,
            event_type=EventType.parse(pick("event_type", "eventType")),
            error_subtype_id=pick("error_subtype_id", "errorSubtypeId"),
            hint_level=hint_level if isinstance(hint_level, int) else None,
            hint_text=pick("hint_text", "hintText"),
            grounding_row_id=pick("grounding_row_id", "sqlEngageRowId"),
            help_request_index=help_index if isinstance(help_index, int) else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "error_subtype_id": self.error_subtype_id,
            "hint_level": self.hint_level,
            "hint_text": self.hint_text,
            "grounding_row_id": self.grounding_row_id,
            "help_request_index": self.help_request_index,
        }


@dataclass
class LearnerProfile:
    """Learner identity plus the escalation strategy currently assigned."""
    id: str
    current_strategy: Strategy = DEFAULT_STRATEGY

    @classmethod
    def from_dict(cls, data: dict) -> "LearnerProfile":
        return cls(
            id=str(data.get("id") or ""),
            current_strategy=parse_strategy(
                data.get("current_strategy", data.get("currentStrategy"))
            ),
        )


@dataclass
class DecisionContext:
    """Per-problem summary the decision rules are evaluated against."""
    error_count: int = 0
    retry_count: int = 0
    time_spent: int = 0  # milliseconds
    current_hint_level: int = 0
    recent_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "time_spent": self.time_spent,
            "current_hint_level": self.current_hint_level,
            "recent_errors": list(self.recent_errors),
        }


@dataclass
class AdaptiveDecision:
    """Outcome of one evaluation of the escalation policy."""
    timestamp: int
    learner_id: str
    context: DecisionContext
    decision: DecisionType
    rule_fired: DecisionRule
    reasoning: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "learner_id": self.learner_id,
            "context": self.context.to_dict(),
            "decision": self.decision.value,
            "rule_fired": self.rule_fired.value,
            "reasoning": self.reasoning,
        }


@dataclass
class AutoEscalationState:
    """Hint-exhaustion state for a problem."""
    should_escalate: bool
    hint_count: int
    trigger_interaction_id: Optional[str] = None


@dataclass
class ReplayDecisionPoint:
    """One decision recomputed while replaying a historical trace."""
    index: int
    event_id: str
    learner_id: str
    timestamp: int
    problem_id: str
    event_type: EventType
    error_subtype_id: Optional[str]
    strategy: Strategy
    thresholds: StrategyThresholds
    context: DecisionContext
    decision: DecisionType
    rule_fired: DecisionRule
    policy_version: str
    policy_semantics_version: str
    auto_escalation_mode: AutoEscalationMode
    reasoning: str

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "event_id": self.event_id,
            "learner_id": self.learner_id,
            "timestamp": self.timestamp,
            "problem_id": self.problem_id,
            "event_type": self.event_type.value,
            "error_subtype_id": self.error_subtype_id,
            "strategy": self.strategy.value,
            "thresholds": self.thresholds.to_dict(),
            "context": self.context.to_dict(),
            "decision": self.decision.value,
            "rule_fired": self.rule_fired.value,
            "policy_version": self.policy_version,
            "policy_semantics_version": self.policy_semantics_version,
            "auto_escalation_mode": self.auto_escalation_mode.value,
            "reasoning": self.reasoning,
        }


@dataclass
class HintSelection:
    """Deterministically selected hint for (learner, problem, subtype, level)."""
    hint_text: str
    error_subtype: str
    grounding_row_id: str
    hint_level: int
    policy_version: str
    should_escalate: bool

    def to_dict(self) -> dict:
        return {
            "hint_text": self.hint_text,
            "error_subtype": self.error_subtype,
            "grounding_row_id": self.grounding_row_id,
            "hint_level": self.hint_level,
            "policy_version": self.policy_version,
            "should_escalate": self.should_escalate,
        }
