"""
Adaptive Escalation Engine.

Decides when a learner stays on hints, gets a full explanation, or has their
work aggregated into a textbook note.

Components:
- EscalationPolicy: Decision rules, policy replay and hint selection
- hint_catalog: Concepts, subtype hint ladders and grounding anchors
- models: Interaction events, strategies and decision records
"""
from src.adaptive.models import (
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
    STRATEGY_THRESHOLDS,
)
from src.adaptive.escalation_policy import EscalationPolicy, POLICY_SEMANTICS_VERSION
from src.adaptive.hint_catalog import POLICY_VERSION

__all__ = [
    # Engine
    "EscalationPolicy",
    "POLICY_SEMANTICS_VERSION",
    "POLICY_VERSION",
    # Data models
    "AdaptiveDecision",
    "AutoEscalationMode",
    "AutoEscalationState",
    "DecisionContext",
    "DecisionRule",
    "DecisionType",
    "EventType",
    "HintSelection",
    "InteractionEvent",
    "LearnerProfile",
    "ReplayDecisionPoint",
    "Strategy",
    "StrategyThresholds",
    "STRATEGY_THRESHOLDS",
]
