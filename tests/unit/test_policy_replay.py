"""
Unit tests for replaying historical traces through the escalation policy.
"""

import pytest

from src.adaptive.escalation_policy import POLICY_SEMANTICS_VERSION, EscalationPolicy
from src.adaptive.hint_catalog import POLICY_VERSION
from src.adaptive.models import (
    AutoEscalationMode,
    DecisionRule,
    DecisionType,
    LearnerProfile,
    Strategy,
)


def record(event_id, event_type, timestamp, problem_id="p1"):
    return {
        "id": event_id,
        "learnerId": "learner-1",
        "problemId": problem_id,
        "timestamp": timestamp,
        "eventType": event_type,
        "errorSubtypeId": "undefined column" if event_type == "error" else None,
    }


@pytest.fixture
def trace():
    return [
        record("e3", "error", 3000),
        record("e1", "error", 1000),
        record("t1", "textbook_add", 1500),
        record("e2", "error", 2000),
        record("orphan", "error", 2500, problem_id=""),
    ]


@pytest.fixture
def profile():
    return LearnerProfile(id="learner-1", current_strategy=Strategy.HINT_ONLY)


class TestReplayTrace:
    """Tests for trace filtering and ordering."""

    def test_keeps_only_decision_events_sorted(self, trace):
        events = EscalationPolicy.get_policy_replay_trace(trace)
        assert [e.id for e in events] == ["e1", "e2", "e3"]

    def test_equal_timestamps_keep_input_order(self):
        events = EscalationPolicy.get_policy_replay_trace(
            [record("b", "error", 1000), record("a", "hint_view", 1000)]
        )
        assert [e.id for e in events] == ["b", "a"]


class TestReplayDecisionTrace:
    """Tests for recomputed decision points."""

    def test_one_point_per_event_indexed_from_one(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(profile, trace, "adaptive-medium")

        assert [p.index for p in points] == [1, 2, 3]
        assert [p.event_id for p in points] == ["e1", "e2", "e3"]

    def test_strategy_override_drives_thresholds(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(profile, trace, "adaptive-medium")

        assert all(p.strategy == Strategy.ADAPTIVE_MEDIUM for p in points)
        assert [p.decision for p in points] == [
            DecisionType.SHOW_HINT,
            DecisionType.SHOW_HINT,
            DecisionType.SHOW_EXPLANATION,
        ]
        assert points[-1].rule_fired == DecisionRule.ESCALATION_THRESHOLD_MET

    def test_each_point_uses_its_own_timestamp(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(profile, trace, "adaptive-medium")

        assert points[0].context.time_spent == 0
        assert points[2].context.time_spent == 2000
        assert points[1].context.error_count == 2

    def test_versions_and_mode_are_stamped(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(
            profile, trace, "adaptive-high", mode=AutoEscalationMode.THRESHOLD_GATED
        )
        point = points[0]

        assert point.policy_version == POLICY_VERSION
        assert point.policy_semantics_version == POLICY_SEMANTICS_VERSION
        assert point.auto_escalation_mode == AutoEscalationMode.THRESHOLD_GATED
        assert point.learner_id == "learner-1"

    def test_unknown_strategy_replays_as_medium(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(profile, trace, "bogus")
        assert points[0].thresholds.to_dict() == {"escalate": 3, "aggregate": 6}

    def test_hint_only_thresholds_serialize_as_null(self, trace, profile):
        points = EscalationPolicy().replay_decision_trace(profile, trace, Strategy.HINT_ONLY)
        assert points[0].to_dict()["thresholds"] == {"escalate": None, "aggregate": None}

    def test_empty_trace(self, profile):
        assert EscalationPolicy().replay_decision_trace(profile, [], "adaptive-low") == []


class TestReplayFingerprint:
    """Tests for replay reproducibility."""

    def test_same_trace_same_fingerprint(self, trace, profile):
        policy = EscalationPolicy()
        first = policy.replay_fingerprint(policy.replay_decision_trace(profile, trace, "adaptive-low"))
        second = policy.replay_fingerprint(
            policy.replay_decision_trace(profile, list(reversed(trace)), "adaptive-low")
        )
        assert first == second
        assert first.startswith("fnv1a32:")

    def test_strategy_changes_fingerprint(self, trace, profile):
        policy = EscalationPolicy()
        low = policy.replay_fingerprint(policy.replay_decision_trace(profile, trace, "adaptive-low"))
        high = policy.replay_fingerprint(policy.replay_decision_trace(profile, trace, "adaptive-high"))
        assert low != high
