"""Collision classification and graduated response."""
import pytest

from equitrust.collision.classifier import CollisionClassifier, EscalationTracker, severity_for_magnitude
from equitrust.collision.response import RESPONSES, ResponseAction, response_for
from equitrust.errors import InvariantViolation
from equitrust.types import AutomatonState, CollisionKind

DECREASING = [1e-4, 1e-5, 1e-6]


def test_consistent_evidence_is_no_collision():
    c = CollisionClassifier(alpha=0.2)
    assert c.classify("abc", "abc", DECREASING, deviation=50.0) is None


def test_no_expected_fingerprint_is_no_mismatch():
    c = CollisionClassifier(alpha=0.2)
    assert c.classify("abc", "", DECREASING) is None


def test_small_mismatch_is_level1():
    c = CollisionClassifier(alpha=0.2)
    ev = c.classify("abc", "def", DECREASING, deviation=0.0, timestep=4)
    assert ev.severity == 1
    assert ev.kind == CollisionKind.HASH_MISMATCH
    assert ev.timestamp == 4
    assert ev.observed_fingerprint == "abc"
    assert ev.expected_fingerprint == "def"


def test_mismatch_severity_follows_deviation():
    c = CollisionClassifier(alpha=0.2)
    assert c.classify("a", "b", DECREASING, deviation=10.0).severity == 2
    assert c.classify("a", "b", DECREASING, deviation=20.0, timestep=1).severity == 3


def test_divergence_is_classified():
    c = CollisionClassifier(alpha=0.2)
    ev = c.classify("a", "a", [1e-6, 1e-8, 1e-2], timestep=7)
    assert ev.kind == CollisionKind.DIVERGENCE
    assert ev.magnitude == pytest.approx(30.0)
    assert ev.severity == 3


def test_mild_residual_reversal_is_level1():
    c = CollisionClassifier(alpha=0.2)
    ev = c.classify("a", "a", [1e-6, 1e-7, 2e-7])
    assert ev.kind == CollisionKind.DIVERGENCE
    assert ev.severity == 1


def test_reidentification_failure_is_level3():
    c = CollisionClassifier(alpha=0.2)
    ev = c.classify("a", "a", DECREASING, reidentification_failed=True)
    assert ev.kind == CollisionKind.REIDENTIFICATION_FAILURE
    assert ev.severity == 3


def test_level3_without_rollback_target_escalates():
    c = CollisionClassifier(alpha=0.2)
    ev = c.classify("a", "b", DECREASING, deviation=100.0, rollback_available=False)
    assert ev.severity == 4


def test_repeated_level3_escalates_within_window():
    c = CollisionClassifier(alpha=0.2, level3_window=10)
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=10).severity == 3
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=15).severity == 4


def test_level3_outside_window_does_not_escalate():
    c = CollisionClassifier(alpha=0.2, level3_window=10)
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=10).severity == 3
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=30).severity == 3


def test_reset_forgets_escalation():
    c = CollisionClassifier(alpha=0.2)
    c.classify("a", "b", DECREASING, deviation=100.0, timestep=1)
    c.reset()
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=2).severity == 3


def test_nan_deviation_is_implausible():
    c = CollisionClassifier(alpha=0.2)
    assert c.classify("a", "b", DECREASING, deviation=float("nan")).severity == 3


def test_severity_monotone_in_magnitude():
    mags = [0.0, 0.5, 1.0, 2.0, 4.6, 5.0, 10.0, 14.9, 15.0, 20.0, 100.0, float("inf")]
    levels = [severity_for_magnitude(m, 0.2) for m in mags]
    assert levels == sorted(levels)
    assert levels[0] == 1
    assert levels[-1] == 3


def test_escalation_tracker_prunes():
    t = EscalationTracker(window=5)
    t.record_level3(0)
    assert t.repeated(5)
    assert not t.repeated(6)


def test_response_table():
    assert response_for(1).action == ResponseAction.NUDGE
    assert response_for(1).target is None
    assert response_for(2).target == AutomatonState.DETECT
    assert response_for(3).target == AutomatonState.VERIFY
    assert response_for(4).target == AutomatonState.SCAN


def test_response_evidence_strictly_decreases_with_severity():
    retained = [RESPONSES[s].evidence_retained for s in sorted(RESPONSES)]
    assert retained == sorted(retained, reverse=True)
    assert len(set(retained)) == 4


def test_response_for_rejects_unknown_severity():
    with pytest.raises(InvariantViolation):
        response_for(5)
    with pytest.raises(InvariantViolation):
        response_for(0)


def test_unrecorded_level3_does_not_escalate_until_committed():
    c = CollisionClassifier(alpha=0.2, level3_window=10)
    first = c.classify("a", "b", DECREASING, deviation=100.0, timestep=10, record=False)
    assert first.severity == 3
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=10, record=False).severity == 3

    c.commit(first)
    assert c.classify("a", "b", DECREASING, deviation=100.0, timestep=12, record=False).severity == 4
