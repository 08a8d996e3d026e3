"""Equilibrium detector tests."""
import pytest

from equitrust.detection.detector import EquilibriumDetector, FailureReason
from equitrust.types import SolverSnapshot
from equitrust.verification_config import SessionConfig

FIELD = {"mean_velocity": 1.0, "mean_pressure": 0.25, "mass": 1.0}


def _converging(n=50, start=1.0, end=1e-9, field=None, params=(100.0,), conservation_error=1e-10):
    ratio = (end / start) ** (1.0 / (n - 1))
    return [
        SolverSnapshot(
            timestep=i,
            residual=start * ratio ** i,
            parameters=params,
            field_summary=dict(field or FIELD),
            conservation_error=conservation_error,
        )
        for i in range(n)
    ]


def _detector(**kw):
    return EquilibriumDetector(SessionConfig(**kw))


def test_converged_window_yields_verified_config():
    window = _converging()
    result = _detector().detect(window)
    assert result.ok
    cfg = result.config
    assert cfg.stability_verified is True
    assert cfg.convergence_iterations == 49
    assert cfg.sensitivity_threshold == 0.01
    assert cfg.equilibrium_tolerance == 1e-3
    assert cfg.reference is window[-1]
    assert cfg.conservation_error == pytest.approx(1e-10)
    assert result.phases_passed == ("sensitivity", "convergence", "conservation")


def test_empty_window_fails():
    result = _detector().detect([])
    assert not result.ok
    assert result.failure.reason == FailureReason.EMPTY_WINDOW


def test_sensitivity_failure_short_circuits():
    window = [
        SolverSnapshot(
            timestep=i,
            residual=1.0 / (i + 1),
            parameters=(100.0 + 1e-3 * i,),
            field_summary={"mean_velocity": 1.0 + 0.01 * i, "mass": 1.0},
        )
        for i in range(20)
    ]
    result = _detector().detect(window)
    assert result.failure.reason == FailureReason.INSUFFICIENT_SENSITIVITY_MARGIN
    assert result.failure.metric == pytest.approx(10.0)
    assert result.phases_passed == ()


def test_flat_residual_fails_convergence():
    window = [
        SolverSnapshot(timestep=i, residual=1e-3, parameters=(1.0,), field_summary=FIELD)
        for i in range(20)
    ]
    result = _detector().detect(window)
    assert result.failure.reason == FailureReason.INSUFFICIENT_CONVERGENCE
    assert result.phases_passed == ("sensitivity",)


def test_short_run_fails_convergence():
    window = _converging(n=8)
    result = _detector(min_stable_iterations=10).detect(window)
    assert result.failure.reason == FailureReason.INSUFFICIENT_CONVERGENCE
    assert result.failure.metric == 7.0


def test_mass_drift_fails_conservation():
    window = _converging()
    drifting = [
        SolverSnapshot(
            timestep=s.timestep,
            residual=s.residual,
            parameters=s.parameters,
            field_summary={**FIELD, "mass": 1.0 + 1e-4 * s.timestep},
            conservation_error=1e-10,
        )
        for s in window
    ]
    result = _detector().detect(drifting)
    assert result.failure.reason == FailureReason.CONSERVATION_VIOLATION
    assert result.phases_passed == ("sensitivity", "convergence")


def test_reported_conservation_error_above_tolerance_fails():
    window = _converging(conservation_error=1e-3)
    result = _detector().detect(window)
    assert result.failure.reason == FailureReason.CONSERVATION_VIOLATION


def test_detection_is_deterministic():
    window = _converging()
    a = _detector().detect(window)
    b = _detector().detect(list(window))
    assert a.config.config_id == b.config.config_id
    assert a.config.to_dict() == b.config.to_dict()


def test_config_id_changes_with_reference():
    a = _detector().detect(_converging())
    b = _detector().detect(_converging(end=1e-10))
    assert a.config.config_id != b.config.config_id
