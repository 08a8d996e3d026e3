"""Equilibrium Detector — decides whether a window holds a stable base case.

Three mandatory phases, short-circuiting on the first failure:
  1. Sensitivity analysis   (finite-difference ∂‖u−u_eq‖/∂p_i)
  2. Convergence            (trailing run of residual decreases)
  3. Conservation           (mass/energy drift and solver-reported error)

Pure function of the window: no clocks, no randomness, no shared state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence

import structlog

from equitrust.metrics import stability
from equitrust.types import EquilibriumConfig, SolverSnapshot
from equitrust.utils.stable import stable_hash
from equitrust.verification_config import SessionConfig

logger = structlog.get_logger(system="detection")


class FailureReason(str, Enum):
    EMPTY_WINDOW = "empty_window"
    INSUFFICIENT_SENSITIVITY_MARGIN = "insufficient_sensitivity_margin"
    INSUFFICIENT_CONVERGENCE = "insufficient_convergence"
    CONSERVATION_VIOLATION = "conservation_violation"


@dataclass(frozen=True)
class DetectionFailure:
    reason: FailureReason
    detail: str
    metric: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason.value, "detail": self.detail, "metric": self.metric}


@dataclass(frozen=True)
class DetectionResult:
    config: Optional[EquilibriumConfig] = None
    failure: Optional[DetectionFailure] = None
    phases_passed: tuple = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.config is not None


class EquilibriumDetector:
    """Turns a sliding window of snapshots into an EquilibriumConfig."""

    def __init__(self, config: SessionConfig) -> None:
        self.sensitivity_threshold = config.sensitivity_threshold
        self.min_stable_iterations = config.min_stable_iterations
        self.conservation_tolerance = config.conservation_tolerance
        self.equilibrium_tolerance = config.equilibrium_tolerance

    def detect(self, window: Sequence[SolverSnapshot]) -> DetectionResult:
        if not window:
            return DetectionResult(failure=DetectionFailure(FailureReason.EMPTY_WINDOW, "no snapshots"))

        window = list(window)
        reference = window[-1]
        passed = []

        # 1) Sensitivity
        sens = stability.parameter_sensitivities(window, reference)
        max_sens = float(sens.max()) if sens.size else 0.0
        if max_sens > self.sensitivity_threshold:
            worst = int(sens.argmax())
            return self._fail(
                FailureReason.INSUFFICIENT_SENSITIVITY_MARGIN,
                f"|d/dp_{worst}|={max_sens:.3e}>{self.sensitivity_threshold:.3e}",
                max_sens, passed, reference,
            )
        passed.append("sensitivity")

        # 2) Convergence
        run = stability.trailing_decrease_run([s.residual for s in window])
        if run < self.min_stable_iterations:
            return self._fail(
                FailureReason.INSUFFICIENT_CONVERGENCE,
                f"decreasing_run={run}<{self.min_stable_iterations}",
                float(run), passed, reference,
            )
        passed.append("convergence")

        # 3) Conservation
        err = stability.conservation_error(window)
        if err > self.conservation_tolerance:
            return self._fail(
                FailureReason.CONSERVATION_VIOLATION,
                f"conservation_error={err:.3e}>{self.conservation_tolerance:.3e}",
                err, passed, reference,
            )
        passed.append("conservation")

        cfg = EquilibriumConfig(
            config_id=self._config_id(reference, run, max_sens, err),
            sensitivity_threshold=self.sensitivity_threshold,
            convergence_iterations=run,
            equilibrium_tolerance=self.equilibrium_tolerance,
            stability_verified=True,
            reference=reference,
            max_sensitivity=max_sens,
            conservation_error=err,
        )
        logger.debug(
            "equilibrium_detected",
            timestep=reference.timestep,
            convergence_iterations=run,
            max_sensitivity=max_sens,
            conservation_error=err,
        )
        return DetectionResult(config=cfg, phases_passed=tuple(passed))

    def _fail(self, reason, detail, metric, passed, reference) -> DetectionResult:
        logger.debug("detection_failed", reason=reason.value, detail=detail, timestep=reference.timestep)
        return DetectionResult(
            failure=DetectionFailure(reason=reason, detail=detail, metric=float(metric)),
            phases_passed=tuple(passed),
        )

    def _config_id(self, reference: SolverSnapshot, run: int, max_sens: float, err: float) -> str:
        return stable_hash({
            "reference": reference.to_dict(),
            "convergence_iterations": run,
            "max_sensitivity": repr(max_sens),
            "conservation_error": repr(err),
            "sensitivity_threshold": repr(self.sensitivity_threshold),
            "equilibrium_tolerance": repr(self.equilibrium_tolerance),
        })[:24]
