"""Trust Controller — exponential trust decay and symbolic feedback.

    φ(t)       = exp(−α·δ(t))
    β(R)       = 1 / (1 + ln(1 + R))
    f(x,t,φ)   = g(x,t) · φ(t) · β(R(t))

Grading thresholds are fixed:
    φ > 0.8        → High
    0.4 < φ ≤ 0.8  → Medium
    φ ≤ 0.4        → Low

The deviation history is a bounded ring buffer. With no δ supplied and no
history to fall back on the controller raises TrustUndetermined, which
the automaton treats as Low.
"""
from __future__ import annotations

import math
from collections import deque
from typing import Optional, Tuple

import structlog

from equitrust.errors import InvariantViolation, TrustUndetermined
from equitrust.types import SolverSnapshot, TrustGrade, TrustState

logger = structlog.get_logger(system="trust")

HIGH_THRESHOLD = 0.8
LOW_THRESHOLD = 0.4


def grade(phi: float) -> TrustGrade:
    """Pure, total grading over φ ∈ [0,1]."""
    if not (0.0 <= phi <= 1.0):
        raise InvariantViolation(f"trust value outside [0,1]: {phi!r}")
    if phi > HIGH_THRESHOLD:
        return TrustGrade.HIGH
    if phi > LOW_THRESHOLD:
        return TrustGrade.MEDIUM
    return TrustGrade.LOW


def decay(alpha: float, deviation: float) -> float:
    """φ = exp(−α·δ), clamped into [0,1]. NaN deviations count as unbounded."""
    if math.isnan(deviation):
        return 0.0
    return max(0.0, min(1.0, math.exp(-alpha * max(0.0, deviation))))


def stability_correction(residual: float) -> float:
    """β(R) = 1 / (1 + ln(1 + R)); monotonically decreasing for R ≥ 0."""
    if math.isnan(residual):
        return 0.0
    r = max(0.0, residual)
    return 1.0 / (1.0 + math.log1p(r))


class TrustController:
    """Owns one session's TrustState."""

    def __init__(self, alpha: float, history: int = 32) -> None:
        if not alpha > 0.0:
            raise InvariantViolation(f"alpha must be positive, got {alpha!r}")
        self._state = TrustState(alpha=alpha, deviations=deque(maxlen=max(1, history)))

    @property
    def alpha(self) -> float:
        return self._state.alpha

    @property
    def state(self) -> TrustState:
        s = self._state
        return TrustState(alpha=s.alpha, phi=s.phi, grade=s.grade, deviations=deque(s.deviations, maxlen=s.deviations.maxlen))

    def evaluate(self, x: Optional[SolverSnapshot], t: int, deviation: Optional[float]) -> float:
        """Update and return φ(t) for deviation δ(t).

        deviation=None reuses the most recent δ; with an empty history this
        raises TrustUndetermined.
        """
        phi, recorded = self.peek(t, deviation)
        self.commit(phi, recorded)
        return phi

    def peek(self, t: int, deviation: Optional[float]) -> Tuple[float, Optional[float]]:
        """φ(t) without touching the state.

        Returns (φ, δ to record); δ is None when the last recorded one was reused.
        """
        if deviation is None:
            if not self._state.deviations:
                raise TrustUndetermined(f"no deviation history at t={t}")
            return decay(self._state.alpha, self._state.deviations[-1]), None
        deviation = float(deviation)
        if math.isnan(deviation):
            deviation = math.inf
        return decay(self._state.alpha, deviation), deviation

    def commit(self, phi: float, deviation: Optional[float]) -> None:
        if deviation is not None:
            self._state.deviations.append(deviation)
        self._state.phi = phi
        self._state.grade = grade(phi)

    def grade(self, phi: float) -> TrustGrade:
        return grade(phi)

    def feedback(self, x: SolverSnapshot, t: int, phi: float) -> float:
        """f(x,t,φ) = g(x,t)·φ(t)·β(R(t))."""
        if not (0.0 <= phi <= 1.0):
            raise InvariantViolation(f"trust value outside [0,1]: {phi!r}")
        return float(x.base_value) * phi * stability_correction(x.residual)

    def mark_undetermined(self) -> None:
        self._state.phi = 0.0
        self._state.grade = TrustGrade.LOW

    def reset(self) -> None:
        """Drop deviation history (rollback / full reset)."""
        self._state.deviations.clear()
        self._state.phi = 0.0
        self._state.grade = TrustGrade.LOW
