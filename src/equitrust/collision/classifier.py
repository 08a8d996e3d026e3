"""Collision/Anomaly Classifier.

A collision is either a structural fingerprint mismatch (observed state
hash differs from the one recorded at the last verification) or a
residual-trend reversal. Its magnitude m is expressed in deviation units
so that severity can be read off the same decay curve the trust
controller uses, φ_m = exp(−α·m):

  Level 1  φ_m > 0.4            within trust bounds → parameter nudge
  Level 2  0.05 < φ_m ≤ 0.4     equilibrium still plausible → re-identify
  Level 3  φ_m ≤ 0.05           equilibrium implausible → roll back
           or re-identification failed
  Level 4  Level 3 with no rollback target, or a second Level 3 inside
           the escalation window → full reset

Cutoffs are inclusive toward the higher level.
"""
from __future__ import annotations

import math
from collections import deque
from typing import Deque, Optional, Sequence

import structlog

from equitrust.metrics.stability import residual_growth
from equitrust.trust.controller import LOW_THRESHOLD, decay
from equitrust.types import CollisionEvent, CollisionKind, SolverSnapshot

logger = structlog.get_logger(system="collision")

REIDENTIFY_BOUND = LOW_THRESHOLD
PLAUSIBILITY_FLOOR = 0.05


def severity_for_magnitude(magnitude: float, alpha: float) -> int:
    """Levels 1–3 from magnitude alone. Monotone non-decreasing in magnitude."""
    phi_m = decay(alpha, magnitude)
    if phi_m <= PLAUSIBILITY_FLOOR:
        return 3
    if phi_m <= REIDENTIFY_BOUND:
        return 2
    return 1


class EscalationTracker:
    """Remembers recent Level-3 timesteps to detect repeated rollbacks."""

    def __init__(self, window: int = 10) -> None:
        self.window = max(1, window)
        self._level3: Deque[int] = deque()

    def _prune(self, timestep: int) -> None:
        while self._level3 and timestep - self._level3[0] > self.window:
            self._level3.popleft()

    def repeated(self, timestep: int) -> bool:
        self._prune(timestep)
        return len(self._level3) > 0

    def record_level3(self, timestep: int) -> None:
        self._prune(timestep)
        self._level3.append(timestep)

    def clear(self) -> None:
        self._level3.clear()


class CollisionClassifier:
    def __init__(self, alpha: float, divergence_weight: float = 5.0, level3_window: int = 10) -> None:
        self.alpha = alpha
        self.divergence_weight = divergence_weight
        self.escalation = EscalationTracker(level3_window)

    def classify(
        self,
        observed_fingerprint: str,
        expected_fingerprint: str,
        residual_trend: Sequence[float],
        *,
        deviation: float = 0.0,
        timestep: int = 0,
        snapshot: Optional[SolverSnapshot] = None,
        reidentification_failed: bool = False,
        rollback_available: bool = True,
        record: bool = True,
    ) -> Optional[CollisionEvent]:
        """Return a CollisionEvent, or None when the evidence is consistent.

        With record=False the Level-3 escalation window is left untouched;
        the caller applies the event later with commit().
        """
        mismatch = bool(expected_fingerprint) and observed_fingerprint != expected_fingerprint
        growth = residual_growth(list(residual_trend))
        diverging = growth > 0.0

        if not (mismatch or diverging or reidentification_failed):
            return None

        m_mismatch = _finite_or_inf(deviation) if mismatch else 0.0
        m_divergence = self.divergence_weight * growth if diverging else 0.0
        magnitude = max(m_mismatch, m_divergence)

        if reidentification_failed:
            kind = CollisionKind.REIDENTIFICATION_FAILURE
            severity = 3
            reason = "reidentification_failed"
        else:
            kind = CollisionKind.HASH_MISMATCH if m_mismatch >= m_divergence and mismatch else CollisionKind.DIVERGENCE
            severity = severity_for_magnitude(magnitude, self.alpha)
            reason = f"{kind.value}:m={magnitude:.4g}"

        if severity == 3:
            if not rollback_available:
                severity = 4
                reason += "|rollback_unavailable"
            elif self.escalation.repeated(timestep):
                severity = 4
                reason += "|repeated_level3"

        event = CollisionEvent(
            timestamp=timestep,
            kind=kind,
            severity=severity,
            magnitude=magnitude,
            snapshot=snapshot,
            observed_fingerprint=observed_fingerprint,
            expected_fingerprint=expected_fingerprint,
            reason=reason,
        )
        logger.info(
            "collision_classified",
            timestep=timestep, kind=kind.value, severity=severity, magnitude=magnitude,
        )
        if record:
            self.commit(event)
        return event

    def commit(self, event: CollisionEvent) -> None:
        """Record a Level-3 event in the escalation window."""
        if event.severity == 3:
            self.escalation.record_level3(event.timestamp)

    def reset(self) -> None:
        self.escalation.clear()


def _finite_or_inf(x: float) -> float:
    x = float(x)
    return math.inf if math.isnan(x) else x
