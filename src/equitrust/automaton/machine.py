"""Verification Automaton — SCAN → DETECT → VERIFY → TRUST → VALIDATE.

One step per SolverSnapshot. Every transition is recorded as exactly one
AuditEntry. A step fires at most one transition, except that a Level-1
nudge (a recorded self-transition) lets the regular guard fire a second
one in the same step.

A step computes without side effects. Its bookkeeping (window, trust
history, last timestep) is staged and applied only after the first audit
write of the step succeeds, or at the end of a step that fires nothing.
Transition mutations likewise run after their entry is written, so a
failing audit sink leaves the automaton exactly as it was.

Collision handling (VERIFY, TRUST and VALIDATE only) pre-empts the
regular guards:

  severity 1  self-transition, adopt the observed fingerprint (nudge)
  severity 2  → DETECT, re-identify the equilibrium
  severity 3  → VERIFY on the last verified config (rollback)
  severity 4  → SCAN, all configs discarded

The detector, controller and classifier only return values; all state
mutation happens here (single writer per session).
"""
from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Callable, Deque, List, Optional, Tuple

import structlog

from equitrust.audit.trail import AuditTrail
from equitrust.collision.classifier import CollisionClassifier
from equitrust.collision.response import ResponseAction, response_for
from equitrust.detection.detector import EquilibriumDetector
from equitrust.errors import EquitrustError, InvariantViolation, TrustUndetermined
from equitrust.metrics import stability
from equitrust.trust.controller import TrustController
from equitrust.types import (
    AutomatonState,
    CollisionEvent,
    EquilibriumConfig,
    SolverSnapshot,
    TrustAssessment,
    TrustGrade,
)
from equitrust.verification_config import SessionConfig

logger = structlog.get_logger(system="automaton")

S = AutomatonState

# Residuals inspected for a trend reversal.
TREND_SPAN = 3

AssessmentListener = Callable[[TrustAssessment], None]


class VerificationAutomaton:
    def __init__(
        self,
        config: SessionConfig,
        trail: AuditTrail,
        *,
        session_id: str,
    ) -> None:
        self.config = config
        self.trail = trail
        self.session_id = session_id

        self.detector = EquilibriumDetector(config)
        self.trust = TrustController(config.alpha, history=config.deviation_history)
        self.classifier = CollisionClassifier(
            config.alpha,
            divergence_weight=config.divergence_weight,
            level3_window=config.level3_window,
        )

        self.state: AutomatonState = S.SCAN
        self._window: Deque[SolverSnapshot] = deque(maxlen=config.window_size)
        self._current: Optional[EquilibriumConfig] = None
        self._history: Deque[EquilibriumConfig] = deque(maxlen=config.history_size)
        self._expected_fingerprint = ""
        self._pending: Optional[CollisionEvent] = None
        self._reidentifying = False
        self._reidentify_failures = 0
        self._last_timestep: Optional[int] = None
        self._step_window: List[SolverSnapshot] = []
        self._staged: Optional[Callable[[], None]] = None
        self._last_assessment = TrustAssessment(confidence=0.0, grade=TrustGrade.LOW, session_id=session_id, undetermined=True)
        self._listeners: List[AssessmentListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def current_config(self) -> Optional[EquilibriumConfig]:
        return self._current

    @property
    def config_history(self) -> Tuple[EquilibriumConfig, ...]:
        return tuple(self._history)

    @property
    def pending_collision(self) -> Optional[CollisionEvent]:
        return self._pending

    @property
    def last_assessment(self) -> TrustAssessment:
        return self._last_assessment

    def on_assessment(self, listener: AssessmentListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------
    def step(self, snapshot: SolverSnapshot) -> TrustAssessment:
        if self.state == S.FAILED:
            raise InvariantViolation("automaton stepped after reaching FAILED")
        t = int(snapshot.timestep)
        if self._last_timestep is not None and t < self._last_timestep:
            raise InvariantViolation(f"snapshot timestep {t} precedes {self._last_timestep}")

        fingerprint = snapshot.fingerprint or stability.structural_fingerprint(
            snapshot, self.config.fingerprint_precision
        )
        self._step_window = (list(self._window) + [snapshot])[-self.config.window_size:]

        deviation = None
        if self._current is not None:
            deviation = stability.relative_deviation(
                snapshot, self._current.reference, self._current.equilibrium_tolerance
            )
        phi, undetermined, recorded = self._evaluate_trust(t, deviation)
        feedback = self.trust.feedback(snapshot, t, phi)

        def absorb() -> None:
            self._last_timestep = t
            self._window.append(snapshot)
            if undetermined:
                self.trust.mark_undetermined()
            else:
                self.trust.commit(phi, recorded)

        self._staged = absorb

        if self._current is not None and self.state in (S.VERIFY, S.TRUST, S.VALIDATE):
            trend = [s.residual for s in self._step_window[-TREND_SPAN:]]
            event = self.classifier.classify(
                fingerprint,
                self._expected_fingerprint,
                trend,
                deviation=deviation if deviation is not None else 0.0,
                timestep=t,
                snapshot=snapshot,
                rollback_available=self._rollback_target() is not None,
                record=False,
            )
            if event is not None:
                self._respond(event, snapshot, phi, feedback, fingerprint)
                if event.severity > 1:
                    return self._assess(snapshot, phi, feedback, undetermined)

        handler = {
            S.SCAN: self._on_scan,
            S.DETECT: self._on_detect,
            S.VERIFY: self._on_verify,
            S.TRUST: self._on_trust,
            S.VALIDATE: self._on_validate,
        }[self.state]
        handler(snapshot, fingerprint, phi, feedback, undetermined)
        self._apply_staged()
        return self._assess(snapshot, phi, feedback, undetermined)

    def restart(self) -> None:
        """Re-enter SCAN for the next window after a successful VALIDATE."""
        if self.state != S.VALIDATE:
            raise InvariantViolation(f"restart requires VALIDATE, automaton is in {self.state.value}")
        t = self._last_timestep or 0
        self._transition(S.SCAN, t, self.trust.state.phi, 0.0, "next_window", mutate=self._window.clear)
        self._last_assessment = replace(self._last_assessment, state=S.SCAN)

    def finish(self, reason: str = "no_further_snapshots") -> None:
        """Terminate: anything short of VALIDATE ends in FAILED."""
        if self.state in (S.VALIDATE, S.FAILED):
            return
        t = self._last_timestep or 0
        self._transition(S.FAILED, t, self.trust.state.phi, 0.0, reason)
        self._last_assessment = replace(self._last_assessment, state=S.FAILED)

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------
    def _on_scan(self, snapshot, fingerprint, phi, feedback, undetermined) -> None:
        if len(self._step_window) >= self.config.min_stable_iterations + 1:
            self._transition(S.DETECT, snapshot.timestep, phi, feedback, "candidate_window")

    def _on_detect(self, snapshot, fingerprint, phi, feedback, undetermined) -> None:
        # After a re-identification trim, wait until a full candidate window has accumulated.
        if len(self._step_window) < self.config.min_stable_iterations + 1:
            return
        result = self.detector.detect(self._step_window)
        if result.ok:
            new = result.config
            ref_fp = new.reference.fingerprint or stability.structural_fingerprint(
                new.reference, self.config.fingerprint_precision
            )

            def install() -> None:
                if self._current is not None:
                    self._history.append(self._current)
                self._current = new
                self._expected_fingerprint = ref_fp
                self._reidentifying = False
                self._reidentify_failures = 0
                self.trust.reset()

            self._transition(
                S.VERIFY, snapshot.timestep, phi, feedback,
                f"equilibrium_detected:{new.config_id}", mutate=install,
            )
            return

        failure = result.failure
        failures = self._reidentify_failures
        if self._reidentifying:
            failures += 1
            if failures >= self.config.reidentify_attempts:
                event = self.classifier.classify(
                    fingerprint,
                    self._expected_fingerprint,
                    (),
                    timestep=snapshot.timestep,
                    snapshot=snapshot,
                    reidentification_failed=True,
                    rollback_available=self._rollback_target() is not None,
                    record=False,
                )
                self._respond(event, snapshot, phi, feedback, fingerprint)
                return

        def count_failure() -> None:
            self._reidentify_failures = failures

        self._transition(
            S.SCAN, snapshot.timestep, phi, feedback,
            f"detection_failed:{failure.reason.value}", mutate=count_failure,
        )

    def _on_verify(self, snapshot, fingerprint, phi, feedback, undetermined) -> None:
        grade = TrustGrade.LOW if undetermined else self.trust.grade(phi)
        if grade.at_least(TrustGrade.MEDIUM):
            self._transition(S.TRUST, snapshot.timestep, phi, feedback, f"grade:{grade.value}")
        else:
            reason = "trust_undetermined" if undetermined else "grade:Low"
            self._transition(S.DETECT, snapshot.timestep, phi, feedback, reason, mutate=self._begin_reidentification)

    def _on_trust(self, snapshot, fingerprint, phi, feedback, undetermined) -> None:
        grade = TrustGrade.LOW if undetermined else self.trust.grade(phi)
        if grade == TrustGrade.LOW:
            reason = "trust_undetermined" if undetermined else "grade:Low"
            self._transition(S.DETECT, snapshot.timestep, phi, feedback, reason, mutate=self._begin_reidentification)
            return
        if phi > self.config.confidence_threshold:
            if self._pending is not None and self._pending.severity >= 2:
                logger.info(
                    "pending_collision_cleared",
                    session_id=self.session_id, timestep=snapshot.timestep,
                    severity=self._pending.severity,
                )
                self._pending = None
                return
            self._transition(S.VALIDATE, snapshot.timestep, phi, feedback, "confidence_threshold_met")

    def _on_validate(self, snapshot, fingerprint, phi, feedback, undetermined) -> None:
        return None

    # ------------------------------------------------------------------
    # Graduated response
    # ------------------------------------------------------------------
    def _respond(self, event: CollisionEvent, snapshot: SolverSnapshot, phi: float, feedback: float, fingerprint: str) -> None:
        response = response_for(event.severity)
        t = snapshot.timestep

        if response.action == ResponseAction.NUDGE:
            def nudge() -> None:
                self._expected_fingerprint = fingerprint
            self._transition(self.state, t, phi, feedback, "parameter_nudge", collision=event, mutate=nudge)

        elif response.action == ResponseAction.REIDENTIFY:
            def reidentify() -> None:
                self._begin_reidentification()
                self._pending = event
            self._transition(S.DETECT, t, phi, feedback, "reidentify", collision=event, mutate=reidentify)

        elif response.action == ResponseAction.ROLLBACK:
            target = self._rollback_target()
            if target is None:
                raise InvariantViolation("rollback selected without a rollback target")
            from_history = bool(self._history) and self._history[-1] is target

            def rollback() -> None:
                if from_history:
                    self._history.pop()
                    self._current = target
                self._expected_fingerprint = target.reference.fingerprint or stability.structural_fingerprint(
                    target.reference, self.config.fingerprint_precision
                )
                self._reidentifying = False
                self._reidentify_failures = 0
                self._pending = event
                self.trust.reset()

            self._transition(
                S.VERIFY, t, phi, feedback, f"rollback:{target.config_id}",
                collision=event, mutate=rollback,
            )

        else:
            def reset() -> None:
                self._current = None
                self._history.clear()
                self._window.clear()
                self._expected_fingerprint = ""
                self._pending = None
                self._reidentifying = False
                self._reidentify_failures = 0
                self.trust.reset()
                self.classifier.reset()

            self._transition(S.SCAN, t, phi, feedback, "full_reset", collision=event, mutate=reset)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _rollback_target(self) -> Optional[EquilibriumConfig]:
        if self._history:
            return self._history[-1]
        if self._current is not None and self._current.stability_verified:
            return self._current
        return None

    def _begin_reidentification(self) -> None:
        # Re-identify on post-disturbance data only.
        newest = self._window[-1] if self._window else None
        self._window.clear()
        if newest is not None:
            self._window.append(newest)
        self._reidentifying = True
        self._reidentify_failures = 0

    def _evaluate_trust(self, t: int, deviation: Optional[float]) -> Tuple[float, bool, Optional[float]]:
        """(φ, undetermined, δ to record). Leaves the controller untouched."""
        try:
            phi, recorded = self.trust.peek(t, deviation)
            return phi, False, recorded
        except TrustUndetermined:
            logger.debug("trust_undetermined", session_id=self.session_id, timestep=t)
            return 0.0, True, None

    def _apply_staged(self) -> None:
        staged, self._staged = self._staged, None
        if staged is not None:
            staged()

    def _transition(
        self,
        target: AutomatonState,
        t: int,
        phi: float,
        feedback: float,
        reason: str,
        *,
        collision: Optional[CollisionEvent] = None,
        mutate: Optional[Callable[[], None]] = None,
    ) -> None:
        source = self.state
        try:
            self.trail.append(
                timestamp=t,
                trust_value=phi,
                state=target,
                transition=f"{source.value}->{target.value}",
                collision=collision,
                reason=reason,
                feedback=feedback,
            )
        except EquitrustError:
            self._staged = None
            raise
        self._apply_staged()
        if collision is not None:
            self.classifier.commit(collision)
        if mutate is not None:
            mutate()
        self.state = target
        logger.info(
            "transition_recorded",
            session_id=self.session_id,
            timestep=t,
            transition=f"{source.value}->{target.value}",
            reason=reason,
            trust=round(phi, 6),
        )
        if target in (S.TRUST, S.VALIDATE) and source != target:
            self._emit(TrustAssessment(
                confidence=phi,
                grade=self.trust.grade(phi),
                session_id=self.session_id,
                timestep=t,
                state=target,
                feedback=feedback,
            ))

    def _emit(self, assessment: TrustAssessment) -> None:
        for listener in list(self._listeners):
            listener(assessment)

    def _assess(self, snapshot: SolverSnapshot, phi: float, feedback: float, undetermined: bool) -> TrustAssessment:
        self._last_assessment = TrustAssessment(
            confidence=phi,
            grade=TrustGrade.LOW if undetermined else self.trust.grade(phi),
            session_id=self.session_id,
            timestep=snapshot.timestep,
            state=self.state,
            feedback=feedback,
            undetermined=undetermined,
        )
        return self._last_assessment
