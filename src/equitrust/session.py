"""Verification session — one explicit object per verification run.

A session owns its configuration, audit trail, trust state and automaton.
Nothing is shared between sessions, so independent runs (different CFD
cases, parameter sweeps) can advance in parallel via run_sessions().

Within a session steps are strictly sequential; a lock held across each
step lets cancel() from another thread wait for an in-flight transition
to be fully recorded before teardown.
"""
from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

import structlog

from equitrust.audit.store import AuditSink, JsonlSink, MemorySink
from equitrust.audit.trail import AuditTrail, Subscriber
from equitrust.automaton.machine import AssessmentListener, VerificationAutomaton
from equitrust.config import Settings
from equitrust.errors import InvariantViolation, SessionClosed
from equitrust.types import (
    AutomatonState,
    EquilibriumConfig,
    SolverSnapshot,
    TrustAssessment,
    snapshot_from_dict,
)
from equitrust.verification_config import ConfigLike, SessionConfig, load_session_config

logger = structlog.get_logger(system="session")

SnapshotLike = Union[SolverSnapshot, Mapping[str, Any]]

OPEN = "open"
FINISHED = "finished"
CANCELLED = "cancelled"
ABORTED = "aborted"


def default_sink(session_id: str) -> AuditSink:
    if not Settings.PERSIST_AUDIT:
        return MemorySink()
    root, ext = os.path.splitext(Settings.AUDIT_PATH)
    return JsonlSink(f"{root}.{session_id}{ext or '.jsonl'}")


class VerificationSession:
    def __init__(
        self,
        config: ConfigLike = None,
        *,
        session_id: Optional[str] = None,
        sink: Optional[AuditSink] = None,
        on_assessment: Optional[AssessmentListener] = None,
    ) -> None:
        # ConfigurationError surfaces here, before any step can run.
        self.config: SessionConfig = load_session_config(config)
        self.session_id = session_id or uuid.uuid4().hex
        self.audit = AuditTrail(sink if sink is not None else default_sink(self.session_id))
        self._automaton = VerificationAutomaton(self.config, self.audit, session_id=self.session_id)
        if on_assessment is not None:
            self._automaton.on_assessment(on_assessment)
        self._lock = threading.Lock()
        self.status = OPEN
        self.steps = 0
        self._log = logger.bind(session_id=self.session_id)

    # ---- views ----
    @property
    def state(self) -> AutomatonState:
        return self._automaton.state

    @property
    def current_config(self) -> Optional[EquilibriumConfig]:
        return self._automaton.current_config

    @property
    def config_history(self):
        return self._automaton.config_history

    @property
    def trust_state(self):
        return self._automaton.trust.state

    @property
    def assessment(self) -> TrustAssessment:
        return self._automaton.last_assessment

    @property
    def closed(self) -> bool:
        return self.status != OPEN

    def subscribe_audit(self, callback: Subscriber) -> None:
        self.audit.subscribe(callback)

    def subscribe_assessments(self, callback: AssessmentListener) -> None:
        self._automaton.on_assessment(callback)

    # ---- driving ----
    def step(self, snapshot: SnapshotLike) -> TrustAssessment:
        """Advance exactly one snapshot."""
        with self._lock:
            self._ensure_open()
            snap = snapshot if isinstance(snapshot, SolverSnapshot) else snapshot_from_dict(snapshot)
            assessment = self._guard(lambda: self._automaton.step(snap))
            self.steps += 1
            if self.steps >= self.config.max_iterations:
                self._guard(lambda: self._automaton.finish("max_iterations"))
                self.status = FINISHED
                self.audit.flush()
                self._log.info("session_finished", reason="max_iterations", state=self.state.value)
                return self._automaton.last_assessment
            return assessment

    def run(self, snapshots: Iterable[SnapshotLike]) -> TrustAssessment:
        """Consume a snapshot stream, then signal that no further snapshots follow."""
        for snap in snapshots:
            if self.closed:
                break
            self.step(snap)
        if not self.closed:
            return self.finish()
        return self.assessment

    def finish(self) -> TrustAssessment:
        """Explicit "no further snapshots" signal."""
        with self._lock:
            self._ensure_open()
            self._guard(lambda: self._automaton.finish())
            self.status = FINISHED
            self.audit.flush()
            self._log.info("session_finished", reason="no_further_snapshots", state=self.state.value)
            return self.assessment

    def restart(self) -> None:
        """Re-enter SCAN after VALIDATE to verify the next window."""
        with self._lock:
            self._ensure_open()
            self._guard(self._automaton.restart)

    def cancel(self) -> None:
        """Cancel between steps. Waits for an in-flight step to finish recording."""
        with self._lock:
            if self.closed:
                return
            self.audit.flush()
            self.status = CANCELLED
            self._log.info("session_cancelled", state=self.state.value, entries=len(self.audit))

    # ---- internals ----
    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosed(f"session {self.session_id} is {self.status}")

    def _guard(self, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except InvariantViolation as exc:
            self.status = ABORTED
            self._log.error("session_aborted", error=str(exc), state=self.state.value)
            raise


def run_sessions(
    streams: Mapping[str, Iterable[SnapshotLike]],
    config: ConfigLike = None,
    *,
    max_workers: Optional[int] = None,
    sink_factory: Optional[Callable[[str], AuditSink]] = None,
) -> Dict[str, VerificationSession]:
    """Run independent sessions in parallel; returns finished sessions by id.

    The config is validated once up front so a bad config fails before any
    session starts.
    """
    cfg = load_session_config(config)
    sessions = {
        sid: VerificationSession(cfg, session_id=sid, sink=sink_factory(sid) if sink_factory else None)
        for sid in streams
    }
    workers = max_workers or Settings.MAX_PARALLEL_SESSIONS
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(sessions[sid].run, streams[sid]): sid for sid in streams}
        for future in as_completed(futures):
            sid = futures[future]
            assessment = future.result()
            logger.info(
                "session_completed",
                session_id=sid, state=assessment.state.value, confidence=assessment.confidence,
            )
    return sessions
