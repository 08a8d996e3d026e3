"""equitrust — equilibrium-anchored verification of CFD solutions.

Detects equilibrium base cases in a stream of solver snapshots, scores
how far a live solution may be trusted, escalates through a graduated
collision response, and records every transition in a replayable,
hash-chained audit trail.
"""
from equitrust.errors import (
    ConfigurationError,
    EquitrustError,
    InvariantViolation,
    SessionClosed,
    TrustUndetermined,
)
from equitrust.session import VerificationSession, run_sessions
from equitrust.types import (
    AuditEntry,
    AutomatonState,
    CollisionEvent,
    CollisionKind,
    EquilibriumConfig,
    SolverSnapshot,
    TrustAssessment,
    TrustGrade,
)
from equitrust.verification_config import SessionConfig, load_session_config, load_session_config_file

__version__ = "0.1.0"

__all__ = [
    "AuditEntry",
    "AutomatonState",
    "CollisionEvent",
    "CollisionKind",
    "ConfigurationError",
    "EquilibriumConfig",
    "EquitrustError",
    "InvariantViolation",
    "SessionClosed",
    "SessionConfig",
    "SolverSnapshot",
    "TrustAssessment",
    "TrustGrade",
    "TrustUndetermined",
    "VerificationSession",
    "load_session_config",
    "load_session_config_file",
    "run_sessions",
]
