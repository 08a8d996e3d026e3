"""Error taxonomy.

Domain failures (detection, trust indeterminacy, collisions) are resolved
inside a session by automaton transitions. Only ConfigurationError and
InvariantViolation (plus SessionClosed for misuse) reach the caller.
"""
from __future__ import annotations


class EquitrustError(Exception):
    """Base class for all package errors."""


class VerificationFailure(EquitrustError):
    """Recoverable domain failure. Never propagates out of a session."""


class TrustUndetermined(VerificationFailure):
    """No deviation δ(t) is available to evaluate trust."""


class ConfigurationError(EquitrustError, ValueError):
    """Invalid session configuration. Raised before any automaton step runs."""


class InvariantViolation(EquitrustError, RuntimeError):
    """A design contract was violated. The session is aborted."""


class SessionClosed(EquitrustError, RuntimeError):
    """The session was finished, cancelled or aborted."""


class AuditSinkError(EquitrustError, RuntimeError):
    """The audit sink rejected a write; the entry was not recorded."""
