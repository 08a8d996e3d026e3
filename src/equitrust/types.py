"""Core value types shared by the detector, controller, classifier and automaton."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Deque, Dict, Mapping, Optional, Tuple


class AutomatonState(str, Enum):
    SCAN = "SCAN"
    DETECT = "DETECT"
    VERIFY = "VERIFY"
    TRUST = "TRUST"
    VALIDATE = "VALIDATE"
    FAILED = "FAILED"


# Distance travelled toward VALIDATE; FAILED sits below SCAN.
STATE_PROGRESS: Dict[AutomatonState, int] = {
    AutomatonState.FAILED: -1,
    AutomatonState.SCAN: 0,
    AutomatonState.DETECT: 1,
    AutomatonState.VERIFY: 2,
    AutomatonState.TRUST: 3,
    AutomatonState.VALIDATE: 4,
}


class TrustGrade(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    def at_least(self, other: "TrustGrade") -> bool:
        order = {TrustGrade.LOW: 0, TrustGrade.MEDIUM: 1, TrustGrade.HIGH: 2}
        return order[self] >= order[other]


class CollisionKind(str, Enum):
    HASH_MISMATCH = "hash_mismatch"
    DIVERGENCE = "divergence"
    REIDENTIFICATION_FAILURE = "reidentification_failure"


@dataclass(frozen=True)
class SolverSnapshot:
    """One timestep of solver output, borrowed for a single automaton step.

    field_summary holds spatial summary statistics (mean/max velocity,
    mean pressure, kinetic energy, mass, ...). An empty fingerprint means
    the automaton derives one from the summary itself.
    """
    timestep: int
    residual: float
    parameters: Tuple[float, ...] = ()
    field_summary: Mapping[str, float] = field(default_factory=dict)
    fingerprint: str = ""
    base_value: float = 1.0
    conservation_error: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", tuple(float(p) for p in self.parameters))
        object.__setattr__(
            self, "field_summary",
            MappingProxyType({str(k): float(v) for k, v in dict(self.field_summary).items()}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestep": self.timestep,
            "residual": self.residual,
            "parameters": list(self.parameters),
            "field_summary": dict(self.field_summary),
            "fingerprint": self.fingerprint,
            "base_value": self.base_value,
            "conservation_error": self.conservation_error,
        }


def snapshot_from_dict(d: Mapping[str, Any]) -> SolverSnapshot:
    """Build a SolverSnapshot from a solver record (JSON/YAML shaped)."""
    ce = d.get("conservation_error")
    return SolverSnapshot(
        timestep=int(d["timestep"]),
        residual=float(d["residual"]),
        parameters=tuple(d.get("parameters") or ()),
        field_summary=dict(d.get("field_summary") or {}),
        fingerprint=str(d.get("fingerprint") or ""),
        base_value=float(d.get("base_value", 1.0)),
        conservation_error=float(ce) if ce is not None else None,
    )


@dataclass(frozen=True)
class EquilibriumConfig:
    """Anchor produced by a successful detection. Superseded, never mutated."""
    config_id: str
    sensitivity_threshold: float
    convergence_iterations: int
    equilibrium_tolerance: float
    stability_verified: bool
    reference: SolverSnapshot
    max_sensitivity: float = 0.0
    conservation_error: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "sensitivity_threshold": self.sensitivity_threshold,
            "convergence_iterations": self.convergence_iterations,
            "equilibrium_tolerance": self.equilibrium_tolerance,
            "stability_verified": self.stability_verified,
            "reference_timestep": self.reference.timestep,
            "max_sensitivity": self.max_sensitivity,
            "conservation_error": self.conservation_error,
        }


@dataclass
class TrustState:
    """Per-session trust state. Owned by exactly one TrustController."""
    alpha: float
    phi: float = 0.0
    grade: TrustGrade = TrustGrade.LOW
    deviations: Deque[float] = field(default_factory=lambda: deque(maxlen=32))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "alpha": self.alpha,
            "phi": self.phi,
            "grade": self.grade.value,
            "deviations": list(self.deviations),
        }


@dataclass(frozen=True)
class CollisionEvent:
    timestamp: int
    kind: CollisionKind
    severity: int
    magnitude: float
    snapshot: Optional[SolverSnapshot] = None
    observed_fingerprint: str = ""
    expected_fingerprint: str = ""
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "severity": self.severity,
            "magnitude": self.magnitude,
            "observed_fingerprint": self.observed_fingerprint,
            "expected_fingerprint": self.expected_fingerprint,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AuditEntry:
    seq: int
    timestamp: int
    trust_value: float
    state: AutomatonState
    transition: str
    collision: Optional[Mapping[str, Any]] = None
    reason: str = ""
    feedback: float = 0.0
    prev_hash: str = ""
    hash: str = ""

    def __post_init__(self) -> None:
        if self.collision is not None:
            object.__setattr__(self, "collision", MappingProxyType(dict(self.collision)))

    def payload(self) -> Dict[str, Any]:
        """Hashed portion of the entry (everything except the chain hashes)."""
        return {
            "seq": self.seq,
            "timestamp": self.timestamp,
            "trust_value": self.trust_value,
            "state": self.state.value,
            "transition": self.transition,
            "collision": dict(self.collision) if self.collision is not None else None,
            "reason": self.reason,
            "feedback": self.feedback,
        }

    def to_record(self) -> Dict[str, Any]:
        d = self.payload()
        d["prev_hash"] = self.prev_hash
        d["hash"] = self.hash
        return d


@dataclass(frozen=True)
class TrustAssessment:
    confidence: float
    grade: TrustGrade
    session_id: str
    timestep: int = 0
    state: AutomatonState = AutomatonState.SCAN
    feedback: float = 0.0
    undetermined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "grade": self.grade.value,
            "session_id": self.session_id,
            "timestep": self.timestep,
            "state": self.state.value,
            "feedback": self.feedback,
            "undetermined": self.undetermined,
        }
