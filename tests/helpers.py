"""Synthetic solver streams shared by the session-level tests."""
from equitrust.types import SolverSnapshot

FIELD = {"mean_velocity": 1.0, "mean_pressure": 0.25, "mass": 1.0}


def converging(n=50, start=1.0, end=1e-9, t0=0, field=None, params=(100.0,), fingerprint=""):
    """Geometric residual decay over n steps with a constant field summary."""
    ratio = (end / start) ** (1.0 / (n - 1))
    return [
        SolverSnapshot(
            timestep=t0 + i,
            residual=start * ratio ** i,
            parameters=params,
            field_summary=dict(field or FIELD),
            fingerprint=fingerprint,
            conservation_error=1e-10,
        )
        for i in range(n)
    ]


def disturbed(base, velocity, residual=None, fingerprint=None):
    return SolverSnapshot(
        timestep=base.timestep,
        residual=base.residual if residual is None else residual,
        parameters=base.parameters,
        field_summary={**base.field_summary, "mean_velocity": velocity},
        fingerprint=base.fingerprint if fingerprint is None else fingerprint,
        conservation_error=1e-10,
    )
