"""Stability metrics — pure numeric helpers over solver snapshots.

No state and no I/O. Everything here is a deterministic function of its
arguments so that detection and trust evaluation can be replayed.
"""
from __future__ import annotations

import math
from typing import List, Optional, Sequence

import numpy as np

from equitrust.types import SolverSnapshot
from equitrust.utils.stable import canonical_numbers, stable_hash

# Field-summary keys treated as conserved invariants.
CONSERVED_KEYS = ("mass", "kinetic_energy", "energy")

_EPS = 1e-300


def summary_keys(snapshots: Sequence[SolverSnapshot]) -> List[str]:
    """Sorted union of field-summary keys across snapshots."""
    keys = set()
    for s in snapshots:
        keys.update(s.field_summary.keys())
    return sorted(keys)


def field_vector(snapshot: SolverSnapshot, keys: Sequence[str]) -> np.ndarray:
    """Field summary as a float vector in `keys` order (missing keys → 0)."""
    return np.array([snapshot.field_summary.get(k, 0.0) for k in keys], dtype=np.float64)


def residual_norm(residuals: Sequence[float]) -> float:
    if len(residuals) == 0:
        return 0.0
    return float(np.linalg.norm(np.asarray(residuals, dtype=np.float64)))


def state_distance(a: SolverSnapshot, b: SolverSnapshot, keys: Optional[Sequence[str]] = None) -> float:
    """‖u_a − u_b‖₂ over the field summary."""
    keys = list(keys) if keys is not None else summary_keys([a, b])
    if not keys:
        return 0.0
    return float(np.linalg.norm(field_vector(a, keys) - field_vector(b, keys)))


def relative_deviation(snapshot: SolverSnapshot, reference: SolverSnapshot, tolerance: float) -> float:
    """δ = ‖u − u_ref‖ / (tolerance · max(1, ‖u_ref‖)).

    Measured in units of the equilibrium tolerance: δ = 1 means the live
    state sits exactly one tolerance away from its anchor.
    """
    keys = summary_keys([snapshot, reference])
    if not keys:
        return 0.0
    ref = field_vector(reference, keys)
    scale = tolerance * max(1.0, float(np.linalg.norm(ref)))
    return float(np.linalg.norm(field_vector(snapshot, keys) - ref)) / scale


def parameter_sensitivities(window: Sequence[SolverSnapshot], reference: SolverSnapshot) -> np.ndarray:
    """Finite-difference |∂‖u−u_eq‖/∂p_i| per parameter across the window.

    Each consecutive pair whose p_i differs contributes one difference
    quotient; the maximum over pairs is reported. Parameters that never
    vary inside the window have no measurable sensitivity and report 0.
    """
    if not window:
        return np.zeros(0)
    n_params = max(len(s.parameters) for s in window)
    if n_params == 0:
        return np.zeros(0)

    keys = summary_keys(list(window) + [reference])
    ref = field_vector(reference, keys)
    dist = np.array([np.linalg.norm(field_vector(s, keys) - ref) for s in window])
    params = np.array(
        [list(s.parameters) + [0.0] * (n_params - len(s.parameters)) for s in window],
        dtype=np.float64,
    )

    d_dist = np.diff(dist)
    d_p = np.diff(params, axis=0)
    out = np.zeros(n_params)
    for i in range(n_params):
        moved = np.abs(d_p[:, i]) > 0.0
        if np.any(moved):
            out[i] = float(np.max(np.abs(d_dist[moved]) / np.abs(d_p[moved, i])))
    # NaN fields must never pass as "insensitive"
    return np.nan_to_num(out, nan=np.inf)


def trailing_decrease_run(residuals: Sequence[float]) -> int:
    """Length of the strictly decreasing run ending at the newest residual."""
    run = 0
    for i in range(len(residuals) - 1, 0, -1):
        if residuals[i] < residuals[i - 1]:
            run += 1
        else:
            break
    return run


def invariant_drift(window: Sequence[SolverSnapshot], key: str) -> Optional[float]:
    """Relative drift of one conserved quantity over the window."""
    values = [s.field_summary[key] for s in window if key in s.field_summary]
    if len(values) < 2:
        return None
    first = values[0]
    arr = np.asarray(values, dtype=np.float64)
    return float(np.max(np.abs(arr - first)) / max(abs(first), _EPS))


def conservation_error(window: Sequence[SolverSnapshot]) -> float:
    """Worst conservation error: solver-reported values and invariant drift."""
    errors: List[float] = [
        abs(float(s.conservation_error)) for s in window if s.conservation_error is not None
    ]
    for key in CONSERVED_KEYS:
        drift = invariant_drift(window, key)
        if drift is not None:
            errors.append(drift)
    if not errors:
        return 0.0
    return max(e if math.isfinite(e) else math.inf for e in errors)


def residual_growth(residuals: Sequence[float]) -> float:
    """log10(R_last / min R) over a residual trend; 0 when not reversing."""
    if len(residuals) < 2:
        return 0.0
    last = float(residuals[-1])
    floor = float(min(residuals))
    if not math.isfinite(last):
        return math.inf
    if last <= floor:
        return 0.0
    return math.log10(max(last, _EPS) / max(floor, _EPS))


def structural_fingerprint(snapshot: SolverSnapshot, precision: int = 8) -> str:
    """Content hash of the rounded field summary.

    Parameters are not part of it: the fingerprint describes the
    discretized state only, so a parameter sweep that leaves the state
    unchanged keeps the same fingerprint.
    """
    return stable_hash({"field": canonical_numbers(snapshot.field_summary, precision)})
