"""Stable hashing utilities for fingerprints and audit chains.

Canonical JSON (sorted keys, no whitespace) hashed with an agile
algorithm. Floats are rounded to a fixed number of significant digits
before hashing so that fingerprints are insensitive to round-off below
the requested precision.

Default: SHA-256. Override per call with algorithm= or globally with
EQUITRUST_HASH_ALGORITHM.
"""
from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Mapping, Sequence

from equitrust.config import Settings

_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
    "blake2b": hashlib.blake2b,
}

HASH_ALGORITHM: str = Settings.HASH_ALGORITHM

GENESIS = "GENESIS"


def _get_hasher(algorithm: str = ""):
    algo = algorithm or HASH_ALGORITHM
    if algo not in _ALGORITHMS:
        raise ValueError(
            f"Unsupported hash algorithm: {algo!r}. "
            f"Supported: {', '.join(sorted(_ALGORITHMS))}"
        )
    return _ALGORITHMS[algo]


def stable_json(obj: Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, UTF-8 safe."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=True)


def stable_hash(obj: Any, *, algorithm: str = "") -> str:
    """Deterministic hex digest of any JSON-serializable object."""
    h = _get_hasher(algorithm)
    return h(stable_json(obj).encode("utf-8")).hexdigest()


def round_sig(x: float, digits: int) -> float:
    """Round to `digits` significant digits. Non-finite values pass through."""
    x = float(x)
    if x == 0.0 or not math.isfinite(x):
        return x
    return round(x, digits - 1 - int(math.floor(math.log10(abs(x)))))


def canonical_numbers(values: Mapping[str, float], digits: int) -> Sequence[Any]:
    """Sorted (key, rounded value) pairs; repr keeps NaN/inf distinguishable."""
    return [[k, repr(round_sig(values[k], digits))] for k in sorted(values)]


def hash_suffix(h: str, n: int = 8) -> str:
    """Last n characters of a hash (for log lines)."""
    if not h:
        return ""
    return h[-n:]


def supported_algorithms() -> list:
    return sorted(_ALGORITHMS.keys())
