"""Audit replay — chain integrity and replay equality.

Two checks:
  1. Chain verification over exported records: every hash recomputes and
     every prev_hash links to its predecessor (tamper detection).
  2. Replay equality: re-running a snapshot sequence through a fresh
     session must reproduce the same records, field for field.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from equitrust.audit.trail import entry_hash
from equitrust.utils.stable import GENESIS

# Fields compared for replay equality; hashes cover everything else.
REPLAY_FIELDS = ("seq", "timestamp", "trust_value", "state", "collision", "transition", "reason", "feedback", "hash")


@dataclass
class ChainCheck:
    seq: int
    hash_match: bool
    link_match: bool
    detail: str = ""


@dataclass
class ReplayReport:
    identical: bool
    compared: int
    first_divergence: Optional[int] = None
    differences: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _payload(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "seq": record.get("seq"),
        "timestamp": record.get("timestamp"),
        "trust_value": record.get("trust_value"),
        "state": record.get("state"),
        "transition": record.get("transition"),
        "collision": record.get("collision"),
        "reason": record.get("reason", ""),
        "feedback": record.get("feedback", 0.0),
    }


def verify_entry(record: Dict[str, Any], expected_prev_hash: Optional[str] = None) -> ChainCheck:
    recomputed = entry_hash(
        int(record.get("seq", 0)),
        int(record.get("timestamp", 0)),
        str(record.get("prev_hash", "")),
        _payload(record),
    )
    hash_match = recomputed == record.get("hash")
    link_match = True
    if expected_prev_hash is not None:
        link_match = record.get("prev_hash") == expected_prev_hash

    if not hash_match:
        detail = "TAMPERED: hash mismatch"
    elif not link_match:
        detail = "BROKEN: prev_hash mismatch"
    else:
        detail = "ok"
    return ChainCheck(seq=int(record.get("seq", 0)), hash_match=hash_match, link_match=link_match, detail=detail)


def verify_chain(records: Sequence[Dict[str, Any]]) -> List[ChainCheck]:
    checks: List[ChainCheck] = []
    prev = GENESIS
    for record in records:
        checks.append(verify_entry(record, expected_prev_hash=prev))
        prev = record.get("hash", "")
    return checks


def chain_summary(checks: Sequence[ChainCheck]) -> Dict[str, Any]:
    if not checks:
        return {"total": 0, "intact": True, "determinism_index": 100.0, "tampered": [], "broken_links": []}
    total = len(checks)
    ok = sum(1 for c in checks if c.hash_match and c.link_match)
    return {
        "total": total,
        "intact": ok == total,
        "determinism_index": round(ok / total * 100, 1),
        "tampered": [c.seq for c in checks if not c.hash_match],
        "broken_links": [c.seq for c in checks if not c.link_match],
    }


def compare_trails(a: Sequence[Dict[str, Any]], b: Sequence[Dict[str, Any]]) -> ReplayReport:
    """Field-by-field comparison of two exported audit sequences."""
    diffs: List[Dict[str, Any]] = []
    first: Optional[int] = None
    n = max(len(a), len(b))
    for i in range(n):
        ra = a[i] if i < len(a) else None
        rb = b[i] if i < len(b) else None
        if ra is None or rb is None:
            diffs.append({"index": i, "field": "<length>", "a": ra is not None, "b": rb is not None})
        else:
            for k in REPLAY_FIELDS:
                if ra.get(k) != rb.get(k):
                    diffs.append({"index": i, "field": k, "a": ra.get(k), "b": rb.get(k)})
        if diffs and first is None:
            first = i
    return ReplayReport(identical=not diffs, compared=n, first_divergence=first, differences=diffs)


def replay_session(snapshots: Iterable[Any], config: Any = None, *, session_id: str = "replay") -> List[Dict[str, Any]]:
    """Run snapshots through a fresh session and return its audit records."""
    from equitrust.session import VerificationSession

    session = VerificationSession(config, session_id=session_id)
    for snap in snapshots:
        if session.closed:
            break
        session.step(snap)
    if not session.closed:
        session.finish()
    return session.audit.to_records()
