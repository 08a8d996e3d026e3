"""Append-only, hash-chained audit trail.

Each entry commits to its predecessor:

    hash = stable_hash({seq, timestamp, prev_hash, payload})

The first entry links to "GENESIS". Timestamps are solver timesteps, not
wall-clock time, so the same snapshot sequence yields the same chain.

Write order for an append is sink → in-memory sequence → subscribers. A
sink failure leaves nothing recorded.
"""
from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from equitrust.audit.store import AuditSink, MemorySink
from equitrust.errors import AuditSinkError, InvariantViolation
from equitrust.types import AuditEntry, AutomatonState, CollisionEvent
from equitrust.utils.stable import GENESIS, hash_suffix, stable_hash

logger = structlog.get_logger(system="audit")

Subscriber = Callable[[AuditEntry], None]


def entry_hash(seq: int, timestamp: int, prev_hash: str, payload: Dict[str, Any]) -> str:
    return stable_hash({
        "seq": seq,
        "timestamp": timestamp,
        "prev_hash": prev_hash,
        "payload": payload,
    })


class AuditTrail:
    """One session's audit segment. Exposed read-only to consumers."""

    def __init__(self, sink: Optional[AuditSink] = None) -> None:
        self._sink = sink or MemorySink()
        self._entries: Tuple[AuditEntry, ...] = ()
        self._subscribers: List[Subscriber] = []

    # ---- read-only surface ----
    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return self._entries

    @property
    def head_hash(self) -> str:
        return self._entries[-1].hash if self._entries else GENESIS

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(self._entries)

    def __getitem__(self, i: int) -> AuditEntry:
        return self._entries[i]

    def to_records(self) -> List[Dict[str, Any]]:
        return [e.to_record() for e in self._entries]

    def export_json(self) -> str:
        return json.dumps(self.to_records(), ensure_ascii=False)

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    # ---- writer (automaton only) ----
    def append(
        self,
        *,
        timestamp: int,
        trust_value: float,
        state: AutomatonState,
        transition: str,
        collision: Optional[CollisionEvent] = None,
        reason: str = "",
        feedback: float = 0.0,
    ) -> AuditEntry:
        if self._entries and timestamp < self._entries[-1].timestamp:
            raise InvariantViolation(
                f"audit out of order: timestamp {timestamp} after {self._entries[-1].timestamp}"
            )
        if not (0.0 <= trust_value <= 1.0):
            raise InvariantViolation(f"trust value outside [0,1]: {trust_value!r}")

        seq = len(self._entries) + 1
        prev_hash = self.head_hash
        draft = AuditEntry(
            seq=seq,
            timestamp=int(timestamp),
            trust_value=float(trust_value),
            state=state,
            transition=transition,
            collision=collision.to_dict() if collision is not None else None,
            reason=reason,
            feedback=float(feedback),
            prev_hash=prev_hash,
        )
        h = entry_hash(seq, draft.timestamp, prev_hash, draft.payload())
        entry = replace(draft, hash=h)

        try:
            self._sink.append(entry.to_record())
        except Exception as exc:
            logger.error("audit_sink_failed", seq=seq, error=str(exc))
            raise AuditSinkError(f"audit sink rejected entry {seq}: {exc}") from exc

        self._entries = self._entries + (entry,)
        logger.debug("audit_appended", seq=seq, transition=transition, hash=hash_suffix(h))

        for cb in list(self._subscribers):
            cb(entry)
        return entry

    def flush(self) -> None:
        self._sink.flush()
