"""Audit sinks behind a simple append/read interface.

Long-term archival is an external concern; these are the reference sinks:
  - MemorySink:  in-process list (default)
  - JsonlSink:   append-only JSONL file
  - SQLiteSink:  thread-safe sqlite3 table, ordered by insertion id
"""
from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Protocol


class AuditSink(Protocol):
    def append(self, record: Dict[str, Any]) -> None: ...

    def read_all(self) -> List[Dict[str, Any]]: ...

    def flush(self) -> None: ...


class MemorySink:
    def __init__(self) -> None:
        self._records: List[Dict[str, Any]] = []

    def append(self, record: Dict[str, Any]) -> None:
        self._records.append(dict(record))

    def read_all(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._records]

    def flush(self) -> None:
        return None


class JsonlSink:
    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def append(self, record: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n")
            f.flush()

    def read_all(self, limit: int = 100_000) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        out: List[Dict[str, Any]] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                if i >= limit:
                    break
                line = line.strip()
                if line:
                    out.append(json.loads(line))
        return out

    def flush(self) -> None:
        return None


class SQLiteSink:
    def __init__(self, path: str, session_id: str = "") -> None:
        self.path = path
        self.session_id = session_id
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.path) as con:
            con.execute("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    timestep INTEGER NOT NULL,
                    hash TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            con.execute("CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_entries(session_id)")
            con.commit()

    def append(self, record: Dict[str, Any]) -> None:
        payload = json.dumps(record, sort_keys=True)
        with self._lock, sqlite3.connect(self.path) as con:
            con.execute(
                "INSERT INTO audit_entries(session_id, seq, timestep, hash, payload) VALUES (?,?,?,?,?)",
                (self.session_id, int(record["seq"]), int(record["timestamp"]), str(record["hash"]), payload),
            )
            con.commit()

    def read_all(self) -> List[Dict[str, Any]]:
        with self._lock, sqlite3.connect(self.path) as con:
            rows = con.execute(
                "SELECT payload FROM audit_entries WHERE session_id=? ORDER BY id ASC",
                (self.session_id,),
            ).fetchall()
        return [json.loads(r[0]) for r in rows]

    def flush(self) -> None:
        return None
