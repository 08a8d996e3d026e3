from __future__ import annotations

import os


def env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


class Settings:
    HASH_ALGORITHM = env("EQUITRUST_HASH_ALGORITHM", "sha256").lower()

    AUDIT_PATH = env("EQUITRUST_AUDIT_PATH", ".equitrust_audit.jsonl")
    PERSIST_AUDIT = env("EQUITRUST_PERSIST_AUDIT", "0") == "1"

    LOG_LEVEL = env("EQUITRUST_LOG_LEVEL", "INFO").upper()
    LOG_JSON = env("EQUITRUST_LOG_JSON", "0") == "1"

    MAX_PARALLEL_SESSIONS = int(env("EQUITRUST_MAX_PARALLEL_SESSIONS", "4"))
