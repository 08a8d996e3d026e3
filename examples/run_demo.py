#!/usr/bin/env python3
"""Equilibrium verification demo (offline, synthetic solver).

    python3 examples/run_demo.py

A lid-driven-cavity-like residual history converges, is detected as an
equilibrium and validated; a disturbance then triggers the graduated
collision response. The audit trail is printed and replayed.
"""
from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from equitrust import SolverSnapshot, VerificationSession, load_session_config_file
from equitrust.audit.replay import chain_summary, compare_trails, replay_session, verify_chain
from equitrust.telemetry import setup_logging


def synthetic_run(n: int = 60, disturb_at: int = 40):
    """Residual decays geometrically; the field jumps once at `disturb_at`."""
    snaps = []
    for t in range(n):
        residual = 1.0 * (0.65 ** t)
        velocity = 1.0 if t < disturb_at else 1.05
        if t >= disturb_at:
            residual = 1e-3 * (0.65 ** (t - disturb_at))
        snaps.append(SolverSnapshot(
            timestep=t,
            residual=residual,
            parameters=(100.0,),
            field_summary={"mean_velocity": velocity, "mean_pressure": 0.25, "mass": 1.0},
            conservation_error=1e-10,
        ))
    return snaps


def divider(title: str) -> None:
    print(f"\n{'═' * 70}\n  {title}\n{'═' * 70}")


def main() -> None:
    setup_logging(level="WARNING")
    cfg = load_session_config_file(os.path.join(os.path.dirname(__file__), "policy.yaml"))
    snaps = synthetic_run()

    emitted = []
    session = VerificationSession(cfg, session_id="demo", on_assessment=emitted.append)
    final = session.run(snaps)

    divider("Audit trail")
    for rec in session.audit.to_records():
        col = rec["collision"]
        col_txt = f" collision=L{col['severity']}:{col['kind']}" if col else ""
        print(f"  t={rec['timestamp']:>3}  {rec['transition']:<18} φ={rec['trust_value']:.4f}  {rec['reason']}{col_txt}")

    divider("Trust assessments")
    for a in emitted:
        print(f"  t={a.timestep:>3}  {a.state.value:<9} {a.grade.value:<6} confidence={a.confidence:.4f}")
    print(f"\n  final: {final.state.value} / {final.grade.value}")

    divider("Replay")
    records = session.audit.to_records()
    print("  chain:", chain_summary(verify_chain(records)))
    report = compare_trails(records, replay_session(snaps, cfg, session_id="replay"))
    print("  replay identical:", report.identical)


if __name__ == "__main__":
    main()
