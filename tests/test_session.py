"""Session lifecycle, cancellation and parallel runs."""
import os
import threading

import pytest

from helpers import converging, disturbed

from equitrust import VerificationSession
from equitrust.audit.replay import chain_summary, compare_trails, verify_chain
from equitrust.audit.store import JsonlSink
from equitrust.config import Settings
from equitrust.errors import ConfigurationError, SessionClosed
from equitrust.session import run_sessions
from equitrust.types import AutomatonState

S = AutomatonState


def _noisy_stream():
    stream = converging()
    out = list(stream[:13])
    out.append(disturbed(stream[13], 1.1))
    out.extend(stream[14:30])
    out.append(disturbed(stream[30], 1.0144))
    out.extend(disturbed(s, 1.0144) for s in stream[31:])
    return out


def test_invalid_config_fails_before_any_step():
    with pytest.raises(ConfigurationError):
        VerificationSession({"sensitivity_threshold": -1})


def test_session_ids_are_unique():
    assert VerificationSession().session_id != VerificationSession().session_id


def test_step_accepts_mappings():
    session = VerificationSession()
    a = session.step({"timestep": 0, "residual": 1.0, "field_summary": {"mass": 1.0}})
    assert a.timestep == 0
    assert session.steps == 1


def test_max_iterations_finishes_session():
    session = VerificationSession({"max_iterations": 5})
    for snap in converging()[:5]:
        session.step(snap)
    assert session.status == "finished"
    assert session.state == S.FAILED
    assert session.audit.entries[-1].reason == "max_iterations"
    with pytest.raises(SessionClosed):
        session.step(converging()[5])


def test_run_stops_at_max_iterations():
    session = VerificationSession({"max_iterations": 20})
    session.run(converging())
    assert session.steps == 20
    assert session.state == S.VALIDATE


def test_step_after_finish_is_rejected():
    session = VerificationSession()
    session.run(converging()[:3])
    with pytest.raises(SessionClosed):
        session.step(converging()[3])
    with pytest.raises(SessionClosed):
        session.finish()


def test_cancel_closes_without_transition():
    session = VerificationSession()
    for snap in converging()[:12]:
        session.step(snap)
    n = len(session.audit)
    session.cancel()
    assert session.status == "cancelled"
    assert len(session.audit) == n
    with pytest.raises(SessionClosed):
        session.step(converging()[12])
    session.cancel()
    assert session.status == "cancelled"


def test_cancel_from_another_thread_leaves_consistent_trail():
    session = VerificationSession()
    stream = converging(n=200)
    started = threading.Event()

    def drive():
        for snap in stream:
            started.set()
            try:
                session.step(snap)
            except SessionClosed:
                return

    worker = threading.Thread(target=drive)
    worker.start()
    started.wait(timeout=5)
    session.cancel()
    worker.join(timeout=10)

    assert session.status == "cancelled"
    assert chain_summary(verify_chain(session.audit.to_records()))["intact"]
    if len(session.audit):
        assert session.audit.entries[-1].state == session.state


def test_same_stream_replays_identically():
    a = VerificationSession(session_id="a")
    b = VerificationSession(session_id="b")
    a.run(_noisy_stream())
    b.run(_noisy_stream())
    report = compare_trails(a.audit.to_records(), b.audit.to_records())
    assert report.identical
    assert report.compared == len(a.audit)
    assert any(e.collision for e in a.audit.entries)


def test_sessions_do_not_share_state():
    a = VerificationSession()
    b = VerificationSession()
    a.run(converging())
    assert b.state == S.SCAN
    assert len(b.audit) == 0
    assert b.current_config is None


def test_subscribers_see_every_entry():
    seen = []
    session = VerificationSession()
    session.subscribe_audit(seen.append)
    session.run(_noisy_stream())
    assert [e.seq for e in seen] == [e.seq for e in session.audit.entries]


def test_run_sessions_in_parallel():
    streams = {
        "case-a": converging(),
        "case-b": _noisy_stream(),
        "case-c": converging(end=1e-10),
    }
    sessions = run_sessions(streams, max_workers=3)

    assert set(sessions) == set(streams)
    assert sessions["case-a"].state == S.VALIDATE
    assert sessions["case-c"].state == S.VALIDATE
    assert all(s.closed for s in sessions.values())

    solo = VerificationSession()
    solo.run(_noisy_stream())
    assert compare_trails(solo.audit.to_records(), sessions["case-b"].audit.to_records()).identical


def test_run_sessions_rejects_bad_config():
    with pytest.raises(ConfigurationError):
        run_sessions({"a": converging()}, {"alpha": 0})


def test_run_sessions_uses_sink_factory(tmp_path):
    sessions = run_sessions(
        {"x": converging()},
        sink_factory=lambda sid: JsonlSink(str(tmp_path / f"{sid}.jsonl")),
    )
    records = JsonlSink(str(tmp_path / "x.jsonl")).read_all()
    assert records == sessions["x"].audit.to_records()


def test_persisted_default_sink(tmp_path, monkeypatch):
    monkeypatch.setattr(Settings, "PERSIST_AUDIT", True)
    monkeypatch.setattr(Settings, "AUDIT_PATH", str(tmp_path / "audit.jsonl"))
    session = VerificationSession(session_id="s1")
    session.run(converging())
    path = tmp_path / "audit.s1.jsonl"
    assert os.path.exists(path)
    assert JsonlSink(str(path)).read_all() == session.audit.to_records()
