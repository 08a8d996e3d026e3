"""Structured logging setup."""
import structlog
from structlog.testing import capture_logs

from helpers import converging

from equitrust import VerificationSession
from equitrust.telemetry import setup_logging


def test_setup_logging_console_and_json():
    try:
        setup_logging(level="DEBUG", json=False)
        structlog.get_logger(system="test").info("noop")
        setup_logging(level="WARNING", json=True)
        structlog.get_logger(system="test").warning("noop")
    finally:
        structlog.reset_defaults()


def test_transitions_are_logged():
    with capture_logs() as logs:
        VerificationSession(session_id="logged").run(converging())
    events = [e for e in logs if e["event"] == "transition_recorded"]
    assert [e["transition"] for e in events] == [
        "SCAN->DETECT", "DETECT->VERIFY", "VERIFY->TRUST", "TRUST->VALIDATE",
    ]
    assert all(e["session_id"] == "logged" for e in events)
    assert all(e["system"] == "automaton" for e in events)
