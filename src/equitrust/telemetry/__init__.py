"""Structured logging for verification sessions."""

from equitrust.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
