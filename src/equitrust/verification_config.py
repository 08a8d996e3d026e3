"""Session configuration surface.

Validated once at session start. Invalid ranges (negative thresholds,
a window shorter than the convergence run it has to contain, ...) fail
construction with ConfigurationError before any automaton step runs.

Policy files are YAML (or JSON) with the knobs under a `verification:`
block; unknown top-level keys are ignored, unknown knobs are rejected.
"""
from __future__ import annotations

import json
import os
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from equitrust.errors import ConfigurationError


class SessionConfig(BaseModel):
    sensitivity_threshold: float = Field(0.01, ge=0.0)
    equilibrium_tolerance: float = Field(1e-3, gt=0.0)
    alpha: float = Field(0.2, gt=0.0)
    max_iterations: int = Field(10_000, ge=1)
    confidence_threshold: float = Field(0.8, gt=0.0, le=1.0)
    min_stable_iterations: int = Field(10, ge=1)

    conservation_tolerance: float = Field(1e-6, gt=0.0)
    window_size: int = Field(64, ge=2)
    history_size: int = Field(4, ge=1)
    deviation_history: int = Field(32, ge=1)
    divergence_weight: float = Field(5.0, gt=0.0)
    level3_window: int = Field(10, ge=1)
    reidentify_attempts: int = Field(8, ge=1)
    fingerprint_precision: int = Field(8, ge=1, le=17)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _window_holds_convergence_run(self) -> "SessionConfig":
        if self.window_size <= self.min_stable_iterations:
            raise ValueError(
                f"window_size={self.window_size} must exceed "
                f"min_stable_iterations={self.min_stable_iterations}"
            )
        return self

    # -----------------------------
    # Presets
    # -----------------------------
    @staticmethod
    def preset_strict() -> "SessionConfig":
        return SessionConfig(
            sensitivity_threshold=0.001,
            equilibrium_tolerance=1e-4,
            alpha=0.5,
            confidence_threshold=0.9,
            min_stable_iterations=20,
            conservation_tolerance=1e-8,
            window_size=128,
        )

    @staticmethod
    def preset_exploratory() -> "SessionConfig":
        return SessionConfig(
            sensitivity_threshold=0.1,
            equilibrium_tolerance=1e-2,
            alpha=0.1,
            min_stable_iterations=5,
            conservation_tolerance=1e-4,
            window_size=32,
        )


ConfigLike = Union[SessionConfig, Mapping[str, Any], None]


def load_session_config(data: ConfigLike = None) -> SessionConfig:
    """Validate a config mapping (or pass a SessionConfig through)."""
    if isinstance(data, SessionConfig):
        return data
    if data is not None and not isinstance(data, Mapping):
        raise ConfigurationError(f"session config must be a mapping, got {type(data).__name__}")
    try:
        return SessionConfig(**dict(data or {}))
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def load_session_config_file(path: str) -> SessionConfig:
    """Read the `verification:` block of a YAML or JSON policy file."""
    if not os.path.exists(path):
        raise ConfigurationError(f"policy file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    try:
        if path.endswith(".json"):
            doc = json.loads(text)
        else:
            doc = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot parse policy file {path}: {exc}") from exc

    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigurationError(f"policy file {path} must contain a mapping")
    block: Optional[Dict[str, Any]] = doc.get("verification", {})
    if block is not None and not isinstance(block, dict):
        raise ConfigurationError("`verification` block must be a mapping")
    return load_session_config(block or {})


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "config"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "invalid session config: " + "; ".join(parts)
