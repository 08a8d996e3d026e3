"""Graduated response protocol: severity → fixed automaton action."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from equitrust.errors import InvariantViolation
from equitrust.types import AutomatonState


class ResponseAction(str, Enum):
    NUDGE = "parameter_nudge"
    REIDENTIFY = "reidentify"
    ROLLBACK = "rollback"
    RESET = "reset"


@dataclass(frozen=True)
class Response:
    severity: int
    action: ResponseAction
    target: Optional[AutomatonState]   # None = stay in place
    evidence_retained: int             # 3 = config + progress, 0 = nothing


RESPONSES: Dict[int, Response] = {
    1: Response(1, ResponseAction.NUDGE, None, 3),
    2: Response(2, ResponseAction.REIDENTIFY, AutomatonState.DETECT, 2),
    3: Response(3, ResponseAction.ROLLBACK, AutomatonState.VERIFY, 1),
    4: Response(4, ResponseAction.RESET, AutomatonState.SCAN, 0),
}


def response_for(severity: int) -> Response:
    try:
        return RESPONSES[severity]
    except KeyError:
        raise InvariantViolation(f"collision severity outside 1..4: {severity!r}") from None
