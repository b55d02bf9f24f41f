# FILE: app/services/transfusion_state.py
from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional, Tuple

from app.models.blood_transfusion import ACTIVE_STATUSES, TransfusionStatus
from app.services.transfusion_errors import InvalidTransition


class TransfusionAction(str, enum.Enum):
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    COMPLETE = "COMPLETE"
    STOP_EARLY = "STOP_EARLY"
    RECORD_PROGRESS = "RECORD_PROGRESS"


# action -> (allowed source states, target state; None keeps the current state)
TRANSITIONS: Dict[TransfusionAction, Tuple[FrozenSet[TransfusionStatus], Optional[TransfusionStatus]]] = {
    TransfusionAction.PAUSE: (frozenset({TransfusionStatus.IN_PROGRESS}), TransfusionStatus.PAUSED),
    TransfusionAction.RESUME: (frozenset({TransfusionStatus.PAUSED}), TransfusionStatus.IN_PROGRESS),
    TransfusionAction.COMPLETE: (ACTIVE_STATUSES, TransfusionStatus.COMPLETED),
    TransfusionAction.STOP_EARLY: (ACTIVE_STATUSES, TransfusionStatus.STOPPED_EARLY),
    TransfusionAction.RECORD_PROGRESS: (ACTIVE_STATUSES, None),
}

_ACTION_LABEL = {
    TransfusionAction.PAUSE: "pause",
    TransfusionAction.RESUME: "resume",
    TransfusionAction.COMPLETE: "complete",
    TransfusionAction.STOP_EARLY: "stop",
    TransfusionAction.RECORD_PROGRESS: "record progress for",
}


def check_transition(current: TransfusionStatus, action: TransfusionAction) -> TransfusionStatus:
    """
    Single home for every lifecycle rule. Returns the state the transfusion
    moves to, or raises InvalidTransition.
    """
    current = TransfusionStatus(current)
    allowed, target = TRANSITIONS[action]
    if current not in allowed:
        raise InvalidTransition(
            f"Cannot {_ACTION_LABEL[action]} a transfusion that is {current.value}")
    return target or current

