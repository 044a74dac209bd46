from app.services.result import Result
from app.services.state_machine import (
    InvalidTransitionError,
    PresenceState,
    PunchType,
    can_transition,
    transition,
)

__all__ = [
    "Result",
    "PresenceState",
    "PunchType",
    "InvalidTransitionError",
    "can_transition",
    "transition",
]
