from enum import Enum
from typing import Optional


class PresenceState(str, Enum):
    AGUARDANDO_ENTRADA = "AGUARDANDO_ENTRADA"
    EM_EXPEDIENTE = "EM_EXPEDIENTE"
    EM_INTERVALO = "EM_INTERVALO"
    AGUARDANDO_SAIDA = "AGUARDANDO_SAIDA"
    PENDENTE_JUSTIFICATIVA = "PENDENTE_JUSTIFICATIVA"
    PENDENTE_APROVACAO = "PENDENTE_APROVACAO"
    FECHADO = "FECHADO"
    AJUSTADO = "AJUSTADO"


class PunchType(str, Enum):
    ENTRY = "ENTRY"
    BREAK_START = "BREAK_START"
    BREAK_END = "BREAK_END"
    EXIT = "EXIT"


PUNCH_SEQUENCE = [PunchType.ENTRY, PunchType.BREAK_START, PunchType.BREAK_END, PunchType.EXIT]

# PENDENTE_JUSTIFICATIVA is left only towards approval; FECHADO only through day-close.
VALID_TRANSITIONS = {
    PresenceState.AGUARDANDO_ENTRADA: [
        PresenceState.EM_EXPEDIENTE,
        PresenceState.EM_INTERVALO,
        PresenceState.AGUARDANDO_SAIDA,
        PresenceState.PENDENTE_JUSTIFICATIVA,
        PresenceState.PENDENTE_APROVACAO,
    ],
    PresenceState.EM_EXPEDIENTE: [
        PresenceState.EM_INTERVALO,
        PresenceState.AGUARDANDO_SAIDA,
        PresenceState.PENDENTE_JUSTIFICATIVA,
        PresenceState.PENDENTE_APROVACAO,
    ],
    PresenceState.EM_INTERVALO: [
        PresenceState.EM_EXPEDIENTE,
        PresenceState.AGUARDANDO_SAIDA,
        PresenceState.PENDENTE_JUSTIFICATIVA,
        PresenceState.PENDENTE_APROVACAO,
    ],
    PresenceState.AGUARDANDO_SAIDA: [
        PresenceState.EM_EXPEDIENTE,
        PresenceState.EM_INTERVALO,
        PresenceState.PENDENTE_JUSTIFICATIVA,
        PresenceState.PENDENTE_APROVACAO,
    ],
    PresenceState.PENDENTE_JUSTIFICATIVA: [PresenceState.PENDENTE_APROVACAO],
    PresenceState.PENDENTE_APROVACAO: [
        PresenceState.EM_EXPEDIENTE,
        PresenceState.EM_INTERVALO,
        PresenceState.AGUARDANDO_SAIDA,
        PresenceState.PENDENTE_JUSTIFICATIVA,
        PresenceState.FECHADO,
    ],
    PresenceState.FECHADO: [PresenceState.AJUSTADO],
    PresenceState.AJUSTADO: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: PresenceState, to_state: PresenceState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: PresenceState, to_state: PresenceState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: PresenceState, to_state: PresenceState) -> PresenceState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def parse_state(value: Optional[str]) -> PresenceState:
    try:
        return PresenceState(value)
    except ValueError:
        return PresenceState.AGUARDANDO_ENTRADA


def state_after_punch(punch_type: PunchType) -> PresenceState:
    """Workflow state reached by a clean punch (no rule violation)."""
    if punch_type == PunchType.ENTRY:
        return PresenceState.EM_EXPEDIENTE
    if punch_type == PunchType.BREAK_START:
        return PresenceState.EM_INTERVALO
    if punch_type == PunchType.BREAK_END:
        return PresenceState.AGUARDANDO_SAIDA
    return PresenceState.PENDENTE_APROVACAO


def next_punch_type(last_punch_type: Optional[str]) -> Optional[PunchType]:
    """Next punch in the day sequence, or None after EXIT."""
    if not last_punch_type:
        return PunchType.ENTRY
    try:
        last = PunchType(last_punch_type)
    except ValueError:
        return PunchType.ENTRY
    index = PUNCH_SEQUENCE.index(last)
    if index + 1 >= len(PUNCH_SEQUENCE):
        return None
    return PUNCH_SEQUENCE[index + 1]
