import pytest
from app.services.state_machine import (
    InvalidTransitionError,
    PresenceState,
    PunchType,
    can_transition,
    next_punch_type,
    parse_state,
    state_after_punch,
    transition,
)


class TestValidTransitions:
    def test_waiting_entry_to_working(self):
        result = transition(PresenceState.AGUARDANDO_ENTRADA, PresenceState.EM_EXPEDIENTE)
        assert result == PresenceState.EM_EXPEDIENTE

    def test_working_to_break(self):
        result = transition(PresenceState.EM_EXPEDIENTE, PresenceState.EM_INTERVALO)
        assert result == PresenceState.EM_INTERVALO

    def test_break_to_waiting_exit(self):
        result = transition(PresenceState.EM_INTERVALO, PresenceState.AGUARDANDO_SAIDA)
        assert result == PresenceState.AGUARDANDO_SAIDA

    def test_pending_justification_to_pending_approval(self):
        result = transition(PresenceState.PENDENTE_JUSTIFICATIVA, PresenceState.PENDENTE_APROVACAO)
        assert result == PresenceState.PENDENTE_APROVACAO

    def test_pending_approval_to_closed(self):
        result = transition(PresenceState.PENDENTE_APROVACAO, PresenceState.FECHADO)
        assert result == PresenceState.FECHADO

    def test_closed_to_adjusted(self):
        result = transition(PresenceState.FECHADO, PresenceState.AJUSTADO)
        assert result == PresenceState.AJUSTADO


class TestInvalidTransitions:
    def test_pending_justification_cannot_skip_to_closed(self):
        with pytest.raises(InvalidTransitionError):
            transition(PresenceState.PENDENTE_JUSTIFICATIVA, PresenceState.FECHADO)

    def test_pending_justification_cannot_return_to_working(self):
        with pytest.raises(InvalidTransitionError):
            transition(PresenceState.PENDENTE_JUSTIFICATIVA, PresenceState.EM_EXPEDIENTE)

    def test_working_cannot_close_directly(self):
        with pytest.raises(InvalidTransitionError):
            transition(PresenceState.EM_EXPEDIENTE, PresenceState.FECHADO)

    def test_adjusted_is_terminal(self):
        for target in PresenceState:
            assert can_transition(PresenceState.AJUSTADO, target) is False

    def test_error_message_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(PresenceState.FECHADO, PresenceState.EM_EXPEDIENTE)
        assert "FECHADO -> EM_EXPEDIENTE" in str(exc_info.value)


class TestPunchSequence:
    def test_first_punch_is_entry(self):
        assert next_punch_type(None) == PunchType.ENTRY

    def test_sequence_order(self):
        assert next_punch_type("ENTRY") == PunchType.BREAK_START
        assert next_punch_type("BREAK_START") == PunchType.BREAK_END
        assert next_punch_type("BREAK_END") == PunchType.EXIT

    def test_nothing_after_exit(self):
        assert next_punch_type("EXIT") is None

    def test_unknown_last_punch_restarts_sequence(self):
        assert next_punch_type("LUNCH") == PunchType.ENTRY

    def test_state_after_clean_punch(self):
        assert state_after_punch(PunchType.ENTRY) == PresenceState.EM_EXPEDIENTE
        assert state_after_punch(PunchType.BREAK_START) == PresenceState.EM_INTERVALO
        assert state_after_punch(PunchType.BREAK_END) == PresenceState.AGUARDANDO_SAIDA
        assert state_after_punch(PunchType.EXIT) == PresenceState.PENDENTE_APROVACAO


class TestParseState:
    def test_known_state(self):
        assert parse_state("EM_INTERVALO") == PresenceState.EM_INTERVALO

    def test_unknown_or_missing_state_defaults_to_waiting_entry(self):
        assert parse_state(None) == PresenceState.AGUARDANDO_ENTRADA
        assert parse_state("new") == PresenceState.AGUARDANDO_ENTRADA
