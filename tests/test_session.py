"""
Tests for the acquisition session state machine.
"""

import pytest


def advance(session, *states):
    for state in states:
        session.transition(state)


class TestSessionState:

    def test_activity_mapping(self):
        from timetag_sync.coordinator.session import SessionState

        assert SessionState.IDLE.activity == 'idle'
        assert SessionState.READY_FOR_TRIGGER.activity == 'starting'
        assert SessionState.ACQUIRING.activity == 'running'
        assert SessionState.COMPLETED.activity == 'completed'
        assert SessionState.ERROR.activity == 'error'

    def test_terminal(self):
        from timetag_sync.coordinator.session import SessionState

        assert SessionState.COMPLETED.terminal
        assert SessionState.ERROR.terminal
        assert not SessionState.STOPPING.terminal

    def test_str_enum(self):
        from timetag_sync.coordinator.session import SessionState

        assert SessionState('ready_for_trigger') is SessionState.READY_FOR_TRIGGER
        assert SessionState.ACQUIRING == 'acquiring'


class TestAcquisitionSession:

    def test_full_lifecycle(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState

        session = AcquisitionSession(1, 0.6, [1, 2, 3, 4])
        advance(session,
                SessionState.PREPARING,
                SessionState.READY_FOR_TRIGGER,
                SessionState.TRIGGERED,
                SessionState.ACQUIRING,
                SessionState.STOPPING,
                SessionState.COMPLETED)

        assert session.state == SessionState.COMPLETED
        assert session.progress == 100.0
        assert session.error_message is None

    def test_cannot_skip_states(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState

        session = AcquisitionSession(1, 0.6, [1])
        session.transition(SessionState.PREPARING)
        with pytest.raises(ValueError, match='illegal transition'):
            session.transition(SessionState.ACQUIRING)

    def test_no_transition_out_of_error(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState

        session = AcquisitionSession(1, 0.6, [1])
        session.fail(RuntimeError("x"))
        with pytest.raises(ValueError):
            session.transition(SessionState.PREPARING)

    def test_fail_records_phase_and_cancels(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState
        from timetag_sync.errors import HandshakeTimeout

        session = AcquisitionSession(2, 0.6, [1])
        session.transition(SessionState.PREPARING)
        session.fail(HandshakeTimeout("slave not ready"))

        assert session.state == SessionState.ERROR
        assert session.failed_phase == 'handshake'
        assert session.error_message == '[handshake] slave not ready'
        assert session.cancelled

    def test_fail_after_completion_ignored(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState

        session = AcquisitionSession(1, 0.6, [1])
        advance(session, SessionState.PREPARING, SessionState.READY_FOR_TRIGGER,
                SessionState.TRIGGERED, SessionState.ACQUIRING, SessionState.STOPPING,
                SessionState.COMPLETED)
        session.fail(RuntimeError("late"))

        assert session.state == SessionState.COMPLETED
        assert session.error_message is None

    def test_generic_error_phase(self):
        from timetag_sync.coordinator.session import AcquisitionSession

        session = AcquisitionSession(1, 0.6, [1])
        session.fail(OSError("disk"))
        assert session.failed_phase == 'session'
        assert session.error_message == 'disk'

    def test_progress_clamped(self):
        from timetag_sync.coordinator.session import AcquisitionSession

        session = AcquisitionSession(1, 0.6, [1])
        session.set_progress(150)
        assert session.progress == 100.0
        session.set_progress(-3)
        assert session.progress == 0.0

    def test_snapshot(self):
        from timetag_sync.coordinator.session import AcquisitionSession, SessionState

        session = AcquisitionSession(5, 2.0, (3, 1))
        session.transition(SessionState.PREPARING)
        session.master_trigger_timestamp_ns = 1000
        session.record_channel_error(3, "overflow")
        snapshot = session.snapshot()

        assert snapshot['sequence_id'] == 5
        assert snapshot['state'] == 'preparing'
        assert snapshot['activity'] == 'starting'
        assert snapshot['channels'] == [3, 1]
        assert snapshot['master_trigger_timestamp_ns'] == 1000
        assert snapshot['elapsed_ms'] == 0
        assert snapshot['remaining_ms'] == 2000
        assert snapshot['channel_errors'] == {'3': ['overflow']}

    def test_channel_errors_are_copies(self):
        from timetag_sync.coordinator.session import AcquisitionSession

        session = AcquisitionSession(1, 0.6, [1])
        session.record_channel_error(1, "a")
        session.channel_errors[1].append("b")
        assert session.channel_errors == {1: ["a"]}

    @pytest.mark.parametrize('channels', [[], [0], [1, 1], [65]])
    def test_invalid_channels(self, channels):
        from timetag_sync.coordinator.session import AcquisitionSession

        with pytest.raises(ValueError):
            AcquisitionSession(1, 0.6, channels)

    def test_invalid_duration(self):
        from timetag_sync.coordinator.session import AcquisitionSession

        with pytest.raises(ValueError):
            AcquisitionSession(1, 0, [1])
