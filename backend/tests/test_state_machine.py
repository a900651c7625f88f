"""
Unit tests for the session StateMachine.
Tests the pure transition table, ignored events, hooks and the session record.
"""

import pytest
from voicerag.state_machine import (
    LIVE_STATES,
    TRANSITIONS,
    SessionEvent,
    SessionRecord,
    SessionState,
    StateMachine,
    next_state,
)


class TestTransitionFunction:
    """Test the pure next_state() function."""

    def test_connect_from_idle(self):
        assert next_state(SessionState.IDLE, SessionEvent.CONNECT_REQUESTED) == SessionState.CONNECTING

    def test_established_from_connecting(self):
        assert next_state(SessionState.CONNECTING, SessionEvent.CONNECTION_ESTABLISHED) == SessionState.CONNECTED

    def test_failed_connect_goes_to_reconnecting(self):
        assert next_state(SessionState.CONNECTING, SessionEvent.CONNECTION_FAILED) == SessionState.RECONNECTING

    def test_every_live_state_can_lose_connection(self):
        """Transport loss from any live state schedules a reconnect."""
        for state in LIVE_STATES:
            assert next_state(state, SessionEvent.CONNECTION_LOST) == SessionState.RECONNECTING

    def test_every_live_state_can_disconnect(self):
        for state in LIVE_STATES:
            assert next_state(state, SessionEvent.DISCONNECT_REQUESTED) == SessionState.DISCONNECTING

    def test_barge_in_while_responding(self):
        assert next_state(SessionState.RESPONDING, SessionEvent.SPEECH_STARTED) == SessionState.RECORDING

    def test_self_heal_from_reconnecting(self):
        assert next_state(SessionState.RECONNECTING, SessionEvent.CONNECTION_ESTABLISHED) == SessionState.CONNECTED

    def test_unknown_pairs_return_none(self):
        assert next_state(SessionState.IDLE, SessionEvent.SPEECH_STARTED) is None
        assert next_state(SessionState.CLOSED, SessionEvent.RESPONSE_DONE) is None
        assert next_state(SessionState.CONNECTED, SessionEvent.CONNECT_REQUESTED) is None

    def test_table_covers_every_state(self):
        assert set(TRANSITIONS) == set(SessionState)

    def test_closed_can_reconnect(self):
        assert next_state(SessionState.CLOSED, SessionEvent.CONNECT_REQUESTED) == SessionState.CONNECTING


class TestStateMachineDispatch:
    """Test applying events through StateMachine.dispatch()."""

    def test_default_initialization(self):
        sm = StateMachine()
        assert sm.current_state == SessionState.IDLE
        assert sm.previous_state is None
        assert len(sm.state_history) == 1

    @pytest.mark.asyncio
    async def test_full_happy_path(self):
        """IDLE → CONNECTING → CONNECTED → RECORDING → CONNECTED → RESPONDING → CONNECTED."""
        sm = StateMachine()
        events = [
            SessionEvent.CONNECT_REQUESTED,
            SessionEvent.CONNECTION_ESTABLISHED,
            SessionEvent.SPEECH_STARTED,
            SessionEvent.SPEECH_STOPPED,
            SessionEvent.RESPONSE_STARTED,
            SessionEvent.RESPONSE_DONE,
        ]
        for event in events:
            assert await sm.dispatch(event)
        assert sm.current_state == SessionState.CONNECTED
        assert sm.previous_state == SessionState.RESPONDING
        assert sm.is_live

    @pytest.mark.asyncio
    async def test_ignored_event_leaves_state_unchanged(self):
        sm = StateMachine()
        moved = await sm.dispatch(SessionEvent.SPEECH_STOPPED)
        assert not moved
        assert sm.current_state == SessionState.IDLE
        assert len(sm.state_history) == 1

    @pytest.mark.asyncio
    async def test_dispatch_updates_record(self):
        record = SessionRecord()
        sm = StateMachine(record)
        await sm.dispatch(SessionEvent.CONNECT_REQUESTED)
        assert record.state == SessionState.CONNECTING

    @pytest.mark.asyncio
    async def test_history_records_event_and_reason(self):
        sm = StateMachine()
        await sm.dispatch(SessionEvent.CONNECT_REQUESTED, reason="user click")
        last = sm.state_history[-1]
        assert last["from_state"] == "IDLE"
        assert last["to_state"] == "CONNECTING"
        assert last["event"] == "connect_requested"
        assert last["reason"] == "user click"
        assert isinstance(last["timestamp"], int)

    @pytest.mark.asyncio
    async def test_can_handle_and_handled_events(self):
        sm = StateMachine()
        assert sm.can_handle(SessionEvent.CONNECT_REQUESTED)
        assert not sm.can_handle(SessionEvent.RESPONSE_DONE)
        assert sm.get_handled_events() == {SessionEvent.CONNECT_REQUESTED}


class TestStateMachineHooks:
    """Test enter/exit/transition hooks."""

    @pytest.mark.asyncio
    async def test_enter_and_exit_hooks_run_in_order(self):
        sm = StateMachine()
        calls = []

        async def on_exit_idle():
            calls.append("exit_idle")

        async def on_enter_connecting():
            calls.append("enter_connecting")

        async def on_transition(from_state, to_state):
            calls.append(f"{from_state.value}->{to_state.value}")

        sm.register_on_exit(SessionState.IDLE, on_exit_idle)
        sm.register_on_enter(SessionState.CONNECTING, on_enter_connecting)
        sm.register_on_transition(on_transition)

        await sm.dispatch(SessionEvent.CONNECT_REQUESTED)
        assert calls == ["exit_idle", "enter_connecting", "IDLE->CONNECTING"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_block_transition(self):
        sm = StateMachine()

        async def broken():
            raise RuntimeError("boom")

        sm.register_on_enter(SessionState.CONNECTING, broken)
        assert await sm.dispatch(SessionEvent.CONNECT_REQUESTED)
        assert sm.current_state == SessionState.CONNECTING

    @pytest.mark.asyncio
    async def test_hooks_not_called_for_ignored_events(self):
        sm = StateMachine()
        calls = []

        async def on_transition(from_state, to_state):
            calls.append((from_state, to_state))

        sm.register_on_transition(on_transition)
        await sm.dispatch(SessionEvent.RESPONSE_DONE)
        assert calls == []


class TestSessionRecord:
    """Test the session record identity rules."""

    def test_session_id_generated_once(self):
        record = SessionRecord()
        first = record.ensure_session_id()
        assert first.startswith("voice-")
        assert record.ensure_session_id() == first

    def test_clear_resets_identity_and_flags(self):
        record = SessionRecord(greeting_sent=True, retry_count=3)
        record.ensure_session_id()
        record.clear()
        assert record.session_id is None
        assert not record.greeting_sent
        assert record.retry_count == 0
