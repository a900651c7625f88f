"""
State Machine for realtime voice sessions.
Transitions are a pure function of (state, event); side effects run in hooks.

States: IDLE → CONNECTING → CONNECTED ⇄ {RECORDING, RESPONDING} → DISCONNECTING → CLOSED
RECONNECTING is entered from any live state on transport loss.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Callable, Awaitable, Dict, Set

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """
    Voice session states.

    IDLE: No session yet
    CONNECTING: Acquiring microphone and negotiating the transport
    CONNECTED: Transport up, waiting for speech
    RECORDING: User is speaking
    RESPONDING: Assistant reply is streaming
    RECONNECTING: Transport lost, waiting for a retry attempt
    DISCONNECTING: Flushing transcript and tearing down
    CLOSED: Session destroyed (explicit close or unrecoverable failure)
    """
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECORDING = "RECORDING"
    RESPONDING = "RESPONDING"
    RECONNECTING = "RECONNECTING"
    DISCONNECTING = "DISCONNECTING"
    CLOSED = "CLOSED"


class SessionEvent(str, Enum):
    """Inputs to the session state machine."""
    CONNECT_REQUESTED = "connect_requested"
    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_LOST = "connection_lost"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    RESPONSE_STARTED = "response_started"
    RESPONSE_DONE = "response_done"
    DISCONNECT_REQUESTED = "disconnect_requested"
    TEARDOWN_COMPLETE = "teardown_complete"
    FATAL_ERROR = "fatal_error"


LIVE_STATES: Set[SessionState] = {
    SessionState.CONNECTED,
    SessionState.RECORDING,
    SessionState.RESPONDING,
}

_LIVE_EXITS: Dict[SessionEvent, SessionState] = {
    SessionEvent.CONNECTION_LOST: SessionState.RECONNECTING,
    SessionEvent.DISCONNECT_REQUESTED: SessionState.DISCONNECTING,
}

TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
    SessionState.IDLE: {
        SessionEvent.CONNECT_REQUESTED: SessionState.CONNECTING,
    },
    SessionState.CONNECTING: {
        SessionEvent.CONNECTION_ESTABLISHED: SessionState.CONNECTED,
        SessionEvent.CONNECTION_FAILED: SessionState.RECONNECTING,  # Retry scheduled
        SessionEvent.FATAL_ERROR: SessionState.CLOSED,  # Device error or retries exhausted
        SessionEvent.DISCONNECT_REQUESTED: SessionState.DISCONNECTING,
    },
    SessionState.CONNECTED: {
        SessionEvent.SPEECH_STARTED: SessionState.RECORDING,
        SessionEvent.RESPONSE_STARTED: SessionState.RESPONDING,
        **_LIVE_EXITS,
    },
    SessionState.RECORDING: {
        SessionEvent.SPEECH_STOPPED: SessionState.CONNECTED,
        SessionEvent.RESPONSE_STARTED: SessionState.RESPONDING,
        **_LIVE_EXITS,
    },
    SessionState.RESPONDING: {
        SessionEvent.RESPONSE_DONE: SessionState.CONNECTED,
        SessionEvent.SPEECH_STARTED: SessionState.RECORDING,  # Barge-in
        **_LIVE_EXITS,
    },
    SessionState.RECONNECTING: {
        SessionEvent.CONNECT_REQUESTED: SessionState.CONNECTING,
        SessionEvent.CONNECTION_ESTABLISHED: SessionState.CONNECTED,  # Self-healed
        SessionEvent.FATAL_ERROR: SessionState.CLOSED,
        SessionEvent.DISCONNECT_REQUESTED: SessionState.DISCONNECTING,
    },
    SessionState.DISCONNECTING: {
        SessionEvent.TEARDOWN_COMPLETE: SessionState.CLOSED,
    },
    SessionState.CLOSED: {
        SessionEvent.CONNECT_REQUESTED: SessionState.CONNECTING,
    },
}


def next_state(state: SessionState, event: SessionEvent) -> Optional[SessionState]:
    """
    Pure transition function.

    Returns:
        Target state, or None when the event does not apply in this state
    """
    return TRANSITIONS.get(state, {}).get(event)


@dataclass
class SessionRecord:
    """
    Everything the orchestrator knows about one logical session.
    The session id survives reconnects and is cleared only on close.
    """
    session_id: Optional[str] = None
    state: SessionState = SessionState.IDLE
    capture_enabled: bool = True
    greeting_sent: bool = False
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)

    def ensure_session_id(self) -> str:
        """Assign a client-generated id on first successful connection."""
        if self.session_id is None:
            self.session_id = f"voice-{uuid.uuid4()}"
        return self.session_id

    def clear(self) -> None:
        """Forget per-session identity once the session is destroyed."""
        self.session_id = None
        self.greeting_sent = False
        self.retry_count = 0


class StateMachine:
    """
    Applies SessionEvents to a SessionRecord and runs lifecycle hooks.

    Events that do not apply in the current state are ignored; control
    events routinely arrive twice (e.g. speech_stopped after a reconnect).
    """

    def __init__(self, record: Optional[SessionRecord] = None):
        """
        Initialize state machine.

        Args:
            record: Session record to drive (a fresh IDLE record by default)
        """
        self.record = record or SessionRecord()
        self._previous_state: Optional[SessionState] = None
        self._state_history: list[dict] = []

        # Hooks for state lifecycle events
        self._on_enter_hooks: Dict[SessionState, list[Callable]] = {
            state: [] for state in SessionState
        }
        self._on_exit_hooks: Dict[SessionState, list[Callable]] = {
            state: [] for state in SessionState
        }
        self._on_transition_hooks: list[Callable] = []

        logger.debug(f"State machine initialized in state: {self.record.state}")
        self._record_state_change(None, self.record.state, None, "initialization")

    @property
    def current_state(self) -> SessionState:
        return self.record.state

    @property
    def previous_state(self) -> Optional[SessionState]:
        return self._previous_state

    @property
    def state_history(self) -> list[dict]:
        """Get state history for debugging."""
        return self._state_history.copy()

    @property
    def is_live(self) -> bool:
        return self.record.state in LIVE_STATES

    def can_handle(self, event: SessionEvent) -> bool:
        return next_state(self.record.state, event) is not None

    async def dispatch(self, event: SessionEvent, reason: str = "") -> bool:
        """
        Apply an event with hooks.

        Args:
            event: Event to apply
            reason: Optional reason for transition (for logging)

        Returns:
            True if the event moved the machine, False if it was ignored
        """
        from_state = self.record.state
        to_state = next_state(from_state, event)

        if to_state is None:
            logger.debug(f"Ignoring {event.value} in state {from_state.value}")
            return False

        await self._execute_hooks(self._on_exit_hooks[from_state], f"on_exit {from_state}")

        self._previous_state = from_state
        self.record.state = to_state
        self._record_state_change(from_state, to_state, event, reason)

        log_msg = f"Session state: {from_state.value} → {to_state.value} ({event.value})"
        if reason:
            log_msg += f" (reason: {reason})"
        logger.info(log_msg)

        await self._execute_hooks(self._on_enter_hooks[to_state], f"on_enter {to_state}")

        for callback in self._on_transition_hooks:
            try:
                await callback(from_state, to_state)
            except Exception as e:
                logger.error(f"Error in on_transition hook: {e}", exc_info=True)

        return True

    def register_on_enter(
        self,
        state: SessionState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        self._on_enter_hooks[state].append(callback)

    def register_on_exit(
        self,
        state: SessionState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        self._on_exit_hooks[state].append(callback)

    def register_on_transition(
        self,
        callback: Callable[[SessionState, SessionState], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute on any state transition.

        Args:
            callback: Async callback function receiving (from_state, to_state)
        """
        self._on_transition_hooks.append(callback)

    def _record_state_change(
        self,
        from_state: Optional[SessionState],
        to_state: SessionState,
        event: Optional[SessionEvent],
        reason: str
    ) -> None:
        self._state_history.append({
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value,
            "event": event.value if event else None,
            "reason": reason,
            "timestamp": int(time.time() * 1000),  # Unix timestamp in milliseconds
        })

    async def _execute_hooks(self, callbacks: list[Callable], label: str) -> None:
        for callback in callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in {label} hook: {e}", exc_info=True)

    def get_handled_events(self) -> Set[SessionEvent]:
        """Events that would move the machine from its current state."""
        return set(TRANSITIONS.get(self.record.state, {}))

    def __repr__(self) -> str:
        return (
            f"StateMachine(current={self.record.state}, "
            f"previous={self._previous_state}, session={self.record.session_id})"
        )
