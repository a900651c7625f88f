"""
Session Orchestrator - supervises one realtime voice session.

Coordinates:
- Microphone acquisition and transport negotiation (raced together)
- Ordered processing of inbound control events
- Speculative (prewarm) and final context retrieval and injection
- The once-per-session greeting
- Health monitoring and automatic reconnects with backoff
- Transcript accumulation and background persistence

All session state lives in one SessionRecord; state changes go through the
StateMachine so every transition is logged and observable.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from voicerag.config import settings
from voicerag.errors import (
    TERMINAL_CONNECTION_MESSAGE,
    DeviceError,
    VoiceSessionError,
)
from voicerag.models import (
    ContextResponse,
    ConversationItem,
    ConversationItemCreate,
    IceServer,
    SessionUpdate,
)
from voicerag.orchestration.context_client import HttpContextClient
from voicerag.orchestration.persistence import ConversationSaver
from voicerag.orchestration.prewarm import PrewarmCache, prewarm_key
from voicerag.orchestration.retry import ReconnectController, RetryPolicy
from voicerag.orchestration.transcript_buffer import Exchange, TranscriptBuffer
from voicerag.prompts import (
    GREETING_TRIGGER_TEXT,
    build_greeting_instructions,
    build_session_instructions,
)
from voicerag.realtime.events import EventDispatcher, RealtimeEvent, RealtimeEventHandler
from voicerag.realtime.media import MicrophoneSource, RemoteAudioSink
from voicerag.realtime.negotiation import NegotiationClient
from voicerag.realtime.transport import RealtimeTransport
from voicerag.state_machine import (
    LIVE_STATES,
    SessionEvent,
    SessionRecord,
    SessionState,
    StateMachine,
)

logger = logging.getLogger(__name__)

UNHEALTHY_STATES = ("disconnected", "failed")

TransportFactory = Callable[..., RealtimeTransport]


def is_retryable(exc: BaseException) -> bool:
    """Device errors need the user to act; everything else is retried."""
    return not isinstance(exc, DeviceError)


class SessionOrchestrator(RealtimeEventHandler):
    """
    Owns the microphone, the transport and the transcript of one session.

    Callbacks (sync or async, all optional):
        on_state_change(from_state, to_state)
        on_message_add(exchange)
        on_conversation_end(exchanges, session_id)
        on_error(message)
    """

    def __init__(
        self,
        negotiation: NegotiationClient,
        context_client: HttpContextClient,
        microphone: MicrophoneSource,
        saver: Optional[ConversationSaver] = None,
        category: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
        record_path: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        auto_reconnect: Optional[bool] = None,
        system_prompt: Optional[str] = None,
        on_state_change: Optional[Callable] = None,
        on_message_add: Optional[Callable] = None,
        on_conversation_end: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.negotiation = negotiation
        self.context_client = context_client
        self.microphone = microphone
        self.saver = saver
        self.category = category
        self.record_path = record_path
        self.system_prompt = system_prompt
        self._transport_factory = transport_factory or self._default_transport
        self._sleep = sleep

        # Callbacks
        self.on_state_change = on_state_change
        self.on_message_add = on_message_add
        self.on_conversation_end = on_conversation_end
        self.on_fatal_error = on_error

        # Timings
        self.ice_gather_timeout = settings.ice_gather_timeout_ms / 1000
        self.connect_timeout = settings.connect_timeout_ms / 1000
        self.greeting_delay = settings.greeting_delay_ms / 1000
        self.history_window = settings.history_window
        self.match_count = settings.rag_match_count
        self.prewarm_match_count = settings.rag_prewarm_match_count

        # Core components
        self.record = SessionRecord()
        self.state_machine = StateMachine(self.record)
        self.transcript = TranscriptBuffer(on_append=self._on_exchange_appended)
        self.prewarm = PrewarmCache(max_entries=settings.rag_prewarm_cache_size)
        self.dispatcher = EventDispatcher(self)
        self.retry = ReconnectController(
            record=self.record,
            reconnect=self._reconnect_once,
            is_healthy=self._is_healthy,
            on_exhausted=self._on_retry_exhausted,
            policy=policy,
            is_retryable=is_retryable,
            enabled=settings.auto_reconnect if auto_reconnect is None else auto_reconnect,
            sleep=sleep,
        )

        self.transport: Optional[RealtimeTransport] = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._callback_tasks: Set[asyncio.Future] = set()
        self._terminal_reported = False

        self.state_machine.register_on_transition(self._on_transition)

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def state(self) -> SessionState:
        return self.state_machine.current_state

    @property
    def session_id(self) -> Optional[str]:
        return self.record.session_id

    async def connect(self) -> bool:
        """
        Establish the session.

        Returns:
            True once connected; False if the attempt failed and a reconnect
            was scheduled instead

        Raises:
            DeviceError: Microphone unavailable (not retried)
        """
        if self.state not in (SessionState.IDLE, SessionState.CLOSED):
            logger.warning(f"connect() ignored in state {self.state.value}")
            return False

        self._terminal_reported = False
        self._ensure_consumer()
        await self.state_machine.dispatch(SessionEvent.CONNECT_REQUESTED, "connect()")

        try:
            await self._establish()
        except DeviceError as e:
            logger.error(f"❌ Device error: {e.user_message}")
            await self._terminate(e.user_message)
            raise
        except Exception as e:
            logger.error(f"❌ Connection attempt failed: {e}", exc_info=True)
            await self._cleanup_media()
            await self.state_machine.dispatch(SessionEvent.CONNECTION_FAILED, str(e))
            if not self.retry.schedule(reason=f"connect failed: {e}"):
                message = e.user_message if isinstance(e, VoiceSessionError) else TERMINAL_CONNECTION_MESSAGE
                await self._terminate(message)
            return False

        return True

    async def disconnect(self) -> None:
        """Flush and persist the transcript, tear everything down."""
        if self.state in (SessionState.IDLE, SessionState.CLOSED, SessionState.DISCONNECTING):
            return

        await self.retry.cancel()
        await self.state_machine.dispatch(SessionEvent.DISCONNECT_REQUESTED, "disconnect()")
        await self._cleanup_media()
        await self._finish_session()
        await self.state_machine.dispatch(SessionEvent.TEARDOWN_COMPLETE)

    def set_capture_enabled(self, enabled: bool) -> None:
        """Mute or unmute capture without renegotiating."""
        self.record.capture_enabled = enabled
        self.microphone.set_enabled(enabled)
        logger.info(f"🎙️ Capture {'enabled' if enabled else 'disabled'}")
        if enabled:
            self._maybe_send_greeting()

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    def _default_transport(self, ice_servers: List[IceServer], **callbacks) -> RealtimeTransport:
        return RealtimeTransport(
            ice_servers,
            audio_sink=RemoteAudioSink(self.record_path),
            **callbacks,
        )

    async def _establish(self) -> None:
        """One full connection attempt. Leaves the machine in CONNECTED."""
        # Independent; overall latency is the slower of the two
        ice_servers, track = await asyncio.gather(
            self.negotiation.get_ice_servers(),
            self.microphone.open(enabled=self.record.capture_enabled),
        )

        transport = self._transport_factory(
            ice_servers,
            on_message=self._enqueue_message,
            on_channel_open=self._on_channel_open,
            on_health_change=self._on_health_change,
        )
        self.transport = transport
        transport.add_audio_track(track)
        transport.open_control_channel()

        offer_sdp = await transport.create_offer(self.ice_gather_timeout)
        instructions = build_session_instructions(
            self.transcript.history_window(self.history_window),
            self.system_prompt,
        )
        answer_sdp = await self.negotiation.send_offer(offer_sdp, instructions, self.category)
        await transport.accept_answer(answer_sdp)
        await transport.wait_connected(self.connect_timeout)

        session_id = self.record.ensure_session_id()
        await self.state_machine.dispatch(SessionEvent.CONNECTION_ESTABLISHED, session_id)
        if transport.is_fully_connected:
            self.retry.reset()
        logger.info(f"✅ Voice session connected: {session_id}")

    async def _reconnect_once(self, attempt: int) -> None:
        await self.state_machine.dispatch(SessionEvent.CONNECT_REQUESTED, f"retry attempt {attempt}")
        await self._cleanup_media()
        try:
            await self._establish()
        except Exception:
            await self._cleanup_media()
            await self.state_machine.dispatch(SessionEvent.CONNECTION_FAILED, f"retry attempt {attempt}")
            raise

    def _is_healthy(self) -> bool:
        return self.transport is not None and self.transport.is_fully_connected

    def _on_health_change(self, connection_state: str, ice_state: str) -> None:
        if self.transport is None:
            return

        if self.transport.is_fully_connected:
            self.retry.on_recovered()
            if self.state == SessionState.RECONNECTING:
                self._spawn(self.state_machine.dispatch(SessionEvent.CONNECTION_ESTABLISHED, "self-healed"))
            return

        if self.state in LIVE_STATES and (
            connection_state in UNHEALTHY_STATES or ice_state in UNHEALTHY_STATES
        ):
            self._spawn(self._handle_connection_lost(f"connection={connection_state}, ice={ice_state}"))

    async def _handle_connection_lost(self, reason: str) -> None:
        if not await self.state_machine.dispatch(SessionEvent.CONNECTION_LOST, reason):
            return
        if not self.retry.schedule(reason=reason):
            await self._terminate(TERMINAL_CONNECTION_MESSAGE)

    async def _on_retry_exhausted(self, exc: BaseException) -> None:
        message = exc.user_message if isinstance(exc, VoiceSessionError) else TERMINAL_CONNECTION_MESSAGE
        await self._terminate(message)

    async def _terminate(self, message: str) -> None:
        """Unrecoverable failure: surface one error and destroy the session."""
        if self._terminal_reported:
            return
        self._terminal_reported = True

        await self._cleanup_media()
        await self.state_machine.dispatch(SessionEvent.FATAL_ERROR, message)
        self._emit(self.on_fatal_error, message)
        await self._finish_session()

    async def _cleanup_media(self) -> None:
        """Close the transport and release the microphone."""
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.close()
        await self.microphone.close()

    async def _finish_session(self) -> None:
        exchanges = self.transcript.exchanges
        session_id = self.record.session_id

        if self.saver is not None and session_id and exchanges:
            # Snapshots replace each other; the final one must land last
            await self.saver.drain()
            await self.saver.save(session_id, self.transcript)

        if exchanges:
            self._emit(self.on_conversation_end, exchanges, session_id)

        self.prewarm.clear()
        self.transcript.clear()
        self.record.clear()
        self._stop_consumer()
        logger.info(f"Session finished: {session_id} ({len(exchanges)} exchanges)")

    # ========================================================================
    # Control channel
    # ========================================================================

    def _ensure_consumer(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._inbound = asyncio.Queue()
            self._consumer_task = asyncio.create_task(self._consume())

    def _stop_consumer(self) -> None:
        task, self._consumer_task = self._consumer_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _enqueue_message(self, message: Dict[str, Any]) -> None:
        self._inbound.put_nowait(message)

    async def _consume(self) -> None:
        """Process control events strictly in arrival order."""
        while True:
            message = await self._inbound.get()
            try:
                await self.dispatcher.dispatch(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling control event {message.get('type')}: {e}", exc_info=True)

    async def process_message(self, message: Dict[str, Any]) -> Optional[RealtimeEvent]:
        """Dispatch one control message immediately (bypasses the queue)."""
        return await self.dispatcher.dispatch(message)

    def _send(self, message: BaseModel) -> bool:
        if self.transport is None:
            return False
        return self.transport.send(message.model_dump())

    def _on_channel_open(self) -> None:
        self._maybe_send_greeting()

    def _maybe_send_greeting(self) -> None:
        if self.record.greeting_sent or not self.record.capture_enabled:
            return
        if self.transport is None or not self.transport.channel_open:
            return
        self.record.greeting_sent = True
        self._spawn(self._send_greeting())

    async def _send_greeting(self) -> None:
        base = build_session_instructions(
            self.transcript.history_window(self.history_window),
            self.system_prompt,
        )
        self._send(SessionUpdate(session={"instructions": build_greeting_instructions(base)}))
        await self._sleep(self.greeting_delay)
        self._send(ConversationItemCreate(
            item=ConversationItem(role="user", content=GREETING_TRIGGER_TEXT)
        ))
        logger.info("👋 Greeting triggered")

    # ========================================================================
    # Event hooks
    # ========================================================================

    async def on_session_update(self, event: RealtimeEvent) -> None:
        logger.debug(f"Session update: {event.type}")

    async def on_speech_started(self, event: RealtimeEvent) -> None:
        await self.state_machine.dispatch(SessionEvent.SPEECH_STARTED)
        self._start_prewarm(self.transcript.current_user_text)

    async def on_speech_stopped(self, event: RealtimeEvent) -> None:
        await self.state_machine.dispatch(SessionEvent.SPEECH_STOPPED)

    async def on_transcription_completed(self, event: RealtimeEvent) -> None:
        exchange = self.transcript.add_user(event.text)
        if exchange is None:
            return
        self._spawn(self.fetch_and_send_context(exchange.content))

    async def on_response_started(self, event: RealtimeEvent) -> None:
        if await self.state_machine.dispatch(SessionEvent.RESPONSE_STARTED, event.type):
            self.transcript.begin_reply()

    async def on_response_transcript(self, event: RealtimeEvent) -> None:
        if self.transcript.apply_reply_partial(event.text, event.is_delta):
            logger.debug(f"Reply so far: {self.transcript.current_reply[-60:]}")

    async def on_response_done(self, event: RealtimeEvent) -> None:
        await self.state_machine.dispatch(SessionEvent.RESPONSE_DONE, event.type)
        self.transcript.finish_reply()

    async def on_error(self, event: RealtimeEvent) -> None:
        error = event.payload.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error
        logger.error(f"❌ Backend error: {error}")

    # ========================================================================
    # Context retrieval
    # ========================================================================

    def _start_prewarm(self, text: str) -> Optional[asyncio.Task]:
        if not text or not text.strip():
            return None
        session_id = self.record.session_id
        key = prewarm_key(session_id, self.category, text)

        async def fetch(query: str) -> Optional[ContextResponse]:
            return await self.context_client.fetch(
                query, self.category, session_id, self.prewarm_match_count
            )

        return self.prewarm.start(key, text, fetch)

    async def fetch_and_send_context(self, text: str) -> bool:
        """
        Retrieve context for a final utterance and inject it.

        Returns:
            True if a context item was sent to the backend
        """
        session_id = self.record.session_id
        key = prewarm_key(session_id, self.category, text)

        response = self.prewarm.take(key)
        if response is not None:
            logger.info("⚡ Using prewarmed context")
        else:
            response = await self.context_client.fetch(
                text, self.category, session_id, self.match_count
            )

        if response is None or not response.has_context:
            logger.info("📭 No relevant context, leaving the reply to the backend")
            return False

        sent = self._send(ConversationItemCreate(
            item=ConversationItem(role="assistant", content=response.instructions)
        ))
        if sent:
            logger.info(f"📚 Injected context ({response.chunks_found} chunks, top={response.top_similarity})")
        return sent

    # ========================================================================
    # Helpers
    # ========================================================================

    def _on_exchange_appended(self, exchange: Exchange) -> None:
        self._emit(self.on_message_add, exchange)
        if self.saver is not None and self.record.session_id:
            self.saver.save_in_background(self.record.session_id, self.transcript)

    async def _on_transition(self, from_state: SessionState, to_state: SessionState) -> None:
        self._emit(self.on_state_change, from_state, to_state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for outstanding background work (context, greeting, events)."""
        while self._tasks or self._callback_tasks:
            await asyncio.gather(*self._tasks, *self._callback_tasks, return_exceptions=True)

    def __repr__(self) -> str:
        return f"SessionOrchestrator(state={self.state.value}, session={self.record.session_id})"
