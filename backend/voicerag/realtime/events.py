"""
Classification and dispatch of inbound control-channel events.

Every inbound message carries a string `type` tag. classify() folds the many
backend tags onto a closed set of EventKinds; EventDispatcher routes each kind
to one handler hook. Unknown tags classify to None and are dropped.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SESSION_UPDATE = "session_update"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    TRANSCRIPTION_COMPLETED = "transcription_completed"
    RESPONSE_STARTED = "response_started"
    RESPONSE_TRANSCRIPT = "response_transcript"
    RESPONSE_DONE = "response_done"
    ERROR = "error"


@dataclass(frozen=True)
class RealtimeEvent:
    """
    One classified inbound event.

    Attributes:
        kind: Normalized event kind
        type: Raw type tag as sent by the backend
        payload: Full decoded message
        text: Extracted transcript text (transcription and reply events only)
        is_delta: True when text is an increment rather than the full reply so far
    """
    kind: EventKind
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    text: str = ""
    is_delta: bool = False


_DIRECT_KINDS: Dict[str, EventKind] = {
    "session.created": EventKind.SESSION_UPDATE,
    "session.updated": EventKind.SESSION_UPDATE,
    "input_audio_buffer.speech_started": EventKind.SPEECH_STARTED,
    "input_audio_buffer.speech_stopped": EventKind.SPEECH_STOPPED,
    "response.created": EventKind.RESPONSE_STARTED,
    "response.started": EventKind.RESPONSE_STARTED,
    "response.done": EventKind.RESPONSE_DONE,
    "response.completed": EventKind.RESPONSE_DONE,
    "conversation.item.output_audio.completed": EventKind.RESPONSE_DONE,
    "error": EventKind.ERROR,
}

_TRANSCRIPT_TYPES = {
    "response.audio_transcript.delta",
    "response.audio_transcript.done",
    "response.audio_transcript.completed",
}


def extract_text(value: Any) -> str:
    """Pull display text out of the string/list/dict shapes backends use."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                parts.append(extract_text(
                    item.get("text") or item.get("transcript") or item.get("content")
                ))
        return " ".join(p for p in parts if p)
    if isinstance(value, dict):
        return extract_text(
            value.get("text") or value.get("content")
            or value.get("transcript") or value.get("delta")
        )
    return str(value)


def _is_assistant_message(item: Any) -> bool:
    return isinstance(item, dict) and item.get("role") == "assistant" and item.get("type") == "message"


def classify(message: Dict[str, Any]) -> Optional[RealtimeEvent]:
    """
    Classify one decoded control message.

    Returns:
        RealtimeEvent, or None for tags this client does not act on
    """
    event_type = message.get("type")
    if not isinstance(event_type, str):
        return None

    kind = _DIRECT_KINDS.get(event_type)
    if kind is not None:
        return RealtimeEvent(kind=kind, type=event_type, payload=message)

    if event_type == "conversation.item.input_audio_transcription.completed":
        item = message.get("item") or {}
        text = message.get("transcript") or item.get("input_audio_transcript") or ""
        return RealtimeEvent(
            kind=EventKind.TRANSCRIPTION_COMPLETED,
            type=event_type,
            payload=message,
            text=extract_text(text),
        )

    if event_type == "conversation.item.created":
        if _is_assistant_message(message.get("item")):
            return RealtimeEvent(kind=EventKind.RESPONSE_STARTED, type=event_type, payload=message)
        return None

    if event_type == "response.output_item.added":
        item = message.get("item")
        if _is_assistant_message(item) and isinstance(item.get("content"), str) and item["content"]:
            return RealtimeEvent(
                kind=EventKind.RESPONSE_TRANSCRIPT,
                type=event_type,
                payload=message,
                text=item["content"],
            )
        return None

    if event_type == "response.content_part.added":
        part = message.get("part") or {}
        text = extract_text(
            part.get("transcript") or part.get("text")
            or part.get("content") or part.get("delta")
        )
        if not text:
            return None
        return RealtimeEvent(
            kind=EventKind.RESPONSE_TRANSCRIPT,
            type=event_type,
            payload=message,
            text=text,
            is_delta=bool(part.get("delta")),
        )

    if event_type in _TRANSCRIPT_TYPES:
        text = extract_text(message.get("transcript") or message.get("delta") or message.get("text"))
        if not text:
            return None
        return RealtimeEvent(
            kind=EventKind.RESPONSE_TRANSCRIPT,
            type=event_type,
            payload=message,
            text=text,
            is_delta=bool(message.get("delta")),
        )

    return None


class RealtimeEventHandler:
    """
    Hook interface for classified events. Override the hooks you need;
    the defaults do nothing.
    """

    async def on_session_update(self, event: RealtimeEvent) -> None:
        pass

    async def on_speech_started(self, event: RealtimeEvent) -> None:
        pass

    async def on_speech_stopped(self, event: RealtimeEvent) -> None:
        pass

    async def on_transcription_completed(self, event: RealtimeEvent) -> None:
        pass

    async def on_response_started(self, event: RealtimeEvent) -> None:
        pass

    async def on_response_transcript(self, event: RealtimeEvent) -> None:
        pass

    async def on_response_done(self, event: RealtimeEvent) -> None:
        pass

    async def on_error(self, event: RealtimeEvent) -> None:
        pass


class EventDispatcher:
    """Routes classified events to exactly one handler hook each."""

    def __init__(self, handler: RealtimeEventHandler):
        self.handler = handler
        self._hooks: Dict[EventKind, Callable[[RealtimeEvent], Awaitable[None]]] = {
            EventKind.SESSION_UPDATE: handler.on_session_update,
            EventKind.SPEECH_STARTED: handler.on_speech_started,
            EventKind.SPEECH_STOPPED: handler.on_speech_stopped,
            EventKind.TRANSCRIPTION_COMPLETED: handler.on_transcription_completed,
            EventKind.RESPONSE_STARTED: handler.on_response_started,
            EventKind.RESPONSE_TRANSCRIPT: handler.on_response_transcript,
            EventKind.RESPONSE_DONE: handler.on_response_done,
            EventKind.ERROR: handler.on_error,
        }
        missing = set(EventKind) - set(self._hooks)
        if missing:
            raise TypeError(f"EventDispatcher has no hook for: {sorted(k.value for k in missing)}")

    async def dispatch(self, message: Dict[str, Any]) -> Optional[RealtimeEvent]:
        """
        Classify and route one message.

        Returns:
            The classified event, or None if it was ignored
        """
        event = classify(message)
        if event is None:
            logger.debug(f"Ignoring control event: {message.get('type')}")
            return None

        await self._hooks[event.kind](event)
        return event
