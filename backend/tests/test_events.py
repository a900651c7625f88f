"""
Unit tests for control-channel event classification and dispatch.
"""

import pytest
from voicerag.realtime.events import (
    EventDispatcher,
    EventKind,
    RealtimeEventHandler,
    classify,
    extract_text,
)


class RecordingHandler(RealtimeEventHandler):
    """Records which hook received which event."""

    def __init__(self):
        self.calls = []

    async def on_session_update(self, event):
        self.calls.append(("session_update", event))

    async def on_speech_started(self, event):
        self.calls.append(("speech_started", event))

    async def on_transcription_completed(self, event):
        self.calls.append(("transcription_completed", event))

    async def on_response_transcript(self, event):
        self.calls.append(("response_transcript", event))

    async def on_response_done(self, event):
        self.calls.append(("response_done", event))


class TestClassify:
    """Test mapping of type tags to event kinds."""

    @pytest.mark.parametrize("tag,kind", [
        ("session.created", EventKind.SESSION_UPDATE),
        ("session.updated", EventKind.SESSION_UPDATE),
        ("input_audio_buffer.speech_started", EventKind.SPEECH_STARTED),
        ("input_audio_buffer.speech_stopped", EventKind.SPEECH_STOPPED),
        ("response.created", EventKind.RESPONSE_STARTED),
        ("response.done", EventKind.RESPONSE_DONE),
        ("conversation.item.output_audio.completed", EventKind.RESPONSE_DONE),
        ("error", EventKind.ERROR),
    ])
    def test_direct_tags(self, tag, kind):
        event = classify({"type": tag})
        assert event.kind == kind
        assert event.type == tag

    def test_unknown_tag_ignored(self):
        assert classify({"type": "rate_limits.updated"}) is None

    def test_missing_type_ignored(self):
        assert classify({"payload": 1}) is None
        assert classify({"type": 42}) is None

    def test_transcription_completed_extracts_text(self):
        event = classify({
            "type": "conversation.item.input_audio_transcription.completed",
            "transcript": "What are the fees for the B.Tech program?",
        })
        assert event.kind == EventKind.TRANSCRIPTION_COMPLETED
        assert event.text == "What are the fees for the B.Tech program?"

    def test_transcription_falls_back_to_item(self):
        event = classify({
            "type": "conversation.item.input_audio_transcription.completed",
            "item": {"input_audio_transcript": "Hello"},
        })
        assert event.text == "Hello"

    def test_transcript_delta(self):
        event = classify({"type": "response.audio_transcript.delta", "delta": "Hel"})
        assert event.kind == EventKind.RESPONSE_TRANSCRIPT
        assert event.text == "Hel"
        assert event.is_delta

    def test_transcript_done_is_full_text(self):
        event = classify({"type": "response.audio_transcript.done", "transcript": "Hello there"})
        assert event.text == "Hello there"
        assert not event.is_delta

    def test_empty_transcript_ignored(self):
        assert classify({"type": "response.audio_transcript.delta", "delta": ""}) is None

    def test_assistant_item_created_starts_response(self):
        event = classify({
            "type": "conversation.item.created",
            "item": {"type": "message", "role": "assistant"},
        })
        assert event.kind == EventKind.RESPONSE_STARTED

    def test_user_item_created_ignored(self):
        assert classify({
            "type": "conversation.item.created",
            "item": {"type": "message", "role": "user"},
        }) is None

    def test_content_part_added(self):
        event = classify({
            "type": "response.content_part.added",
            "part": {"transcript": "Our fees"},
        })
        assert event.kind == EventKind.RESPONSE_TRANSCRIPT
        assert event.text == "Our fees"


class TestExtractText:
    """Test text extraction from the shapes backends send."""

    def test_string(self):
        assert extract_text("hi") == "hi"

    def test_list_of_parts(self):
        assert extract_text([{"text": "a"}, "b", {"transcript": "c"}]) == "a b c"

    def test_nested_dict(self):
        assert extract_text({"content": [{"text": "deep"}]}) == "deep"

    def test_empty(self):
        assert extract_text(None) == ""
        assert extract_text([]) == ""


class TestEventDispatcher:
    """Test routing to handler hooks."""

    @pytest.mark.asyncio
    async def test_routes_to_matching_hook(self):
        handler = RecordingHandler()
        dispatcher = EventDispatcher(handler)

        await dispatcher.dispatch({"type": "session.created"})
        await dispatcher.dispatch({"type": "input_audio_buffer.speech_started"})
        await dispatcher.dispatch({"type": "response.done"})

        assert [name for name, _ in handler.calls] == [
            "session_update", "speech_started", "response_done",
        ]

    @pytest.mark.asyncio
    async def test_unknown_event_returns_none(self):
        handler = RecordingHandler()
        dispatcher = EventDispatcher(handler)
        assert await dispatcher.dispatch({"type": "something.new"}) is None
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_default_hooks_are_noops(self):
        dispatcher = EventDispatcher(RealtimeEventHandler())
        event = await dispatcher.dispatch({"type": "error", "error": {"message": "x"}})
        assert event.kind == EventKind.ERROR
