"""
Transcript buffer for a voice session.

User exchanges are appended when a final transcription arrives.
Assistant exchanges are appended only when the reply-finished event fires;
partial reply text is accumulated separately and never persisted.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Exchange:
    """Single finalized utterance from either side."""

    def __init__(self, role: str, content: str, created_at: Optional[datetime] = None):
        if role not in ("user", "assistant"):
            raise ValueError(f"role must be 'user' or 'assistant', got {role!r}")
        self.role = role
        self.content = content
        self.created_at = created_at or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, str]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"Exchange(role={self.role}, content='{self.content[:30]}...')"


class ReplyTranscript:
    """
    Accumulates the streaming text of one assistant reply.

    A partial is applied only if it makes the text strictly longer, so
    duplicate or out-of-order partials cannot shrink or corrupt it.
    """

    def __init__(self):
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def apply(self, text: str, is_delta: bool) -> bool:
        """
        Apply a partial.

        Args:
            text: Delta text, or the full reply so far
            is_delta: Whether text is an increment

        Returns:
            True if the accumulated text changed
        """
        if not text or not text.strip():
            return False

        candidate = self._text + text if is_delta else text.strip()
        if len(candidate) <= len(self._text):
            return False

        self._text = candidate
        return True

    def reset(self) -> None:
        self._text = ""


class TranscriptBuffer:
    """
    Ordered exchanges for one session plus the in-flight reply.

    on_append is invoked after every appended exchange; it must not block
    (the orchestrator uses it to trigger a background save).
    """

    def __init__(self, on_append: Optional[Callable[[Exchange], None]] = None):
        self._exchanges: List[Exchange] = []
        self._reply = ReplyTranscript()
        self._current_user_text = ""
        self._on_append = on_append

    @property
    def exchanges(self) -> List[Exchange]:
        return list(self._exchanges)

    @property
    def current_reply(self) -> str:
        return self._reply.text

    @property
    def current_user_text(self) -> str:
        """Last transcribed user utterance (used to prewarm retrieval)."""
        return self._current_user_text

    def add_user(self, text: str) -> Optional[Exchange]:
        """
        Append a final user transcription.

        Returns:
            The appended exchange, or None for empty text
        """
        text = (text or "").strip()
        if not text:
            return None

        self._current_user_text = text
        exchange = Exchange("user", text)
        self._append(exchange)
        logger.info(f"👤 User: {text}")
        return exchange

    def begin_reply(self) -> None:
        """A new assistant reply starts; drop leftovers from an unfinished one."""
        if self._reply.text:
            logger.debug("Discarding unfinished reply text on new response")
        self._reply.reset()

    def apply_reply_partial(self, text: str, is_delta: bool) -> bool:
        return self._reply.apply(text, is_delta)

    def finish_reply(self) -> Optional[Exchange]:
        """
        Finalize the in-flight reply.

        Returns:
            The appended assistant exchange, or None if the reply was empty
        """
        text = self._reply.text.strip()
        self._reply.reset()
        if not text:
            return None

        exchange = Exchange("assistant", text)
        self._append(exchange)
        logger.info(f"🤖 Assistant: {text[:80]}")
        return exchange

    def paired_exchanges(self) -> List[Dict[str, str]]:
        """
        Question/answer records: each user exchange paired with the
        assistant exchange that directly follows it.
        """
        pairs = []
        for i in range(0, len(self._exchanges) - 1, 2):
            question, answer = self._exchanges[i], self._exchanges[i + 1]
            if question.role == "user" and answer.role == "assistant":
                pairs.append({
                    "question": question.content,
                    "answer": answer.content,
                    "created_at": question.created_at.isoformat(),
                })
        return pairs

    def history_window(self, size: int) -> List[Exchange]:
        """Most recent `size` exchanges, oldest first."""
        if size <= 0:
            return []
        return self._exchanges[-size:]

    def clear(self) -> None:
        self._exchanges.clear()
        self._reply.reset()
        self._current_user_text = ""

    def _append(self, exchange: Exchange) -> None:
        self._exchanges.append(exchange)
        if self._on_append is not None:
            try:
                self._on_append(exchange)
            except Exception as e:
                logger.error(f"Exchange listener failed: {e}", exc_info=True)

    def __len__(self) -> int:
        return len(self._exchanges)

    def __repr__(self) -> str:
        return f"TranscriptBuffer(exchanges={len(self._exchanges)}, reply_chars={len(self._reply.text)})"
