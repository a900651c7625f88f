"""
Fire-and-forget conversation persistence from the voice client.

Each save posts the full transcript snapshot for the session; the server
replaces what it stored before, so repeated saves never duplicate rows.
"""

import asyncio
import logging
from typing import List, Optional, Set

import aiohttp

from voicerag.models import (
    ConversationMessage,
    QuestionAnswer,
    SaveConversationRequest,
)
from voicerag.orchestration.transcript_buffer import TranscriptBuffer

logger = logging.getLogger(__name__)


def build_save_request(
    session_id: str,
    buffer: TranscriptBuffer,
    variant: Optional[str] = None,
) -> SaveConversationRequest:
    messages: List[ConversationMessage] = [
        ConversationMessage(role=e.role, content=e.content, created_at=e.created_at)
        for e in buffer.exchanges
    ]
    exchanges = [QuestionAnswer(**pair) for pair in buffer.paired_exchanges()]
    return SaveConversationRequest(
        session_id=session_id,
        messages=messages,
        exchanges=exchanges,
        source="voice",
        variant=variant,
    )


class ConversationSaver:
    """Posts transcript snapshots to /api/voice/conversations."""

    def __init__(
        self,
        server_url: str,
        variant: Optional[str] = None,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.variant = variant
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None
        self._tasks: Set[asyncio.Task] = set()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
            self._owns_session = True
        return self._session

    async def save(self, session_id: str, buffer: TranscriptBuffer) -> bool:
        """
        Save one snapshot. Failures are logged, never raised.

        Returns:
            True if the server accepted the snapshot
        """
        if not session_id or not len(buffer):
            return False

        request = build_save_request(session_id, buffer, self.variant)
        try:
            session = await self._get_session()
            async with session.post(
                f"{self.server_url}/api/voice/conversations",
                json=request.model_dump(mode="json", exclude_none=True),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.warning(f"Conversation save rejected: {response.status} {body[:200]}")
                    return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Conversation save failed (non-fatal): {e}")
            return False

        logger.debug(f"💾 Saved {len(request.messages)} messages for {session_id}")
        return True

    def save_in_background(self, session_id: str, buffer: TranscriptBuffer) -> Optional[asyncio.Task]:
        if not session_id:
            return None
        task = asyncio.create_task(self.save(session_id, buffer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background saves."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
