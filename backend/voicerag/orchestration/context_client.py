"""
HTTP client for the context retrieval endpoint, as used by the orchestrator.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from voicerag.models import ContextRequest, ContextResponse

logger = logging.getLogger(__name__)


class HttpContextClient:
    """
    Posts utterances to /api/voice/rag-context.

    Every call is time-boxed; a timeout, transport error or malformed body
    yields None and the conversation proceeds without context.
    """

    def __init__(
        self,
        server_url: str,
        timeout_ms: int = 2000,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout_ms = timeout_ms
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def fetch(
        self,
        question: str,
        category: Optional[str] = None,
        session_id: Optional[str] = None,
        match_count: int = 3,
    ) -> Optional[ContextResponse]:
        if not question or not question.strip():
            return None

        request = ContextRequest(
            question=question,
            category=category,
            session_id=session_id,
            match_count=match_count,
        )
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)

        try:
            async with session.post(
                f"{self.server_url}/api/voice/rag-context",
                json=request.model_dump(exclude_none=True),
                timeout=timeout,
            ) as response:
                if response.status != 200:
                    logger.warning(f"Context request failed: {response.status}")
                    return None
                payload = await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Context request timed out after {self.timeout_ms}ms, continuing without context")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning(f"Context request error: {e}")
            return None

        try:
            return ContextResponse.model_validate(payload)
        except ValueError as e:
            logger.warning(f"Malformed context response: {e}")
            return None
