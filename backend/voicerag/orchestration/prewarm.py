"""
Speculative context retrieval while the user is still speaking.

Results are keyed by session, category and the first 100 characters of the
query. Only one prewarm is in flight per session; a newer one cancels the
older. The cache is a bounded LRU owned by the session and cleared on
disconnect. A hit is consumed by the first full retrieval that matches it.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Optional

from voicerag.models import ContextResponse

logger = logging.getLogger(__name__)

KEY_QUERY_CHARS = 100

Fetch = Callable[[str], Awaitable[Optional[ContextResponse]]]


def prewarm_key(session_id: Optional[str], category: Optional[str], text: str) -> str:
    return f"{session_id or 'anon'}::{category or 'general'}::{text.strip()[:KEY_QUERY_CHARS]}"


class PrewarmCache:
    """Bounded, session-scoped cache of speculative retrieval results."""

    def __init__(self, max_entries: int = 32):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, ContextResponse]" = OrderedDict()
        self._in_flight: Optional[asyncio.Task] = None
        self._in_flight_key: Optional[str] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def put(self, key: str, value: ContextResponse) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Prewarm cache evicted: {evicted[:60]}")

    def take(self, key: str) -> Optional[ContextResponse]:
        """Remove and return a cached result."""
        return self._entries.pop(key, None)

    def start(self, key: str, text: str, fetch: Fetch) -> Optional[asyncio.Task]:
        """
        Launch a prewarm for `text` unless it is already cached or running.

        Args:
            key: Cache key from prewarm_key()
            text: Query text
            fetch: Coroutine function performing the retrieval call

        Returns:
            The new task, or None if nothing was started
        """
        if key in self._entries:
            return None
        if self._in_flight_key == key and self._in_flight is not None and not self._in_flight.done():
            return None

        self.cancel_in_flight()
        self._in_flight_key = key
        self._in_flight = asyncio.create_task(self._run(key, text, fetch))
        logger.debug(f"🔥 Prewarming context for: {text[:50]}")
        return self._in_flight

    def cancel_in_flight(self) -> None:
        if self._in_flight is not None and not self._in_flight.done():
            logger.debug("Cancelling superseded prewarm")
            self._in_flight.cancel()
        self._in_flight = None
        self._in_flight_key = None

    def clear(self) -> None:
        self.cancel_in_flight()
        self._entries.clear()

    async def _run(self, key: str, text: str, fetch: Fetch) -> None:
        try:
            result = await fetch(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Prewarm failed (non-fatal): {e}")
            return

        if result is not None:
            self.put(key, result)
            logger.debug(f"Prewarm cached ({result.chunks_found} chunks)")
