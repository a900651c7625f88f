"""
Client side of signaling: fetches ICE servers and exchanges the SDP offer
through the voice server's proxy endpoints.
"""

import asyncio
import json
import logging
import ssl
from typing import List, Optional

import aiohttp

from voicerag.config import settings
from voicerag.errors import (
    FailureCode,
    NegotiationError,
    NegotiationFailure,
    classify_network_failure,
)
from voicerag.models import CLIENT_FALLBACK_ICE_SERVERS, IceServer, OfferRequest, parse_ice_servers

logger = logging.getLogger(__name__)


class NegotiationClient:
    """
    Talks to /api/voice/ice-servers and /api/voice/offer.

    The ICE server list is fetched once and cached for the client lifetime.
    """

    def __init__(
        self,
        server_url: str,
        voice: Optional[str] = None,
        timeout_s: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.voice = voice or settings.realtime_voice
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None
        self._ice_servers: Optional[List[IceServer]] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def get_ice_servers(self) -> List[IceServer]:
        """Cached ICE servers; a single public STUN server when the fetch fails."""
        if self._ice_servers is not None:
            return self._ice_servers

        session = await self._get_session()
        try:
            async with session.get(f"{self.server_url}/api/voice/ice-servers") as response:
                response.raise_for_status()
                servers = parse_ice_servers(await response.json(content_type=None))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"⚠️ ICE server fetch failed, using fallback STUN: {e!r}")
            return list(CLIENT_FALLBACK_ICE_SERVERS)

        if not servers:
            return list(CLIENT_FALLBACK_ICE_SERVERS)

        self._ice_servers = servers
        logger.info(f"Using {len(servers)} ICE servers")
        return servers

    async def send_offer(self, sdp: str, instructions: Optional[str] = None, category: Optional[str] = None) -> str:
        """
        Exchange the local offer for the remote answer SDP.

        Raises:
            NegotiationError: Non-2xx from the server, or the server was unreachable
        """
        request = OfferRequest(sdp=sdp, instructions=instructions, voice=self.voice, category=category)
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.server_url}/api/voice/offer",
                json=request.model_dump(exclude_none=True),
            ) as response:
                body = await response.text()
                if response.status >= 400:
                    raise NegotiationError(self._parse_failure(response.status, body))
        except NegotiationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError) as e:
            raise NegotiationError(classify_network_failure(e, self.server_url)) from e

        if not body.strip():
            raise NegotiationError(NegotiationFailure(
                code=FailureCode.UPSTREAM_ERROR,
                error="Server returned an empty SDP answer",
            ))
        return body

    @staticmethod
    def _parse_failure(status: int, body: str) -> NegotiationFailure:
        """Server failures carry an ErrorResponse body; fall back to raw text."""
        try:
            data = json.loads(body)
        except ValueError:
            data = None

        # FastAPI wraps HTTPException payloads in "detail"
        if isinstance(data, dict) and isinstance(data.get("detail"), dict):
            data = data["detail"]

        if isinstance(data, dict) and data.get("error"):
            code = data.get("code")
            try:
                failure_code = FailureCode(code) if code else FailureCode.UPSTREAM_ERROR
            except ValueError:
                failure_code = FailureCode.UPSTREAM_ERROR
            return NegotiationFailure(
                code=failure_code,
                error=data["error"],
                status=status,
                details=data.get("details"),
                suggestion=data.get("suggestion"),
            )

        return NegotiationFailure(
            code=FailureCode.UPSTREAM_ERROR,
            error=f"Offer failed ({status}): {body[:300]}",
            status=status,
        )
