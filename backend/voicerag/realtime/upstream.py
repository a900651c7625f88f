"""
Server-side client for the remote realtime speech backend.

Proxies SDP negotiation, ICE server lists and ephemeral keys so the backend
URL and API key never reach voice clients.
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
    classify_http_failure,
    classify_network_failure,
)
from voicerag.models import DEFAULT_ICE_SERVERS, IceServer, parse_ice_servers

logger = logging.getLogger(__name__)


class RealtimeBackendClient:
    """
    Persistent HTTP client for the realtime backend.

    One aiohttp session is reused across requests for connection pooling.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        auth_header: Optional[str] = None,
        timeout_s: Optional[float] = None,
        verify_ssl: Optional[bool] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.realtime_backend_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.realtime_api_key
        self.auth_header = auth_header or settings.realtime_auth_header
        self.timeout_s = timeout_s or settings.backend_timeout_s
        self.verify_ssl = (not settings.allow_unverified_ssl) if verify_ssl is None else verify_ssl

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=20,
                    ttl_dns_cache=300,
                    keepalive_timeout=120,
                    ssl=None if self.verify_ssl else False,
                )
                timeout = aiohttp.ClientTimeout(total=self.timeout_s, connect=5)
                self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
                logger.info("✅ Created persistent realtime backend session")
        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed realtime backend session")

    def _auth_headers(self) -> dict:
        return {self.auth_header: f"Bearer {self.api_key}"}

    def build_session_config(self, instructions: str, voice: Optional[str] = None) -> dict:
        """Session configuration sent alongside the SDP offer."""
        return {
            "type": "realtime",
            "model": settings.realtime_model,
            "instructions": instructions,
            "audio": {
                "output": {"voice": voice or settings.realtime_voice},
            },
            "turn_detection": {
                "type": "server_vad",
                "threshold": settings.vad_threshold,
            },
            "input_audio_transcription": {
                "model": settings.transcription_model,
            },
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "top_k": settings.top_k,
        }

    def _require_key(self) -> None:
        if not self.api_key:
            raise NegotiationError(NegotiationFailure(
                code=FailureCode.NOT_CONFIGURED,
                error="Realtime backend API key is not configured",
                status=500,
            ))

    async def create_call(self, sdp: str, instructions: str, voice: Optional[str] = None) -> str:
        """
        Exchange an SDP offer for the backend's SDP answer.

        Returns:
            Answer SDP as opaque text

        Raises:
            NegotiationError: Classified upstream or network failure
        """
        if not self.configured:
            raise NegotiationError(NegotiationFailure(
                code=FailureCode.NOT_CONFIGURED,
                error="REALTIME_BACKEND_URL is not configured",
                status=500,
            ))
        self._require_key()

        form = aiohttp.FormData()
        form.add_field("sdp", sdp)
        form.add_field("session", json.dumps(self.build_session_config(instructions, voice)))

        url = f"{self.base_url}/v1/realtime/calls"
        session = await self._get_session()
        logger.info(f"📤 Sending SDP offer to realtime backend ({len(sdp)} bytes)")

        try:
            async with session.post(url, data=form, headers=self._auth_headers()) as response:
                body = await response.text()
                if response.status not in (200, 201):
                    logger.error(f"❌ Backend rejected offer: {response.status} {body[:300]}")
                    raise NegotiationError(classify_http_failure(response.status, body, self.base_url))
        except NegotiationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError) as e:
            logger.error(f"❌ Network error talking to realtime backend: {e!r}")
            raise NegotiationError(classify_network_failure(e, self.base_url)) from e

        if not body.strip():
            raise NegotiationError(NegotiationFailure(
                code=FailureCode.UPSTREAM_ERROR,
                error="Realtime backend returned an empty SDP answer",
            ))

        logger.info(f"✅ Received SDP answer ({len(body)} bytes)")
        return body

    async def fetch_ice_servers(self) -> List[IceServer]:
        """
        Upstream ICE server list, or the public default list when the
        backend is not configured or returns an empty list.

        Raises:
            NegotiationError: If the upstream request fails
        """
        if not self.configured:
            return list(DEFAULT_ICE_SERVERS)

        session = await self._get_session()
        url = f"{self.base_url}/api/ice-servers"
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    body = await response.text()
                    raise NegotiationError(classify_http_failure(response.status, body, self.base_url))
                payload = await response.json(content_type=None)
        except NegotiationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError, ValueError) as e:
            raise NegotiationError(classify_network_failure(e, self.base_url)) from e

        servers = parse_ice_servers(payload)
        if not servers:
            logger.warning("Upstream ICE server list empty, using defaults")
            return list(DEFAULT_ICE_SERVERS)
        return servers

    async def fetch_ephemeral_key(self) -> str:
        """
        Short-lived token for direct client connections. Without a backend
        URL the configured key itself is returned.

        Raises:
            NegotiationError: If no key is configured or the backend fails
        """
        self._require_key()
        if not self.configured:
            return self.api_key

        session = await self._get_session()
        url = f"{self.base_url}/api/ephemeral-key"
        try:
            async with session.post(url, json={}, headers=self._auth_headers()) as response:
                if response.status != 200:
                    body = await response.text()
                    raise NegotiationError(classify_http_failure(response.status, body, self.base_url))
                payload = await response.json(content_type=None)
        except NegotiationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError, ValueError) as e:
            raise NegotiationError(classify_network_failure(e, self.base_url)) from e

        if not isinstance(payload, dict):
            payload = {}
        token = payload.get("token") or payload.get("value") or (payload.get("client_secret") or {}).get("value")
        if not token:
            raise NegotiationError(NegotiationFailure(
                code=FailureCode.UPSTREAM_ERROR,
                error="Ephemeral key response did not contain a token",
            ))
        return token
