"""
WebRTC transport to the realtime backend: one peer connection carrying the
microphone track, the assistant's audio and a JSON control channel.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from voicerag.errors import TransportError
from voicerag.models import IceServer
from voicerag.realtime.media import RemoteAudioSink

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = "events"

HealthCallback = Callable[[str, str], None]
MessageCallback = Callable[[Dict[str, Any]], None]
OpenCallback = Callable[[], None]


class RealtimeTransport:
    """
    Owns one RTCPeerConnection and its control channel.

    The backend may also open its own data channel; whichever channel is
    announced last becomes the control channel.
    """

    def __init__(
        self,
        ice_servers: List[IceServer],
        on_message: MessageCallback,
        on_channel_open: OpenCallback,
        on_health_change: HealthCallback,
        audio_sink: Optional[RemoteAudioSink] = None,
    ):
        config = RTCConfiguration(iceServers=[
            RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
            for s in ice_servers
        ])
        self.pc = RTCPeerConnection(configuration=config)
        self.channel: Optional[RTCDataChannel] = None
        self.audio_sink = audio_sink or RemoteAudioSink()

        self._on_message = on_message
        self._on_channel_open = on_channel_open
        self._on_health_change = on_health_change
        self._state_changed = asyncio.Event()
        self._closed = False

        self.pc.on("connectionstatechange", self._handle_state_change)
        self.pc.on("iceconnectionstatechange", self._handle_state_change)
        self.pc.on("datachannel", self._adopt_channel)
        self.pc.on("track", self._handle_track)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def ice_state(self) -> str:
        return self.pc.iceConnectionState

    @property
    def is_connected(self) -> bool:
        """Either the peer connection or ICE reports connected."""
        return self.connection_state == "connected" or self.ice_state in ("connected", "completed")

    @property
    def is_fully_connected(self) -> bool:
        """Both the peer connection and ICE report connected."""
        return self.connection_state == "connected" and self.ice_state in ("connected", "completed")

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    def add_audio_track(self, track) -> None:
        self.pc.addTrack(track)

    def open_control_channel(self) -> RTCDataChannel:
        channel = self.pc.createDataChannel(CONTROL_CHANNEL_LABEL, ordered=True)
        self._adopt_channel(channel)
        return channel

    def _adopt_channel(self, channel: RTCDataChannel) -> None:
        logger.debug(f"Control channel announced: {channel.label}")
        self.channel = channel

        @channel.on("open")
        def on_open():
            logger.info(f"📡 Control channel open: {channel.label}")
            self._on_channel_open()

        @channel.on("message")
        def on_message(raw):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning(f"Dropping non-JSON control message: {raw[:100]}")
                return
            if isinstance(message, dict):
                self._on_message(message)

        if channel.readyState == "open":
            on_open()

    async def _handle_track(self, track) -> None:
        logger.info(f"Remote track received: {track.kind}")
        await self.audio_sink.add_track(track)

    def _handle_state_change(self) -> None:
        self._state_changed.set()
        if self._closed:
            return
        logger.info(f"Connection state: {self.connection_state}, ICE: {self.ice_state}")
        self._on_health_change(self.connection_state, self.ice_state)

    async def create_offer(self, gather_timeout: float) -> str:
        """
        Create the local offer and gather ICE candidates.

        Returns:
            Local SDP including gathered candidates

        Raises:
            TransportError: If gathering does not finish within gather_timeout
        """
        offer = await self.pc.createOffer()
        try:
            await asyncio.wait_for(self.pc.setLocalDescription(offer), timeout=gather_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"ICE gathering timed out after {gather_timeout:.1f}s") from e
        return self.pc.localDescription.sdp

    async def accept_answer(self, sdp: str) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def wait_connected(self, timeout: float) -> None:
        """
        Wait until the connection (or ICE) reports connected.

        Raises:
            TransportError: On 'failed' or timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while not self.is_connected:
            if self.connection_state == "failed" or self.ice_state == "failed":
                raise TransportError("Peer connection failed")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError(f"Connection timeout after {timeout:.0f}s")
            self._state_changed.clear()
            try:
                await asyncio.wait_for(self._state_changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    def send(self, message: Dict[str, Any]) -> bool:
        """
        Send one JSON message on the control channel.

        Returns:
            False when the channel is not open
        """
        if not self.channel_open:
            logger.warning(f"Control channel not open, dropping {message.get('type')}")
            return False
        self.channel.send(json.dumps(message))
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.channel is not None:
            self.channel.close()
        await self.audio_sink.stop()
        await self.pc.close()
        logger.info("Transport closed")
