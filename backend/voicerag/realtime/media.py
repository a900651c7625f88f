"""
Local audio capture and remote audio playback for voice sessions.

Capture is gated, not removed: a disabled GatedAudioTrack keeps sending
silent frames so the session stays warm without renegotiation.
"""

import asyncio
import errno
import logging
from typing import Dict, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av import AudioFrame

from voicerag.errors import DeviceError, MicrophoneNotFoundError, MicrophonePermissionError

logger = logging.getLogger(__name__)


def silence_like(frame: AudioFrame) -> AudioFrame:
    """Zero-filled frame with the same format, layout, size and timing."""
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


class GatedAudioTrack(MediaStreamTrack):
    """Wraps a capture track; emits silence while disabled."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self._source = source
        self.enabled = enabled

    async def recv(self) -> AudioFrame:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return silence_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class MicrophoneSource:
    """
    Owns the capture device for one session.

    open() acquires the device; the returned track is handed to the peer
    connection and gated via set_enabled().
    """

    def __init__(self, device: str, fmt: Optional[str] = None, options: Optional[Dict[str, str]] = None):
        self.device = device
        self.format = fmt
        self.options = options or {}
        self._player: Optional[MediaPlayer] = None
        self.track: Optional[GatedAudioTrack] = None

    async def open(self, enabled: bool = True) -> GatedAudioTrack:
        """
        Acquire the capture device.

        Raises:
            MicrophonePermissionError: Access to the device was denied
            MicrophoneNotFoundError: The device does not exist
            DeviceError: Any other capture failure
        """
        if self.track is not None:
            self.track.enabled = enabled
            return self.track

        try:
            # Opening an FFmpeg input device blocks
            self._player = await asyncio.to_thread(
                MediaPlayer, self.device, format=self.format, options=self.options
            )
        except PermissionError as e:
            logger.error(f"Microphone permission denied: {e}")
            raise MicrophonePermissionError() from e
        except FileNotFoundError as e:
            logger.error(f"Microphone not found: {e}")
            raise MicrophoneNotFoundError() from e
        except OSError as e:
            if e.errno in (errno.ENOENT, errno.ENODEV):
                raise MicrophoneNotFoundError() from e
            if e.errno in (errno.EACCES, errno.EPERM):
                raise MicrophonePermissionError() from e
            raise DeviceError(f"Microphone error: {e}") from e

        if self._player.audio is None:
            await self.close()
            raise MicrophoneNotFoundError()

        self.track = GatedAudioTrack(self._player.audio, enabled=enabled)
        logger.info(f"🎙️ Microphone acquired: {self.device} (format={self.format}, enabled={enabled})")
        return self.track

    def set_enabled(self, enabled: bool) -> None:
        if self.track is not None:
            self.track.enabled = enabled

    async def close(self) -> None:
        if self.track is not None:
            self.track.stop()
            self.track = None
        elif self._player is not None and self._player.audio is not None:
            self._player.audio.stop()
        self._player = None


class RemoteAudioSink:
    """
    Consumes assistant audio tracks. Records to a file when a path is
    given, otherwise discards. Each remote track is attached once.
    """

    def __init__(self, record_path: Optional[str] = None):
        self.record_path = record_path
        self._sink = MediaRecorder(record_path) if record_path else MediaBlackhole()
        self._track_ids: set[str] = set()
        self._started = False

    async def add_track(self, track: MediaStreamTrack) -> None:
        if track.kind != "audio" or track.id in self._track_ids:
            return
        self._track_ids.add(track.id)
        self._sink.addTrack(track)
        if not self._started:
            await self._sink.start()
            self._started = True
        logger.info(f"🔊 Remote audio track attached: {track.id}")

    async def stop(self) -> None:
        if self._started:
            await self._sink.stop()
            self._started = False
        self._track_ids.clear()
