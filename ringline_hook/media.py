"""
Local media capture and remote audio playback over aiortc.contrib.media.

Responsibilities:
- Open microphone (and camera) as MediaStreamTracks
- Mute/unmute without renegotiation (SwitchableTrack.enabled)
- Route remote audio to the loudspeaker or earpiece sink
"""

import asyncio
import logging
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRecorder, MediaBlackhole
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from ringline.core.constants import AudioRoute
from ringline.core.errors import PermissionDenied
from .devices import DeviceManager, DeviceSpec


class SwitchableTrack(MediaStreamTrack):
    """
    Wraps a capture track; while disabled it emits silence (audio) or black
    frames (video) with the source's timing, so the sender keeps running.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == 'audio':
            return _silence_like(frame)
        return _black_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def _copy_timing(source, target):
    target.pts = source.pts
    if source.time_base is not None:
        target.time_base = source.time_base


def _silence_like(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    if frame.sample_rate:
        silent.sample_rate = frame.sample_rate
    _copy_timing(frame, silent)
    return silent


def _black_like(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame(width=frame.width, height=frame.height, format='yuv420p')
    # Y = 0, U = V = 128
    for index, plane in enumerate(black.planes):
        plane.update(bytes([0 if index == 0 else 128]) * plane.buffer_size)
    _copy_timing(frame, black)
    return black


class LocalMedia:
    """Tracks acquired for one call. Exclusively owned by the call service."""

    def __init__(self, tracks: List[SwitchableTrack]):
        self.tracks = tracks

    @property
    def audio_tracks(self) -> List[SwitchableTrack]:
        return [t for t in self.tracks if t.kind == 'audio']

    @property
    def video_tracks(self) -> List[SwitchableTrack]:
        return [t for t in self.tracks if t.kind == 'video']

    @property
    def live_tracks(self) -> List[SwitchableTrack]:
        return [t for t in self.tracks if t.readyState == 'live']

    def stop(self):
        for track in self.tracks:
            track.stop()


class MediaSource:
    """
    Acquires local capture devices.

    Args:
        microphone: Microphone device name (empty = default)
        camera: Camera device name (empty = default)
        devices: DeviceManager (platform lookup)
    """

    def __init__(self, microphone: str = '', camera: str = '',
                 devices: Optional[DeviceManager] = None,
                 logger: Optional[logging.Logger] = None):
        self.microphone = microphone
        self.camera = camera
        self.devices = devices or DeviceManager()
        self.logger = logger or logging.getLogger(__name__)

    def _open(self, spec: DeviceSpec, what: str) -> MediaPlayer:
        try:
            return MediaPlayer(spec.file, format=spec.format, options=spec.options or None)
        except (FFmpegError, OSError) as e:
            self.logger.error(f"Cannot open {what} {spec.file} ({spec.format}): {e}")
            raise PermissionDenied(f"{what.capitalize()} unavailable or access refused: {e}") from e

    async def acquire(self, video: bool = False) -> LocalMedia:
        """
        Open microphone (and camera when video=True).

        Raises:
            PermissionDenied: A device could not be opened
        """
        tracks: List[SwitchableTrack] = []
        try:
            mic = self._open(self.devices.microphone(self.microphone), 'microphone')
            if mic.audio is None:
                raise PermissionDenied("Microphone produced no audio track")
            tracks.append(SwitchableTrack(mic.audio))

            if video:
                cam = self._open(self.devices.camera(self.camera), 'camera')
                if cam.video is None:
                    raise PermissionDenied("Camera produced no video track")
                tracks.append(SwitchableTrack(cam.video))
        except Exception:
            for track in tracks:
                track.stop()
            raise

        self.logger.debug(f"Acquired local media: {[t.kind for t in tracks]}")
        return LocalMedia(tracks)


class AudioOutput:
    """
    Plays the remote audio track on the speaker or earpiece sink.

    Re-routing restarts the recorder on the other sink; the remote track
    stays attached.
    """

    def __init__(self, speaker: str = '', earpiece: str = '',
                 devices: Optional[DeviceManager] = None,
                 logger: Optional[logging.Logger] = None):
        self.devices = devices or DeviceManager()
        self.sinks = {AudioRoute.SPEAKER: speaker, AudioRoute.EARPIECE: earpiece}
        self.logger = logger or logging.getLogger(__name__)
        self.route = AudioRoute.EARPIECE
        self._track: Optional[MediaStreamTrack] = None
        self._recorder = None
        self._lock = asyncio.Lock()

    def _make_recorder(self):
        spec = self.devices.speaker(self.sinks[self.route])
        if spec is None:
            self.logger.warning(f"No audio output device on {self.devices.system}, remote audio discarded")
            return MediaBlackhole()
        return MediaRecorder(spec.file, format=spec.format, options=spec.options or None)

    async def _restart(self):
        if self._recorder is not None:
            await self._recorder.stop()
            self._recorder = None
        if self._track is None:
            return
        recorder = self._make_recorder()
        recorder.addTrack(self._track)
        await recorder.start()
        self._recorder = recorder

    async def play(self, track: MediaStreamTrack):
        """Attach the remote audio track and start playback."""
        async with self._lock:
            self._track = track
            await self._restart()
        self.logger.debug(f"Remote audio playing on {self.route.value}")

    async def set_route(self, route: AudioRoute):
        """
        Switch playback target.

        Raises:
            OSError/FFmpegError from the sink; the previous route is restored
        """
        route = AudioRoute(route)
        async with self._lock:
            if route is self.route:
                return
            previous = self.route
            self.route = route
            try:
                await self._restart()
            except Exception:
                self.route = previous
                await self._restart()
                raise
        self.logger.debug(f"Audio routed to {route.value}")

    async def stop(self):
        async with self._lock:
            self._track = None
            if self._recorder is not None:
                await self._recorder.stop()
                self._recorder = None
