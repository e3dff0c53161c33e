"""
Capture/playback device selection.

Maps configured device names (empty = system default) to the
(file, format, options) triple that av/aiortc MediaPlayer and MediaRecorder
open. On Linux, PulseAudio/PipeWire devices are enumerated with pactl.
"""

import logging
import platform
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class AudioDevice:
    """An audio device (microphone or speaker)."""
    id: str
    name: str
    is_default: bool = False


@dataclass
class DeviceSpec:
    """Arguments for MediaPlayer/MediaRecorder."""
    file: str
    format: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)


class DeviceManager:
    """
    Cross-platform device lookup.

    Args:
        system: platform.system() override (tests)
    """

    VIDEO_OPTIONS = {'framerate': '30', 'video_size': '640x480'}

    def __init__(self, system: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.system = system or platform.system()
        self.logger = logger or logging.getLogger(__name__)

    def microphone(self, name: str = '') -> DeviceSpec:
        if self.system == 'Linux':
            return DeviceSpec(name or 'default', 'pulse')
        if self.system == 'Darwin':
            return DeviceSpec(f"none:{name or '0'}", 'avfoundation')
        if self.system == 'Windows':
            return DeviceSpec(f"audio={name or 'Microphone'}", 'dshow')
        raise OSError(f"Unsupported OS for audio capture: {self.system}")

    def camera(self, name: str = '') -> DeviceSpec:
        options = dict(self.VIDEO_OPTIONS)
        if self.system == 'Linux':
            return DeviceSpec(name or '/dev/video0', 'v4l2', options)
        if self.system == 'Darwin':
            return DeviceSpec(f"{name or 'default'}:none", 'avfoundation', options)
        if self.system == 'Windows':
            return DeviceSpec(f"video={name or 'Integrated Camera'}", 'dshow', options)
        raise OSError(f"Unsupported OS for video capture: {self.system}")

    def speaker(self, name: str = '') -> Optional[DeviceSpec]:
        """Playback sink, or None where ffmpeg has no audio output device."""
        if self.system == 'Linux':
            return DeviceSpec(name or 'default', 'pulse')
        if self.system == 'Darwin':
            return DeviceSpec(name or 'default', 'audiotoolbox')
        return None

    # =========================================================================
    # Linux (PipeWire/PulseAudio) enumeration
    # =========================================================================

    def list_outputs(self) -> List[AudioDevice]:
        return self._list_pulse('sinks', 'get-default-sink')

    def list_inputs(self) -> List[AudioDevice]:
        return self._list_pulse('sources', 'get-default-source')

    def _list_pulse(self, kind: str, default_cmd: str) -> List[AudioDevice]:
        if self.system != 'Linux':
            self.logger.debug(f"Device enumeration not supported on {self.system}")
            return []

        try:
            default = subprocess.check_output(
                ['pactl', default_cmd], stderr=subprocess.DEVNULL
            ).decode().strip()
        except (OSError, subprocess.CalledProcessError) as e:
            self.logger.warning(f"Failed to get default {kind}: {e}")
            default = None

        try:
            output = subprocess.check_output(
                ['pactl', 'list', kind, 'short'], stderr=subprocess.DEVNULL
            ).decode()
        except FileNotFoundError:
            self.logger.warning("pactl not found - cannot detect audio devices")
            return []
        except (OSError, subprocess.CalledProcessError) as e:
            self.logger.error(f"Failed to list {kind}: {e}")
            return []

        devices = []
        for line in output.strip().split('\n'):
            parts = line.split('\t')
            if len(parts) < 2:
                continue
            device_id = parts[1]
            # Monitors are loopbacks of sinks, not microphones
            if kind == 'sources' and device_id.endswith('.monitor'):
                continue
            devices.append(AudioDevice(device_id, device_id, is_default=(device_id == default)))

        self.logger.debug(f"Found {len(devices)} {kind} (pactl)")
        return devices
