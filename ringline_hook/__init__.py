"""
Ringline media hook - peer connection and device bridge over aiortc.

Exports:
- PeerBridge: builds RtcPeer (RTCPeerConnection wrapper) per call
- MediaSource: opens microphone/camera as switchable tracks
- AudioOutput: plays remote audio on speaker or earpiece
"""

from .bridge import PeerBridge, RtcPeer
from .media import MediaSource, AudioOutput, LocalMedia, SwitchableTrack
from .devices import DeviceManager, DeviceSpec, AudioDevice

__all__ = [
    'PeerBridge',
    'RtcPeer',
    'MediaSource',
    'AudioOutput',
    'LocalMedia',
    'SwitchableTrack',
    'DeviceManager',
    'DeviceSpec',
    'AudioDevice',
]
