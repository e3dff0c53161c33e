"""
Core call logic for Ringline.

Leaf types (status enums, errors, records, events, settings) are exported
here. The stateful pieces live in their own modules:

    from ringline.core.session import CallSession
    from ringline.core.call_service import CallService
    from ringline.core.signaling import SignalingManager
"""

from .config import CallConfig, load_config
from .constants import CallStatus, ConnectionState, MediaKind, AudioRoute, CallEventKind
from .errors import (
    CallError, PermissionDenied, PersistenceFailure, MissingOffer, ConnectionFailed,
    NotInCall, AlreadyInCall, InvalidTransition, CallNotFound, InvalidPeer,
    NotInitialized, TransportNotReady,
)
from .events import (
    CallEvent, ConnectionStateChanged, RemoteStreamReady, SpeakerRoutingChanged,
    IncomingCall, IncomingCallDismissed,
)
from .model import CallRecord, CallHandle, SessionDescription, IceCandidate
from .widget import build_join_url

__all__ = [
    'CallConfig',
    'load_config',
    'CallStatus',
    'ConnectionState',
    'MediaKind',
    'AudioRoute',
    'CallEventKind',
    'CallRecord',
    'CallHandle',
    'SessionDescription',
    'IceCandidate',
    'CallEvent',
    'ConnectionStateChanged',
    'RemoteStreamReady',
    'SpeakerRoutingChanged',
    'IncomingCall',
    'IncomingCallDismissed',
    'CallError',
    'PermissionDenied',
    'PersistenceFailure',
    'MissingOffer',
    'ConnectionFailed',
    'NotInCall',
    'AlreadyInCall',
    'InvalidTransition',
    'CallNotFound',
    'InvalidPeer',
    'NotInitialized',
    'TransportNotReady',
    'build_join_url',
]
