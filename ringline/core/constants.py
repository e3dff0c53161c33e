"""
Call constants and enums.

Centralized place for all call-related magic strings and enumerated values.
Values match database storage format (lowercase).
"""

from enum import Enum


class CallStatus(str, Enum):
    """
    Lifecycle status of a call row.

    The call row is shared by both parties, so every value here is a
    persisted string rather than a local-only state.
    """
    RINGING = 'ringing'
    ACTIVE = 'active'
    ENDED = 'ended'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'
    MISSED = 'missed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def normalize(cls, value):
        """
        Normalize a status string to the enum member.

        Returns None for None/unknown values.
        """
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({
    CallStatus.ENDED,
    CallStatus.REJECTED,
    CallStatus.CANCELLED,
    CallStatus.MISSED,
})

# target status → statuses a row may hold before the write
# (None = row does not exist yet)
ALLOWED_TRANSITIONS = {
    CallStatus.RINGING: (None,),
    CallStatus.ACTIVE: (CallStatus.RINGING,),
    CallStatus.REJECTED: (CallStatus.RINGING,),
    CallStatus.CANCELLED: (CallStatus.RINGING,),
    CallStatus.MISSED: (CallStatus.RINGING,),
    CallStatus.ENDED: (CallStatus.ACTIVE,),
}


def can_transition(current, target) -> bool:
    """Check whether a row in `current` status may move to `target`."""
    current = CallStatus.normalize(current)
    target = CallStatus.normalize(target)
    if target is None:
        return False
    return current in ALLOWED_TRANSITIONS[target]


class ConnectionState(str, Enum):
    """Peer connection state as reported by the transport layer."""
    NEW = 'new'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    DISCONNECTED = 'disconnected'
    FAILED = 'failed'
    CLOSED = 'closed'

    @classmethod
    def normalize(cls, value):
        """
        Map transport state strings to ConnectionState.

        ICE-style names ('checking', 'completed') collapse to their
        connection-level equivalent. Unknown values return None.
        """
        if isinstance(value, cls):
            return value
        value = str(value).lower()
        aliases = {'checking': 'connecting', 'completed': 'connected'}
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            return None


class MediaKind(str, Enum):
    """Requested media for a call (persisted as call_type)."""
    AUDIO = 'audio'
    VIDEO = 'video'


class AudioRoute(str, Enum):
    """Remote audio playback target (persisted as audio_mode)."""
    SPEAKER = 'speaker'
    EARPIECE = 'earpiece'


class CallEventKind(str, Enum):
    """Call-level events emitted to the UI controller and the side-channel."""
    RINGING = 'ringing'
    ANSWERED = 'answered'
    ENDED = 'ended'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'
    MISSED = 'missed'
    RECONNECTING = 'reconnecting'
    FAILED = 'failed'
    DURATION = 'duration'


# Side-channel broadcast event names
BROADCAST_ICE_CANDIDATE = 'ice-candidate'
BROADCAST_CALL_EVENT = 'call-event'

# Row change event names
ROW_INSERT = 'INSERT'
ROW_UPDATE = 'UPDATE'

# Defaults (seconds unless noted)
DEFAULT_RING_TIMEOUT = 30.0
DEFAULT_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_READY_TIMEOUT = 10.0
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_MISSED_LOOKBACK = 60.0
