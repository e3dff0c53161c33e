"""
Call errors.

Every error the call core raises derives from CallError so the UI layer can
catch one type and show `str(exc)` as the reason string.
"""


class CallError(Exception):
    """Base class for call signaling and session errors."""


class PermissionDenied(CallError):
    """Local media (microphone/camera) could not be acquired."""


class PersistenceFailure(CallError):
    """A call row read or write failed."""


class CallNotFound(PersistenceFailure):
    """No call row exists for the given id."""

    def __init__(self, call_id: str):
        super().__init__(f"Call not found: {call_id}")
        self.call_id = call_id


class InvalidTransition(PersistenceFailure):
    """Conditional status update rejected (row no longer in an allowed status)."""

    def __init__(self, call_id: str, target, current=None):
        current_str = getattr(current, 'value', current)
        target_str = getattr(target, 'value', target)
        super().__init__(f"Call {call_id}: cannot move {current_str} → {target_str}")
        self.call_id = call_id
        self.target = target
        self.current = current


class MissingOffer(CallError):
    """Answer attempted for a call with no stored session offer."""


class ConnectionFailed(CallError):
    """Transport-level failure that exhausted automatic reconnection."""


class NotInCall(CallError):
    """Operation requires a current call but there is none."""


class AlreadyInCall(CallError):
    """A second call was initiated or answered while one is in progress."""


class InvalidPeer(CallError):
    """Peer identity is empty or equals the local identity."""


class NotInitialized(CallError):
    """Operation attempted before initialize(user_id)."""


class TransportNotReady(CallError):
    """Realtime transport did not become ready within the timeout."""
