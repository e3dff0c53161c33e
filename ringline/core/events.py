"""
Typed call events for the UI controller.

Each event class has at most one registered handler. Handlers may be plain
functions or coroutines; errors raised by a handler are logged and never
propagate into the call state machine.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Type

from .constants import ConnectionState, CallEventKind
from .model import CallRecord


@dataclass(frozen=True)
class ConnectionStateChanged:
    call_id: str
    state: ConnectionState


@dataclass(frozen=True)
class RemoteStreamReady:
    call_id: str
    track: Any  # transport-level remote track


@dataclass(frozen=True)
class CallEvent:
    call_id: str
    kind: CallEventKind
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SpeakerRoutingChanged:
    call_id: str
    speaker_on: bool


@dataclass(frozen=True)
class IncomingCall:
    call: CallRecord
    caller_name: Optional[str] = None
    caller_avatar: Optional[str] = None


@dataclass(frozen=True)
class IncomingCallDismissed:
    call_id: str
    status: Any


class EventHub:
    """Single-handler-per-event-class dispatcher."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[Type, Callable] = {}

    def on(self, event_type: Type, handler: Optional[Callable]):
        """Register (or replace, or clear with None) the handler for event_type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            self._handlers[event_type] = handler

    async def emit(self, event):
        handler = self._handlers.get(type(event))
        if handler is None:
            return

        try:
            # Call handler (may be sync or async)
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.logger.error(f"Error in {type(event).__name__} handler: {e}", exc_info=True)
