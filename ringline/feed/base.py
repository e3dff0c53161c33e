"""
Realtime change feed.

A feed pushes two kinds of traffic to subscribed channels:
- row changes: committed INSERT/UPDATE of a call row (durable path)
- broadcasts: ephemeral side-channel messages such as ICE candidates

Channels are named (one per call id, one per incoming-call listener) and
filter row changes by column value, mirroring the `receiver_id = self` and
`id = callId` filters the signaling layer relies on.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.model import RowChange


async def invoke_callback(callback: Callable, *args, logger: Optional[logging.Logger] = None):
    """Run a sync-or-async callback; errors are logged, not raised."""
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        (logger or logging.getLogger(__name__)).error(
            f"Error in feed callback {getattr(callback, '__name__', callback)}: {e}", exc_info=True
        )


class Channel:
    """
    One named subscription on a feed.

    Usage:
        channel = feed.channel(f'call-{call_id}')
        channel.on_row('id', call_id, on_update, event='UPDATE')
        channel.on_broadcast('ice-candidate', on_candidate)
        await channel.subscribe()
        ...
        await channel.unsubscribe()
    """

    def __init__(self, feed: 'RealtimeFeed', name: str, logger: Optional[logging.Logger] = None):
        self.feed = feed
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._row_filters: List[Tuple[Optional[str], str, Any, Callable]] = []
        self._broadcast_handlers: Dict[str, List[Callable]] = {}
        self.subscribed = False
        self.closed = False

    def on_row(self, column: str, value: Any, callback: Callable, event: Optional[str] = None) -> 'Channel':
        """Deliver row changes whose new row has `column == value` (optionally one event type)."""
        self._row_filters.append((event, column, value, callback))
        return self

    def on_broadcast(self, event: str, callback: Callable) -> 'Channel':
        """Deliver side-channel payloads published under `event` on this channel name."""
        self._broadcast_handlers.setdefault(event, []).append(callback)
        return self

    async def subscribe(self) -> 'Channel':
        if self.closed:
            raise RuntimeError(f"Channel {self.name} already unsubscribed")
        if not self.subscribed:
            await self.feed._attach(self)
            self.subscribed = True
            self.logger.debug(f"Subscribed to channel {self.name}")
        return self

    async def send(self, event: str, payload: Dict[str, Any]):
        """Publish an ephemeral payload on the side-channel."""
        await self.feed._broadcast(self, event, payload)

    async def unsubscribe(self):
        """Release the channel. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        if self.subscribed:
            self.subscribed = False
            await self.feed._detach(self)
            self.logger.debug(f"Unsubscribed from channel {self.name}")
        self._row_filters.clear()
        self._broadcast_handlers.clear()

    async def deliver_row(self, change: RowChange):
        row = change.new.to_dict()
        for event, column, value, callback in list(self._row_filters):
            if event is not None and event != change.event:
                continue
            if row.get(column) != value:
                continue
            await invoke_callback(callback, change, logger=self.logger)

    async def deliver_broadcast(self, event: str, payload: Dict[str, Any]):
        for callback in list(self._broadcast_handlers.get(event, ())):
            await invoke_callback(callback, payload, logger=self.logger)


class RealtimeFeed(ABC):
    """Base class for change feeds. Subclasses move traffic between parties."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._channels: List[Channel] = []

    def channel(self, name: str) -> Channel:
        return Channel(self, name, logger=self.logger)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def _attach(self, channel: Channel):
        self._channels.append(channel)

    async def _detach(self, channel: Channel):
        if channel in self._channels:
            self._channels.remove(channel)

    async def _dispatch_row(self, change: RowChange):
        for channel in list(self._channels):
            await channel.deliver_row(change)

    async def _dispatch_broadcast(self, name: str, event: str, payload: Dict[str, Any]):
        for channel in list(self._channels):
            if channel.name == name:
                await channel.deliver_broadcast(event, payload)

    @abstractmethod
    async def publish_row(self, change: RowChange):
        """Called by the store after a write commits."""

    @abstractmethod
    async def _broadcast(self, channel: Channel, event: str, payload: Dict[str, Any]):
        """Deliver a side-channel payload to the other party."""

    @abstractmethod
    async def wait_ready(self, timeout: float):
        """Resolve once the feed can carry traffic; raise TransportNotReady on timeout."""

    async def close(self):
        for channel in list(self._channels):
            await channel.unsubscribe()
