"""
In-process feed.

Both parties share one LocalFeed (and one store). Delivery is awaited in
publish order, which keeps single-process deployments and tests
deterministic. Broadcasts reach every channel with the same name, the
sender's own included; signaling drops self-originated payloads.
"""

from typing import Any, Dict

from .base import RealtimeFeed, Channel
from ..core.model import RowChange


class LocalFeed(RealtimeFeed):

    async def publish_row(self, change: RowChange):
        self.logger.debug(f"Row {change.event} for call {change.new.id} (status={change.new.status.value})")
        await self._dispatch_row(change)

    async def _broadcast(self, channel: Channel, event: str, payload: Dict[str, Any]):
        await self._dispatch_broadcast(channel.name, event, payload)

    async def wait_ready(self, timeout: float):
        return None
