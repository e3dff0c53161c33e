"""
XMPP side-channel feed.

Carries call row snapshots and ephemeral broadcasts between two parties as
chat messages with a namespaced <signal/> payload:

    <message to='bob@example.com' type='chat'>
      <signal xmlns='urn:ringline:signal:0' kind='broadcast'
              channel='call-<id>' event='ice-candidate'>{json}</signal>
      <no-store xmlns='urn:xmpp:hints'/>
    </message>

Identities are bare JIDs. Row changes written locally are forwarded to the
other party, who applies them to its replica store before dispatching, so
each side's store converges on the last write.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from slixmpp import ClientXMPP
from slixmpp.jid import JID
from slixmpp.stanza import Message
from slixmpp.xmlstream import ET

from .base import RealtimeFeed, Channel
from ..core.errors import TransportNotReady
from ..core.model import RowChange


SIGNAL_NS = 'urn:ringline:signal:0'
HINTS_NS = 'urn:xmpp:hints'


class SignalClient(ClientXMPP):
    """Minimal XMPP client for call signaling (no chat features)."""

    def __init__(self, jid: str, password: str, keepalive_interval: int = 60,
                 logger: Optional[logging.Logger] = None):
        super().__init__(jid, password)
        self.logger = logger or logging.getLogger(__name__)

        self.register_plugin('xep_0030')  # Service Discovery
        self.register_plugin('xep_0199', {'keepalive': True, 'interval': keepalive_interval})  # XMPP Ping
        self.register_plugin('xep_0203')  # Delayed Delivery (to spot server resends)

        self.add_event_handler('session_start', self._on_session_start)

    async def _on_session_start(self, event):
        self.logger.info(f"Connected to XMPP server as {self.boundjid.bare}")
        self.plugin['xep_0030'].add_feature(SIGNAL_NS)
        self.send_presence()
        try:
            await self.get_roster()
        except Exception as e:
            self.logger.warning(f"Roster fetch failed: {e}")


class XmppFeed(RealtimeFeed):
    """
    Realtime feed over an XMPP client.

    Args:
        client: slixmpp client (SignalClient or any ClientXMPP)
        user_id: Local bare JID
        replica: Optional store with apply_replica(record) for remote row changes
        logger: Logger instance
    """

    def __init__(self, client, user_id: str, replica=None,
                 logger: Optional[logging.Logger] = None):
        super().__init__(logger=logger)
        self.client = client
        self.user_id = JID(user_id).bare
        self.replica = replica
        self._ready = asyncio.Event()

        self.client.add_event_handler('session_start', self._on_session_start)
        self.client.add_event_handler('disconnected', self._on_disconnected)
        self.client.add_event_handler('message', self._on_message)

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def _on_session_start(self, event):
        self._ready.set()
        self.logger.debug("Signal feed ready")

    async def _on_disconnected(self, event):
        if self._ready.is_set():
            self.logger.warning("Signal feed disconnected")
        self._ready.clear()

    async def wait_ready(self, timeout: float):
        if self._ready.is_set():
            return
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise TransportNotReady(f"XMPP session not established within {timeout}s") from None

    # =========================================================================
    # Outbound
    # =========================================================================

    def _send_signal(self, to: str, kind: str, body: Dict[str, Any], **attrs):
        if not self._ready.is_set():
            raise TransportNotReady("XMPP session not established")

        msg = self.client.make_message(mto=JID(to).bare, mtype='chat')
        signal = ET.Element(f'{{{SIGNAL_NS}}}signal')
        signal.set('kind', kind)
        for key, value in attrs.items():
            signal.set(key, value)
        signal.text = json.dumps(body)
        msg.xml.append(signal)
        # Ephemeral: keep signaling traffic out of archives (XEP-0334)
        msg.xml.append(ET.Element(f'{{{HINTS_NS}}}no-store'))
        msg.send()

    async def publish_row(self, change: RowChange):
        await self._dispatch_row(change)

        record = change.new
        if record.updated_by != self.user_id:
            return  # replica write, originated elsewhere

        try:
            peer = record.peer_of(self.user_id)
        except ValueError:
            self.logger.warning(f"Not forwarding row for call {record.id}: {self.user_id} is not a party")
            return

        self._send_signal(peer, 'row', change.to_dict(), event=change.event)
        self.logger.debug(f"Forwarded row {change.event} for call {record.id} to {peer}")

    async def _broadcast(self, channel: Channel, event: str, payload: Dict[str, Any]):
        receiver = payload.get('receiverId')
        if not receiver:
            raise ValueError(f"Broadcast on {channel.name} has no receiverId")
        self._send_signal(receiver, 'broadcast', payload, channel=channel.name, event=event)

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _on_message(self, msg: Message):
        signal = msg.xml.find(f'{{{SIGNAL_NS}}}signal')
        if signal is None:
            return

        # Skip historical/resent messages; signaling is only meaningful live
        if msg['delay']['stamp']:
            self.logger.debug(f"Discarding delayed signal from {msg['from']}")
            return

        sender = JID(str(msg['from'])).bare
        try:
            body = json.loads(signal.text or '{}')
        except ValueError as e:
            self.logger.warning(f"Malformed signal from {sender}: {e}")
            return

        kind = signal.get('kind')
        try:
            if kind == 'broadcast':
                await self._dispatch_broadcast(signal.get('channel', ''), signal.get('event', ''), body)
            elif kind == 'row':
                await self._receive_row(sender, RowChange.from_dict(body))
            else:
                self.logger.warning(f"Unknown signal kind from {sender}: {kind}")
        except Exception as e:
            self.logger.error(f"Error handling signal from {sender}: {e}", exc_info=True)

    async def _receive_row(self, sender: str, change: RowChange):
        record = change.new
        if sender not in (record.caller_id, record.receiver_id):
            self.logger.warning(f"Ignoring row for call {record.id} from non-party {sender}")
            return

        if self.replica is not None and not await self.replica.apply_replica(record):
            self.logger.debug(f"Dropped stale row for call {record.id} from {sender}")
            return
        await self._dispatch_row(change)
