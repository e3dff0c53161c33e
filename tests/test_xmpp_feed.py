"""
Tests for the XMPP side-channel feed, against a stand-in client that
records outgoing stanzas instead of connecting.
"""

import json
import xml.etree.ElementTree as ET
from dataclasses import replace

import pytest

from ringline.core.constants import CallStatus
from ringline.core.errors import TransportNotReady
from ringline.core.model import CallRecord, RowChange
from ringline.db.database import Database
from ringline.feed.xmpp import HINTS_NS, SIGNAL_NS, XmppFeed


class OutgoingMessage:
    def __init__(self, client, mto, mtype):
        self.client = client
        self.mto = mto
        self.mtype = mtype
        self.xml = ET.Element('message')

    def send(self):
        self.client.sent.append(self)


class FakeClient:
    def __init__(self):
        self.handlers = {}
        self.sent = []

    def add_event_handler(self, name, handler):
        self.handlers.setdefault(name, []).append(handler)

    def make_message(self, mto, mtype='chat'):
        return OutgoingMessage(self, mto, mtype)

    async def fire(self, name, event=None):
        for handler in self.handlers.get(name, []):
            await handler(event)


class IncomingMessage:
    def __init__(self, sender, signal=None, delayed=False):
        self.xml = ET.Element('message')
        if signal is not None:
            self.xml.append(signal)
        self._values = {
            'from': sender,
            'delay': {'stamp': '2024-01-01T00:00:00Z' if delayed else None},
        }

    def __getitem__(self, key):
        return self._values[key]


class RecordingReplica:
    def __init__(self):
        self.applied = []

    async def apply_replica(self, record):
        self.applied.append(record)
        return True


def signal_element(kind, body, **attrs):
    element = ET.Element(f'{{{SIGNAL_NS}}}signal', kind=kind, **attrs)
    element.text = json.dumps(body)
    return element


def record(**overrides):
    values = dict(id='c1', caller_id='alice@example.com', receiver_id='bob@example.com',
                  room_id='room', initiated_at=1.0, updated_by='alice@example.com')
    values.update(overrides)
    return CallRecord(**values)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def replica():
    return RecordingReplica()


@pytest.fixture
async def xmpp(client, replica):
    feed = XmppFeed(client, 'alice@example.com/laptop', replica=replica)
    await client.fire('session_start')
    return feed


class TestReadiness:

    async def test_ready_after_session_start(self, client):
        feed = XmppFeed(client, 'alice@example.com')
        assert not feed.is_ready

        await client.fire('session_start')

        assert feed.is_ready
        await feed.wait_ready(0.01)

    async def test_wait_ready_times_out(self, client):
        feed = XmppFeed(client, 'alice@example.com')

        with pytest.raises(TransportNotReady):
            await feed.wait_ready(0.01)

    async def test_send_requires_session(self, client):
        feed = XmppFeed(client, 'alice@example.com')

        with pytest.raises(TransportNotReady):
            await feed.channel('call-c1').send('ice-candidate', {'receiverId': 'bob@example.com'})
        assert client.sent == []

    async def test_disconnect_clears_ready(self, client, xmpp):
        await client.fire('disconnected')

        assert not xmpp.is_ready


class TestOutbound:

    async def test_broadcast_stanza(self, client, xmpp):
        payload = {'callId': 'c1', 'senderId': 'alice@example.com', 'receiverId': 'bob@example.com/phone'}

        await xmpp.channel('call-c1').send('ice-candidate', payload)

        [msg] = client.sent
        assert msg.mto == 'bob@example.com'
        assert msg.mtype == 'chat'
        signal = msg.xml.find(f'{{{SIGNAL_NS}}}signal')
        assert signal.get('kind') == 'broadcast'
        assert signal.get('channel') == 'call-c1'
        assert signal.get('event') == 'ice-candidate'
        assert json.loads(signal.text) == payload
        assert msg.xml.find(f'{{{HINTS_NS}}}no-store') is not None

    async def test_broadcast_needs_receiver(self, xmpp):
        with pytest.raises(ValueError):
            await xmpp.channel('call-c1').send('ice-candidate', {'callId': 'c1'})

    async def test_local_write_forwarded_to_peer(self, client, xmpp):
        seen = []
        channel = xmpp.channel('call-c1').on_row('id', 'c1', seen.append)
        await channel.subscribe()
        change = RowChange('UPDATE', record(status='active'), record())

        await xmpp.publish_row(change)

        assert seen == [change]
        [msg] = client.sent
        assert msg.mto == 'bob@example.com'
        signal = msg.xml.find(f'{{{SIGNAL_NS}}}signal')
        assert signal.get('kind') == 'row'
        assert RowChange.from_dict(json.loads(signal.text)) == change

    async def test_replica_write_not_forwarded(self, client, xmpp):
        change = RowChange('UPDATE', record(updated_by='bob@example.com'))

        await xmpp.publish_row(change)

        assert client.sent == []


class TestInbound:

    async def test_broadcast_dispatched_to_channel(self, client, xmpp):
        seen = []
        channel = xmpp.channel('call-c1').on_broadcast('ice-candidate', seen.append)
        await channel.subscribe()
        payload = {'callId': 'c1', 'candidate': {'candidate': 'candidate:1'}}

        await client.fire('message', IncomingMessage(
            'bob@example.com/phone',
            signal_element('broadcast', payload, channel='call-c1', event='ice-candidate'),
        ))

        assert seen == [payload]

    async def test_row_applied_to_replica_then_dispatched(self, client, xmpp, replica):
        seen = []
        channel = xmpp.channel('incoming').on_row('receiver_id', 'bob@example.com', seen.append)
        await channel.subscribe()
        change = RowChange('UPDATE', record(status='rejected', updated_by='bob@example.com'), record())

        await client.fire('message', IncomingMessage(
            'bob@example.com/phone', signal_element('row', change.to_dict(), event='UPDATE'),
        ))

        assert replica.applied == [change.new]
        assert seen == [change]
        assert seen[0].new.status is CallStatus.REJECTED

    async def test_row_from_non_party_ignored(self, client, xmpp, replica):
        change = RowChange('UPDATE', record(status='ended'))

        await client.fire('message', IncomingMessage(
            'mallory@example.com', signal_element('row', change.to_dict(), event='UPDATE'),
        ))

        assert replica.applied == []

    async def test_delayed_signal_ignored(self, client, xmpp, replica):
        change = RowChange('INSERT', record())

        await client.fire('message', IncomingMessage(
            'alice@example.com/phone', signal_element('row', change.to_dict()), delayed=True,
        ))

        assert replica.applied == []

    async def test_plain_chat_ignored(self, client, xmpp, replica):
        await client.fire('message', IncomingMessage('bob@example.com'))

        assert replica.applied == []

    async def test_malformed_body_ignored(self, client, xmpp, replica):
        element = ET.Element(f'{{{SIGNAL_NS}}}signal', kind='row')
        element.text = '{not json'

        await client.fire('message', IncomingMessage('bob@example.com', element))

        assert replica.applied == []

    async def test_stale_row_not_applied_or_dispatched(self, client, clock):
        store = Database(':memory:', clock=clock)
        store.initialize()
        feed = XmppFeed(client, 'alice@example.com', replica=store)
        await client.fire('session_start')
        call = await store.insert_call('alice@example.com', 'bob@example.com', 'room')
        seen = []
        channel = feed.channel(f'call-{call.id}').on_row('id', call.id, seen.append)
        await channel.subscribe()
        cancelled = await store.update_call(call.id, {'status': CallStatus.CANCELLED}, 'alice@example.com',
                                            allowed_from=[CallStatus.RINGING])
        answered = replace(call, status=CallStatus.ACTIVE, started_at=clock.now, updated_by='bob@example.com')
        change = RowChange('UPDATE', answered, call)

        await client.fire('message', IncomingMessage(
            'bob@example.com/phone', signal_element('row', change.to_dict(), event='UPDATE'),
        ))

        assert await store.get_call(call.id) == cancelled
        assert seen == []
        store.close()
