"""
Tests for CallSession wiring, start/stop and open_session.
"""

import logging
import sys

import pytest

from ringline.core import session as session_module
from ringline.core.config import CallConfig
from ringline.core.constants import CallEventKind, CallStatus
from ringline.core.errors import TransportNotReady
from ringline.core.events import CallEvent, IncomingCall
from ringline.core.session import CallSession, open_session
from ringline.feed.local import LocalFeed
from ringline.feed.xmpp import XmppFeed
from ringline.utils.paths import Paths
from ringline.version import get_version_string


class OfflineClient:
    """XMPP client stand-in that never reaches session_start."""

    def __init__(self):
        self.connects = 0
        self.disconnects = 0

    def add_event_handler(self, name, handler):
        pass

    def connect(self):
        self.connects += 1

    def disconnect(self):
        self.disconnects += 1


@pytest.fixture
def session_config():
    return CallConfig(reconnect_delay=0.0, widget_base_url='https://meet.example.com')


@pytest.fixture
async def make_session(store, feed, session_config, clock, make_devices):
    sessions = []

    def _make(**overrides):
        config = overrides.pop('config', session_config)
        components = dict(store=store, feed=feed, clock=clock, **make_devices())
        components.update(overrides)
        session = CallSession(config, **components)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        await session.stop()


def record_events(session):
    seen = []
    session.events.on(CallEvent, seen.append)
    session.events.on(IncomingCall, seen.append)
    return seen


class TestLifecycle:

    async def test_call_between_sessions(self, make_session, store):
        alice, bob = make_session(), make_session()
        await alice.start('alice')
        await bob.start('bob')
        alice_events, bob_events = record_events(alice), record_events(bob)

        handle = await alice.service.initiate_call('bob')
        incoming = [e for e in bob_events if isinstance(e, IncomingCall)]
        assert [e.call.id for e in incoming] == [handle.id]

        await bob.listener.accept(handle.id)
        assert (await store.get_call(handle.id)).status is CallStatus.ACTIVE

        await alice.stop()

        assert (await store.get_call(handle.id)).status is CallStatus.ENDED
        assert alice_events[-1].kind is CallEventKind.ENDED
        assert bob_events[-1].kind is CallEventKind.ENDED
        assert not bob.service.in_call

    async def test_stop_releases_subscriptions(self, make_session, feed):
        alice, bob = make_session(), make_session()
        await alice.start('alice')
        await bob.start('bob')
        await alice.service.initiate_call('bob')
        assert feed.channel_count > 0

        await bob.stop()
        await alice.stop()

        assert feed.channel_count == 0
        assert alice.signaling.subscription_count == 0
        assert bob.signaling.subscription_count == 0

    async def test_start_and_stop_idempotent(self, make_session, feed):
        session = make_session()
        await session.stop()

        await session.start('alice')
        await session.start('alice')
        assert session.started
        assert feed.channel_count == 1

        await session.stop()
        await session.stop()
        assert not session.started

    async def test_feed_not_ready(self, make_session, session_config):
        client = OfflineClient()
        xmpp = XmppFeed(client, 'alice@example.com')
        session_config.ready_timeout = 0.01
        session = make_session(feed=xmpp)

        with pytest.raises(TransportNotReady):
            await session.start('alice@example.com')

        assert client.connects == 1
        assert not session.started


class TestWiring:

    def test_local_feed_without_jid(self, store, make_devices):
        session = CallSession(CallConfig(), store=store, **make_devices())

        assert isinstance(session.feed, LocalFeed)
        assert store.feed is session.feed

    async def test_xmpp_feed_with_jid(self, store, make_devices):
        config = CallConfig()
        config.feed.jid = 'alice@example.com'
        config.feed.password = 'secret'

        session = CallSession(config, store=store, **make_devices())

        assert isinstance(session.feed, XmppFeed)
        assert session.feed.replica is store
        assert str(session.feed.client.boundjid.bare) == 'alice@example.com'

    def test_join_url(self, store, make_devices, session_config):
        session = CallSession(session_config, store=store, **make_devices())

        url = session.join_url('call_1_abcdefghi', 'Alice')

        assert url.startswith('https://meet.example.com/call_1_abcdefghi#')
        assert url.endswith('userInfo.displayName=Alice')


class TestOpenSession:

    @pytest.fixture(autouse=True)
    def isolated_paths(self, tmp_path, monkeypatch):
        monkeypatch.setenv('HOME', str(tmp_path))
        monkeypatch.setattr(session_module, 'get_paths', lambda profile='default': Paths(profile, mode='dot'))
        saved_hook = sys.excepthook
        yield
        sys.excepthook = saved_hook
        for name in ('ringline', 'ringline_hook', 'ringline.user-alice'):
            logger = logging.getLogger(name)
            for handler in logger.handlers:
                handler.close()
            logger.handlers.clear()
            logger.propagate = True

    async def test_opens_started_session(self, store, feed, make_devices, tmp_path):
        session = await open_session('alice', profile='work', store=store, feed=feed, **make_devices())

        try:
            assert session.started
            assert session.user_id == 'alice'
            assert session.logger.name == 'ringline.user-alice'
            assert session.config.database_path == str(tmp_path / '.ringline' / 'data' / 'work' / 'ringline.db')
            assert (tmp_path / '.ringline' / 'logs' / 'work' / 'user-alice.log').exists()
            main_log = Paths('work', mode='dot').main_log_path().read_text(encoding='utf-8')
            assert f"{get_version_string()} starting (profile: work)" in main_log
        finally:
            await session.stop()
