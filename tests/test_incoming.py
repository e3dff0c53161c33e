"""
Tests for IncomingCallListener: inbound detection, busy auto-reject,
missed timeout and dismissal.
"""

import asyncio

import pytest

from ringline.core.config import CallConfig
from ringline.core.constants import CallEventKind, CallStatus
from ringline.core.errors import CallError, NotInitialized
from ringline.core.events import IncomingCall, IncomingCallDismissed


PROFILES = {'alice': {'username': 'Alice', 'avatar_url': 'https://example.com/a.png'}}


async def lookup(user_id):
    return PROFILES.get(user_id)


@pytest.fixture
async def receiver(make_party):
    party = make_party('bob', profile_lookup=lookup)
    await party.listener.start('bob')
    return party


class TestDetection:

    async def test_incoming_call_shown_with_caller_profile(self, alice, receiver, store):
        handle = await alice.service.initiate_call('bob')

        incoming = receiver.of_type(IncomingCall)
        assert len(incoming) == 1
        assert incoming[0].call.id == handle.id
        assert incoming[0].call.caller_id == 'alice'
        assert incoming[0].caller_name == 'Alice'
        assert incoming[0].caller_avatar == 'https://example.com/a.png'
        assert handle.id in receiver.listener.pending_calls

    async def test_incoming_call_is_pre_subscribed(self, alice, receiver):
        handle = await alice.service.initiate_call('bob')

        assert receiver.signaling.is_subscribed(handle.id)
        assert not receiver.service.in_call

    async def test_calls_to_others_ignored(self, alice, receiver, make_party):
        make_party('carol')
        await alice.service.initiate_call('carol')

        assert receiver.of_type(IncomingCall) == []

    async def test_profile_lookup_failure_still_shows_call(self, alice, make_party):
        def broken(user_id):
            raise RuntimeError("directory offline")

        bob = make_party('bob', profile_lookup=broken)
        await bob.listener.start('bob')
        await alice.service.initiate_call('bob')

        incoming = bob.of_type(IncomingCall)
        assert len(incoming) == 1
        assert incoming[0].caller_name is None

    async def test_existing_call_picked_up_on_start(self, alice, bob):
        handle = await alice.service.initiate_call('bob')

        await bob.listener.start('bob')

        incoming = bob.of_type(IncomingCall)
        assert [e.call.id for e in incoming] == [handle.id]
        assert bob.signaling.is_subscribed(handle.id)

    async def test_stale_ringing_call_not_picked_up(self, alice, bob, clock):
        await alice.service.initiate_call('bob')
        clock.advance(bob.listener.config.missed_lookback + 1)

        await bob.listener.start('bob')

        assert bob.of_type(IncomingCall) == []

    async def test_check_requires_start(self, bob):
        with pytest.raises(NotInitialized):
            await bob.listener.check_existing_calls()

    async def test_stop_releases_channel(self, receiver, feed):
        before = feed.channel_count

        await receiver.listener.stop()

        assert feed.channel_count == before - 1
        assert receiver.listener.pending_calls == {}


class TestBusy:

    async def test_busy_receiver_rejects_new_call(self, alice, receiver, make_party, store):
        carol = make_party('carol')
        first = await carol.service.initiate_call('bob')
        await receiver.listener.accept(first.id)
        assert receiver.service.in_call

        # The reject lands before the caller's offer is written
        with pytest.raises(CallError):
            await alice.service.initiate_call('bob')

        rows = await store.find_ringing_calls('bob', 0)
        assert rows == []
        assert not alice.service.in_call
        assert [e.call.id for e in receiver.of_type(IncomingCall)] == [first.id]
        assert receiver.service.current_call.id == first.id

    async def test_busy_calls_kept_when_auto_reject_off(self, alice, make_party, store):
        bob = make_party('bob', party_config=CallConfig(reconnect_delay=0.0, reject_when_busy=False))
        await bob.listener.start('bob')
        carol = make_party('carol')
        first = await carol.service.initiate_call('bob')
        await bob.listener.accept(first.id)

        second = await alice.service.initiate_call('bob')

        assert (await store.get_call(second.id)).status is CallStatus.RINGING
        assert second.id in bob.listener.pending_calls


class TestResolution:

    async def test_unanswered_call_marked_missed(self, alice, make_party, store):
        bob = make_party('bob', party_config=CallConfig(reconnect_delay=0.0, ring_timeout=0.05))
        await bob.listener.start('bob')
        handle = await alice.service.initiate_call('bob')

        await asyncio.sleep(0.2)

        assert (await store.get_call(handle.id)).status is CallStatus.MISSED
        dismissed = bob.of_type(IncomingCallDismissed)
        assert dismissed == [IncomingCallDismissed(handle.id, CallStatus.MISSED)]
        assert bob.signaling.subscription_count == 0
        assert bob.listener.pending_calls == {}

        # Caller learns about it from the row change
        assert alice.kinds()[-1] is CallEventKind.MISSED
        assert not alice.service.in_call

    async def test_cancel_dismisses_incoming(self, alice, receiver):
        handle = await alice.service.initiate_call('bob')

        await alice.service.cancel()

        assert receiver.of_type(IncomingCallDismissed) == [
            IncomingCallDismissed(handle.id, CallStatus.CANCELLED)
        ]
        assert receiver.signaling.subscription_count == 0
        assert receiver.listener.pending_calls == {}

    async def test_accept_answers_and_stops_timer(self, alice, receiver, store):
        handle = await alice.service.initiate_call('bob')

        record = await receiver.listener.accept(handle.id)

        assert record.status is CallStatus.ACTIVE
        assert receiver.listener._timers == {}
        assert receiver.listener.pending_calls == {}
        assert CallEventKind.ANSWERED in alice.kinds()

    async def test_decline_rejects(self, alice, receiver, store):
        handle = await alice.service.initiate_call('bob')

        record = await receiver.listener.decline(handle.id)

        assert record.status is CallStatus.REJECTED
        assert receiver.listener.pending_calls == {}
        assert alice.kinds()[-1] is CallEventKind.REJECTED
