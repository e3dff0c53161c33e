"""
Shared fixtures: an in-memory store on a LocalFeed, and call parties wired
to fake peer connections and devices.
"""

import asyncio
from typing import Callable, List, Optional

import pytest

from ringline.core.call_service import CallService
from ringline.core.config import CallConfig
from ringline.core.constants import AudioRoute, CallEventKind
from ringline.core.errors import PermissionDenied
from ringline.core.events import (
    CallEvent, ConnectionStateChanged, RemoteStreamReady, SpeakerRoutingChanged,
    IncomingCall, IncomingCallDismissed,
)
from ringline.core.incoming import IncomingCallListener
from ringline.core.model import SessionDescription
from ringline.core.signaling import SignalingManager
from ringline.db.database import Database
from ringline.feed.local import LocalFeed


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Devices
# =============================================================================

class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.readyState = 'live'

    def stop(self):
        self.readyState = 'ended'


class FakeMedia:
    def __init__(self, tracks: List[FakeTrack]):
        self.tracks = tracks

    @property
    def audio_tracks(self):
        return [t for t in self.tracks if t.kind == 'audio']

    @property
    def video_tracks(self):
        return [t for t in self.tracks if t.kind == 'video']

    @property
    def live_tracks(self):
        return [t for t in self.tracks if t.readyState == 'live']

    def stop(self):
        for track in self.tracks:
            track.stop()


class FakeMediaSource:
    def __init__(self):
        self.acquired: List[FakeMedia] = []
        self.denied = False

    async def acquire(self, video: bool = False) -> FakeMedia:
        if self.denied:
            raise PermissionDenied("Microphone access refused")
        tracks = [FakeTrack('audio')]
        if video:
            tracks.append(FakeTrack('video'))
        media = FakeMedia(tracks)
        self.acquired.append(media)
        return media


class FakeAudioOutput:
    def __init__(self):
        self.route = AudioRoute.EARPIECE
        self.routes: List[AudioRoute] = []
        self.played = []
        self.stopped = 0

    async def play(self, track):
        self.played.append(track)

    async def set_route(self, route):
        self.route = AudioRoute(route)
        self.routes.append(self.route)

    async def stop(self):
        self.stopped += 1


# =============================================================================
# Peer connection
# =============================================================================

class FakePeer:
    """Records what the call service does to a peer connection."""

    def __init__(self, index: int, on_ice_candidate, on_connection_state, on_track,
                 on_apply: Optional[Callable] = None, fail_offer: bool = False,
                 before_answer: Optional[Callable] = None):
        self.index = index
        self.on_ice_candidate = on_ice_candidate
        self.on_connection_state = on_connection_state
        self.on_track = on_track
        self.on_apply = on_apply
        self.fail_offer = fail_offer
        self.before_answer = before_answer
        self.tracks = []
        self.offers = []
        self.remote_description: Optional[SessionDescription] = None
        self.applied = []
        self.closed = False
        self.connection_state = 'new'

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    def add_track(self, track):
        self.tracks.append(track)

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        if self.fail_offer:
            raise RuntimeError("offer generation failed")
        self.offers.append(ice_restart)
        return SessionDescription(sdp=f'offer-{self.index}', type='offer')

    async def create_answer(self) -> SessionDescription:
        if self.before_answer is not None:
            await self.before_answer(self)
        return SessionDescription(sdp=f'answer-{self.index}', type='answer')

    async def set_remote_description(self, description: SessionDescription):
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        if self.remote_description is None:
            raise RuntimeError("remote description not set")
        self.applied.append(candidate)
        if self.on_apply is not None:
            await self.on_apply(candidate)

    async def close(self):
        self.closed = True

    # Test drivers

    async def emit_candidate(self, candidate):
        await self.on_ice_candidate(candidate)

    async def set_state(self, state: str):
        self.connection_state = state
        await self.on_connection_state(state)

    async def emit_track(self, track):
        await self.on_track(track)


class FakePeerFactory:
    def __init__(self):
        self.peers: List[FakePeer] = []
        self.on_apply: Optional[Callable] = None
        self.fail_offer = False
        self.before_answer: Optional[Callable] = None

    def create(self, on_ice_candidate=None, on_connection_state=None, on_track=None) -> FakePeer:
        peer = FakePeer(len(self.peers) + 1, on_ice_candidate, on_connection_state, on_track,
                        on_apply=self.on_apply, fail_offer=self.fail_offer,
                        before_answer=self.before_answer)
        self.peers.append(peer)
        return peer

    @property
    def last(self) -> FakePeer:
        return self.peers[-1]


# =============================================================================
# Parties
# =============================================================================

class Party:
    """One signed-in identity with its own signaling, service and fakes."""

    def __init__(self, user_id: str, store, feed, config: CallConfig, clock: FakeClock,
                 profile_lookup=None):
        self.user_id = user_id
        self.peers = FakePeerFactory()
        self.media = FakeMediaSource()
        self.audio = FakeAudioOutput()
        self.signaling = SignalingManager(store, feed, clock=clock)
        self.service = CallService(
            self.signaling, self.peers, self.media, self.audio, config=config, clock=clock,
        )
        self.service.initialize(user_id)
        self.listener = IncomingCallListener(
            store, feed, self.service, self.signaling, config=config,
            profile_lookup=profile_lookup, clock=clock,
        )
        self.events = []
        for event_type in (CallEvent, ConnectionStateChanged, RemoteStreamReady,
                           SpeakerRoutingChanged, IncomingCall, IncomingCallDismissed):
            self.service.events.on(event_type, self.events.append)

    def kinds(self) -> List[CallEventKind]:
        return [e.kind for e in self.events if isinstance(e, CallEvent)]

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed():
    return LocalFeed()


@pytest.fixture
def store(clock, feed):
    db = Database(':memory:', clock=clock)
    db.initialize()
    db.attach_feed(feed)
    yield db
    db.close()


@pytest.fixture
def config():
    return CallConfig(reconnect_delay=0.0)


@pytest.fixture
def make_devices():
    def _make():
        return {
            'peer_factory': FakePeerFactory(),
            'media_source': FakeMediaSource(),
            'audio_output': FakeAudioOutput(),
        }
    return _make


@pytest.fixture
async def make_party(store, feed, config, clock):
    parties = []

    def _make(user_id: str, party_config: Optional[CallConfig] = None, profile_lookup=None) -> Party:
        party = Party(user_id, store, feed, party_config or config, clock, profile_lookup)
        parties.append(party)
        return party

    yield _make

    # Stop timers left running by a test
    for party in parties:
        for task in (party.service._ring_task, party.service._tick_task, party.service._reconnect_task):
            if task is not None and not task.done():
                task.cancel()
        for task in party.listener._timers.values():
            task.cancel()
    await asyncio.sleep(0)


@pytest.fixture
def alice(make_party):
    return make_party('alice')


@pytest.fixture
def bob(make_party):
    return make_party('bob')
