"""
CallService - the call lifecycle state machine.

Responsibilities:
- Outbound calls: acquire media, create the call row, publish the offer
- Inbound calls: apply the stored offer, publish the answer, go active
- Candidate buffering until the peer connection can take them
- Bounded reconnection (caller re-offers on a fresh connection)
- Ring timeout, duration ticker, mute/video/speaker toggles
- Teardown that always releases peer connection, tracks and subscription

One instance per signed-in session; at most one call at a time.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .config import CallConfig
from .constants import (
    CallStatus, CallEventKind, ConnectionState, MediaKind, AudioRoute,
)
from .errors import (
    CallError, AlreadyInCall, ConnectionFailed, InvalidPeer, InvalidTransition,
    MissingOffer, NotInCall, NotInitialized, PersistenceFailure,
)
from .events import (
    EventHub, CallEvent, ConnectionStateChanged, RemoteStreamReady, SpeakerRoutingChanged,
)
from .model import CallRecord, CallHandle, IceCandidate, SessionDescription, generate_room_id
from .signaling import SignalingManager, SignalingHandlers


ROLE_CALLER = 'caller'
ROLE_RECEIVER = 'receiver'

TERMINAL_EVENTS = {
    CallStatus.ENDED: (CallEventKind.ENDED, 'Call ended'),
    CallStatus.REJECTED: (CallEventKind.REJECTED, 'Call was declined'),
    CallStatus.CANCELLED: (CallEventKind.CANCELLED, 'Call was cancelled'),
    CallStatus.MISSED: (CallEventKind.MISSED, 'No answer'),
}


class CallService:
    """
    Call lifecycle for one authenticated identity.

    Usage:
        service = CallService(signaling, PeerBridge(ice_servers), MediaSource(), AudioOutput())
        service.initialize(user_id)
        service.events.on(CallEvent, on_call_event)
        handle = await service.initiate_call(peer_id, MediaKind.AUDIO)
        ...
        await service.end_call()
    """

    def __init__(self, signaling: SignalingManager, peer_factory, media_source,
                 audio_output=None, config: Optional[CallConfig] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            signaling: SignalingManager bound to the shared store and feed
            peer_factory: Object with create(on_ice_candidate, on_connection_state, on_track)
            media_source: Object with async acquire(video) -> LocalMedia
            audio_output: Optional remote audio sink with play/set_route/stop
            config: Call settings (timeouts, reconnect bound)
            logger: Logger instance
            clock: Time source
        """
        self.signaling = signaling
        self.peer_factory = peer_factory
        self.media_source = media_source
        self.audio_output = audio_output
        self.config = config or CallConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.events = EventHub(self.logger)

        self.user_id: Optional[str] = None

        # Current call
        self._call: Optional[CallRecord] = None
        self._role: Optional[str] = None
        self._peer = None
        self._media = None
        self._remote_track = None
        self._setting_up = False
        self._answered = False
        self._muted = False
        self._video_enabled = True
        self._speaker_on = False

        # Inbound candidates per call id, in arrival order
        self._candidate_buffers: Dict[str, Deque[IceCandidate]] = {}
        self._candidates_ready = False

        # Reconnection
        self._reconnect_attempts = 0
        self._renegotiated = asyncio.Event()

        # Background tasks
        self._ring_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # One handler set per subscribed call id
        self._handlers: Dict[str, SignalingHandlers] = {}

    # =========================================================================
    # State accessors
    # =========================================================================

    def initialize(self, user_id: str):
        """Bind to an authenticated identity. Idempotent."""
        if not user_id:
            raise InvalidPeer("User id must not be empty")
        if self.user_id == user_id:
            return
        if self.in_call:
            raise AlreadyInCall("Cannot change identity during a call")
        self.user_id = user_id
        self.signaling.initialize(user_id)
        self.logger.info(f"Call service initialized for {user_id}")

    def _require_initialized(self) -> str:
        if not self.user_id:
            raise NotInitialized("CallService.initialize() not called")
        return self.user_id

    @property
    def current_call(self) -> Optional[CallRecord]:
        return self._call

    @property
    def in_call(self) -> bool:
        return self._call is not None or self._setting_up

    @property
    def role(self) -> Optional[str]:
        return self._role

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def video_enabled(self) -> bool:
        return self._video_enabled

    @property
    def speaker_on(self) -> bool:
        return self._speaker_on

    @property
    def peer(self):
        return self._peer

    @property
    def local_media(self):
        return self._media

    @property
    def remote_track(self):
        return self._remote_track

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def _peer_id(self) -> str:
        return self._call.peer_of(self.user_id)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def initiate_call(self, peer_id: str, media_kind: MediaKind = MediaKind.AUDIO) -> CallHandle:
        """
        Start an outbound call.

        Raises:
            InvalidPeer: peer_id empty or equal to self
            AlreadyInCall: a call is in progress
            PermissionDenied: local media refused
            PersistenceFailure: call row could not be written
            ConnectionFailed: peer connection setup failed
        """
        user_id = self._require_initialized()
        if not peer_id or peer_id == user_id:
            raise InvalidPeer(f"Cannot call {peer_id!r}")
        if self.in_call:
            raise AlreadyInCall("Another call is already in progress")

        media_kind = MediaKind(media_kind)
        self.logger.info(f"Starting {media_kind.value} call to {peer_id}")
        self._setting_up = True
        try:
            media = await self.media_source.acquire(video=media_kind is MediaKind.VIDEO)
            self._media = media
            self._video_enabled = True

            call = await self.signaling.create_call(peer_id, generate_room_id(self.clock()), media_kind)
            self._call = call
            self._role = ROLE_CALLER
            self._answered = False

            peer = self._create_peer(call.id)
            offer = await peer.create_offer()
            self._call = await self.signaling.send_offer(call.id, offer, peer_id)

            await self.signaling.subscribe_to_call(call.id, self._handlers_for(call.id))
        except Exception as e:
            self.logger.error(f"Failed to start call to {peer_id}: {e}", exc_info=True)
            await self._release()
            if isinstance(e, CallError):
                raise
            raise ConnectionFailed(f"Call setup failed: {e}") from e
        finally:
            self._setting_up = False

        self._ring_task = asyncio.ensure_future(self._ring_timeout(call.id))
        self.logger.debug(f"Started {self.config.ring_timeout}s ring timer for call {call.id}")
        await self.events.emit(CallEvent(call.id, CallEventKind.RINGING, {'peer_id': peer_id}))

        return CallHandle(
            id=call.id, room_id=call.room_id, status=self._call.status,
            peer_id=peer_id, call_type=media_kind,
        )

    async def cancel(self):
        """Caller hangs up before the call is answered (ringing → cancelled)."""
        if self._call is None or self._role != ROLE_CALLER or self._call.status is not CallStatus.RINGING:
            raise NotInCall("No outgoing ringing call to cancel")
        await self.end_call()

    async def _ring_timeout(self, call_id: str):
        await asyncio.sleep(self.config.ring_timeout)
        if self._call is None or self._call.id != call_id or self._call.status is not CallStatus.RINGING:
            return

        self.logger.warning(f"Outgoing call timeout ({self.config.ring_timeout}s): {call_id}")
        try:
            await self.signaling.update_call_status(call_id, CallStatus.MISSED)
        except InvalidTransition as e:
            # Answered (or ended) while the timer fired; the row change drives us
            self.logger.debug(f"Missed not written for {call_id}: {e}")
            return
        except CallError as e:
            self.logger.error(f"Failed to mark call {call_id} missed: {e}")

        await self._release()
        await self._emit_terminal(call_id, CallStatus.MISSED)

    # =========================================================================
    # Inbound
    # =========================================================================

    async def receive_incoming(self, call: CallRecord):
        """
        Subscribe to an inbound ringing call before it is answered, so
        candidates that arrive early are buffered rather than lost.
        """
        user_id = self._require_initialized()
        if call.receiver_id != user_id or call.status is not CallStatus.RINGING:
            return
        self._candidate_buffers.setdefault(call.id, deque())
        await self.signaling.subscribe_to_call(call.id, self._handlers_for(call.id))
        self.logger.debug(f"Watching inbound call {call.id} from {call.caller_id}")

    async def discard_incoming(self, call_id: str):
        """Drop the pre-subscription and buffered candidates of an unanswered call."""
        self._candidate_buffers.pop(call_id, None)
        self._handlers.pop(call_id, None)
        await self.signaling.unsubscribe_from_call(call_id)

    async def answer_call(self, call_id: str) -> CallRecord:
        """
        Answer an inbound ringing call.

        Raises:
            AlreadyInCall, MissingOffer, PermissionDenied, PersistenceFailure,
            InvalidTransition (call no longer ringing), ConnectionFailed
        """
        user_id = self._require_initialized()
        if self.in_call:
            raise AlreadyInCall("Another call is already in progress")

        self._setting_up = True
        try:
            call = await self.signaling.get_call(call_id)
            if call.receiver_id != user_id:
                raise InvalidPeer(f"Call {call_id} is not addressed to {user_id}")
            if call.status is not CallStatus.RINGING:
                raise InvalidTransition(call_id, CallStatus.ACTIVE, call.status)
            offer = call.offer
            if offer is None:
                raise MissingOffer(f"Call {call_id} has no session offer")

            self.logger.info(f"Answering call {call_id} from {call.caller_id}")
            self._media = await self.media_source.acquire(video=call.call_type is MediaKind.VIDEO)
            self._video_enabled = True
            self._call = call
            self._role = ROLE_RECEIVER
            self._candidate_buffers.setdefault(call_id, deque())

            peer = self._create_peer(call_id)
            await peer.set_remote_description(offer)
            await self._flush_candidates(call_id)

            answer = await peer.create_answer()
            self._call = await self.signaling.send_answer(call_id, answer, call.caller_id)

            await self.signaling.subscribe_to_call(call_id, self._handlers_for(call_id))
        except Exception as e:
            self.logger.error(f"Failed to answer call {call_id}: {e}", exc_info=True)
            await self._release(call_id)
            if isinstance(e, CallError):
                raise
            raise ConnectionFailed(f"Answer failed: {e}") from e
        finally:
            self._setting_up = False

        self._mark_answered()
        await self.events.emit(CallEvent(call_id, CallEventKind.ANSWERED, {'peer_id': call.caller_id}))
        return self._call

    async def decline(self, call_id: str) -> CallRecord:
        """Receiver declines an inbound ringing call (ringing → rejected)."""
        self._require_initialized()
        if self._call is not None and self._call.id == call_id:
            raise AlreadyInCall(f"Call {call_id} is already answered; use end_call()")
        try:
            record = await self.signaling.update_call_status(call_id, CallStatus.REJECTED)
        finally:
            await self.discard_incoming(call_id)
        self.logger.info(f"Declined call {call_id}")
        return record

    # =========================================================================
    # Peer connection
    # =========================================================================

    def _create_peer(self, call_id: str):
        """Build a peer connection for call_id and attach local tracks."""
        slot: Dict[str, Any] = {}
        peer = self.peer_factory.create(
            on_ice_candidate=lambda candidate: self._on_local_candidate(slot.get('peer'), call_id, candidate),
            on_connection_state=lambda state: self._on_connection_state(slot.get('peer'), call_id, state),
            on_track=lambda track: self._on_remote_track(slot.get('peer'), call_id, track),
        )
        slot['peer'] = peer
        if self._media is not None:
            for track in self._media.tracks:
                peer.add_track(track)
        self._peer = peer
        self._candidates_ready = False
        return peer

    async def _close_peer(self):
        peer, self._peer = self._peer, None
        self._candidates_ready = False
        if peer is None:
            return
        try:
            await peer.close()
        except Exception as e:
            self.logger.error(f"Error closing peer connection: {e}", exc_info=True)

    def _is_current(self, peer, call_id: str) -> bool:
        return peer is not None and peer is self._peer and self._call is not None and self._call.id == call_id

    async def _on_local_candidate(self, peer, call_id: str, candidate: Optional[IceCandidate]):
        if candidate is None or not self._is_current(peer, call_id):
            return
        try:
            await self.signaling.send_candidate(call_id, candidate, self._peer_id())
        except Exception as e:
            self.logger.error(f"Failed to send ICE candidate for {call_id}: {e}", exc_info=True)

    async def _on_remote_track(self, peer, call_id: str, track):
        if not self._is_current(peer, call_id):
            return
        self._remote_track = track
        if track.kind == 'audio' and self.audio_output is not None:
            try:
                await self.audio_output.play(track)
            except Exception as e:
                self.logger.error(f"Failed to play remote audio: {e}", exc_info=True)
        await self.events.emit(RemoteStreamReady(call_id, track))

    async def _on_connection_state(self, peer, call_id: str, state):
        if not self._is_current(peer, call_id):
            self.logger.debug(f"Ignoring state {state} from stale peer connection ({call_id})")
            return

        state = ConnectionState.normalize(state)
        if state is None:
            return
        await self.events.emit(ConnectionStateChanged(call_id, state))

        if state is ConnectionState.CONNECTED:
            if self._reconnect_attempts:
                self.logger.info(f"Call {call_id} reconnected after {self._reconnect_attempts} attempt(s)")
            self._reconnect_attempts = 0
        elif state in (ConnectionState.FAILED, ConnectionState.DISCONNECTED):
            if self._call.status is not CallStatus.ACTIVE:
                self.logger.warning(f"Connection {state.value} before call {call_id} was answered")
                return
            if self._reconnect_task is None or self._reconnect_task.done():
                self._renegotiated.clear()
                self._reconnect_task = asyncio.ensure_future(self._reconnect(call_id))

    # =========================================================================
    # Candidate buffering
    # =========================================================================

    async def _on_remote_candidate(self, call_id: str, candidate: IceCandidate):
        if self._candidates_ready and self._peer is not None and self._call is not None \
                and self._call.id == call_id:
            await self._apply_candidate(candidate)
            return
        self._candidate_buffers.setdefault(call_id, deque()).append(candidate)
        self.logger.debug(
            f"Queued ICE candidate for {call_id} (queue_size={len(self._candidate_buffers[call_id])})"
        )

    async def _apply_candidate(self, candidate: IceCandidate):
        try:
            await self._peer.add_ice_candidate(candidate)
        except Exception as e:
            self.logger.warning(f"Failed to apply ICE candidate {candidate.candidate[:50]}: {e}")

    async def _flush_candidates(self, call_id: str):
        """Apply buffered candidates in arrival order, then accept new ones directly."""
        buffer = self._candidate_buffers.setdefault(call_id, deque())
        if buffer:
            self.logger.debug(f"Flushing {len(buffer)} queued ICE candidates for {call_id}")
        # Candidates arriving during an await land at the back of the same deque
        while buffer:
            await self._apply_candidate(buffer.popleft())
        self._candidate_buffers.pop(call_id, None)
        self._candidates_ready = True

    # =========================================================================
    # Signaling callbacks
    # =========================================================================

    def _handlers_for(self, call_id: str) -> SignalingHandlers:
        handlers = self._handlers.get(call_id)
        if handlers is None:
            handlers = SignalingHandlers(
                on_offer=self._on_offer,
                on_answer=self._on_answer,
                on_candidate=self._on_remote_candidate,
                on_call_updated=self._on_call_updated,
                on_call_ended=self._on_call_ended,
                on_call_event=self._on_peer_event,
            )
            self._handlers[call_id] = handlers
        return handlers

    async def _on_offer(self, call_id: str, offer: SessionDescription, record: CallRecord):
        # Initial offers are read from the row by answer_call; only
        # renegotiation offers on an answered call matter here
        if self._call is None or self._call.id != call_id or self._role != ROLE_RECEIVER:
            return
        if self._call.status is not CallStatus.ACTIVE or self._setting_up:
            return

        self.logger.info(f"Renegotiation offer for call {call_id}, rebuilding connection")
        try:
            await self._close_peer()
            peer = self._create_peer(call_id)
            await peer.set_remote_description(offer)
            await self._flush_candidates(call_id)
            answer = await peer.create_answer()
            self._call = await self.signaling.send_answer(call_id, answer, record.caller_id, activate=False)
            self._renegotiated.set()
        except Exception as e:
            self.logger.error(f"Renegotiation failed for call {call_id}: {e}", exc_info=True)

    async def _on_answer(self, call_id: str, answer: SessionDescription, record: CallRecord):
        if self._call is None or self._call.id != call_id or self._role != ROLE_CALLER:
            return
        if self._peer is None:
            self.logger.warning(f"Answer for call {call_id} but no peer connection")
            return
        try:
            await self._peer.set_remote_description(answer)
        except Exception as e:
            self.logger.error(f"Failed to apply answer for call {call_id}: {e}", exc_info=True)
            return
        await self._flush_candidates(call_id)

    async def _on_call_updated(self, record: CallRecord, old: Optional[CallRecord]):
        if self._call is None or self._call.id != record.id:
            return
        self._call = record
        if record.status is CallStatus.ACTIVE and self._role == ROLE_CALLER and not self._answered:
            self._mark_answered()
            self.logger.info(f"Call {record.id} answered by {record.receiver_id}")
            await self.events.emit(CallEvent(record.id, CallEventKind.ANSWERED, {'peer_id': record.receiver_id}))

    async def _on_call_ended(self, record: CallRecord):
        if self._call is None or self._call.id != record.id:
            # Inbound call resolved before we answered it
            await self.discard_incoming(record.id)
            return

        self.logger.info(f"Peer moved call {record.id} to {record.status.value}, tearing down")
        self._call = record
        await self._release()
        await self._emit_terminal(record.id, record.status, record)

    async def _on_peer_event(self, call_id: str, event: str, data: Dict[str, Any]):
        try:
            kind = CallEventKind(event)
        except ValueError:
            self.logger.warning(f"Unknown call event from peer: {event}")
            return
        await self.events.emit(CallEvent(call_id, kind, dict(data, remote=True)))

    # =========================================================================
    # Active call
    # =========================================================================

    def _mark_answered(self):
        self._answered = True
        self._cancel_task(self._ring_task)
        self._ring_task = None
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.ensure_future(self._tick(self._call.id))

    async def _tick(self, call_id: str):
        """Emit elapsed-seconds events while the call is active."""
        while self._call is not None and self._call.id == call_id:
            await asyncio.sleep(self.config.tick_interval)
            call = self._call
            if call is None or call.id != call_id or call.status is not CallStatus.ACTIVE:
                return
            start = call.started_at if call.started_at is not None else call.initiated_at
            elapsed = max(0, int(self.clock() - start)) if start is not None else 0
            await self.events.emit(CallEvent(call_id, CallEventKind.DURATION, {'duration': elapsed}))

    def toggle_mute(self) -> bool:
        """Flip enabled on local audio tracks. Returns the new muted state."""
        if self._media is None:
            return False
        self._muted = not self._muted
        for track in self._media.audio_tracks:
            track.enabled = not self._muted
        self.logger.debug(f"Microphone {'muted' if self._muted else 'unmuted'}")
        return self._muted

    def toggle_video(self) -> bool:
        """Flip enabled on local video tracks. Returns whether video is now on."""
        if self._media is None or not self._media.video_tracks:
            return False
        self._video_enabled = not self._video_enabled
        for track in self._media.video_tracks:
            track.enabled = self._video_enabled
        self.logger.debug(f"Camera {'on' if self._video_enabled else 'off'}")
        return self._video_enabled

    async def _apply_route(self, speaker_on: bool):
        if self.audio_output is not None:
            await self.audio_output.set_route(AudioRoute.SPEAKER if speaker_on else AudioRoute.EARPIECE)

    async def toggle_speaker_routing(self) -> bool:
        """
        Switch remote audio between speaker and earpiece and persist the hint.

        Returns the new speaker-on state, or the previous one if the switch
        could not be applied or persisted.
        """
        if self._call is None:
            raise NotInCall("No call to route audio for")

        call_id = self._call.id
        previous = self._speaker_on
        requested = not previous

        try:
            await self._apply_route(requested)
        except Exception as e:
            self.logger.error(f"Failed to switch audio route: {e}", exc_info=True)
            return previous
        self._speaker_on = requested

        try:
            route = AudioRoute.SPEAKER if requested else AudioRoute.EARPIECE
            record = await self.signaling.update_fields(call_id, {'audio_mode': route})
            if self._call is not None and self._call.id == call_id:
                self._call = record
        except CallError as e:
            self.logger.warning(f"Failed to persist audio route for {call_id}, rolling back: {e}")
            self._speaker_on = previous
            try:
                await self._apply_route(previous)
            except Exception as route_error:
                self.logger.error(f"Failed to restore audio route: {route_error}", exc_info=True)
            return previous

        await self.events.emit(SpeakerRoutingChanged(call_id, requested))
        return requested

    # =========================================================================
    # Reconnection
    # =========================================================================

    async def _reconnect(self, call_id: str):
        bound = self.config.reconnect_attempts
        while self._call is not None and self._call.id == call_id:
            if self._reconnect_attempts >= bound:
                self.logger.error(f"Reconnection failed after {bound} attempts, ending call {call_id}")
                await self.events.emit(CallEvent(call_id, CallEventKind.FAILED, {'attempts': bound}))
                await self.end_call()
                return

            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            self.logger.info(f"Reconnecting call {call_id} (attempt {attempt}/{bound})")
            await self.events.emit(CallEvent(call_id, CallEventKind.RECONNECTING, {'attempt': attempt, 'max': bound}))
            await self._notify_peer(CallEventKind.RECONNECTING, {'attempt': attempt})

            await asyncio.sleep(self.config.reconnect_delay)
            if self._call is None or self._call.id != call_id:
                return

            try:
                if self._role == ROLE_CALLER:
                    await self._restart_as_caller(call_id)
                    return
                # Receiver waits for the caller's fresh offer (set by _on_offer)
                await asyncio.wait_for(self._renegotiated.wait(), timeout=self.config.ring_timeout)
                return
            except asyncio.TimeoutError:
                self.logger.warning(f"No renegotiation offer for call {call_id}")
            except CallError as e:
                self.logger.warning(f"Reconnect attempt {attempt} for {call_id} failed: {e}")
            except Exception as e:
                self.logger.error(f"Reconnect attempt {attempt} for {call_id} failed: {e}", exc_info=True)

    async def _restart_as_caller(self, call_id: str):
        """Discard the connection, build a fresh one and republish an ICE-restart offer."""
        await self._close_peer()
        peer = self._create_peer(call_id)
        offer = await peer.create_offer(ice_restart=True)
        self._call = await self.signaling.send_offer(call_id, offer, self._peer_id())
        self.logger.debug(f"Republished offer for call {call_id}")

    async def _notify_peer(self, kind: CallEventKind, data: Optional[Dict[str, Any]] = None):
        if self._call is None:
            return
        try:
            await self.signaling.send_call_event(self._call.id, kind, self._peer_id(), data)
        except Exception as e:
            self.logger.warning(f"Failed to notify peer of {kind.value}: {e}")

    # =========================================================================
    # Teardown
    # =========================================================================

    def _final_status(self) -> Optional[CallStatus]:
        status = self._call.status
        if status is CallStatus.RINGING:
            return CallStatus.CANCELLED if self._role == ROLE_CALLER else CallStatus.REJECTED
        if status is CallStatus.ACTIVE:
            return CallStatus.ENDED
        return None

    async def end_call(self):
        """
        Hang up the current call.

        Persists the terminal status (best effort) and then always releases
        the peer connection, local tracks and signaling subscription.
        No-op when there is no call.
        """
        if self._call is None:
            return

        call_id = self._call.id
        status = self._final_status()
        record = None

        if status is not None:
            try:
                record = await self.signaling.update_call_status(call_id, status)
            except InvalidTransition as e:
                # Row moved under us (e.g. answered while we hung up)
                self.logger.debug(f"{e}, retrying from current row")
                record, status = await self._end_from_current_row(call_id)
            except CallError as e:
                self.logger.error(f"Failed to persist end of call {call_id}: {e}")
            except Exception as e:
                self.logger.error(f"Unexpected error persisting end of call {call_id}: {e}", exc_info=True)

        await self._release()
        await self._emit_terminal(call_id, status or CallStatus.ENDED, record)

    async def _end_from_current_row(self, call_id: str):
        try:
            current = await self.signaling.get_call(call_id)
            if current.status is CallStatus.ACTIVE:
                return await self.signaling.update_call_status(call_id, CallStatus.ENDED), CallStatus.ENDED
            return current, current.status
        except CallError as e:
            self.logger.error(f"Failed to persist end of call {call_id}: {e}")
            return None, None

    def _cancel_task(self, task: Optional[asyncio.Task]):
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _release(self, call_id: Optional[str] = None):
        """Release every local resource of the current call. Never raises."""
        call_id = call_id or (self._call.id if self._call else None)

        # Layer 1: timers
        for task in (self._ring_task, self._tick_task, self._reconnect_task):
            self._cancel_task(task)
        self._ring_task = self._tick_task = self._reconnect_task = None

        # Layer 2: peer connection
        await self._close_peer()

        # Layer 3: local tracks
        media, self._media = self._media, None
        if media is not None:
            try:
                media.stop()
            except Exception as e:
                self.logger.error(f"Error stopping local media: {e}", exc_info=True)

        # Layer 4: remote audio playback
        if self.audio_output is not None:
            try:
                await self.audio_output.stop()
            except Exception as e:
                self.logger.error(f"Error stopping audio output: {e}", exc_info=True)

        # Layer 5: signaling subscription
        if call_id is not None:
            self._candidate_buffers.pop(call_id, None)
            self._handlers.pop(call_id, None)
            try:
                await self.signaling.unsubscribe_from_call(call_id)
            except Exception as e:
                self.logger.error(f"Error releasing subscription for {call_id}: {e}", exc_info=True)

        # Layer 6: call state
        self._call = None
        self._role = None
        self._remote_track = None
        self._answered = False
        self._muted = False
        self._video_enabled = True
        self._speaker_on = False
        self._reconnect_attempts = 0
        self.logger.debug(f"Call resources released ({call_id})")

    async def _emit_terminal(self, call_id: str, status: CallStatus, record: Optional[CallRecord] = None):
        kind, reason = TERMINAL_EVENTS.get(status, (CallEventKind.ENDED, 'Call ended'))
        data: Dict[str, Any] = {'status': status.value, 'reason': reason}
        if record is not None and record.duration is not None:
            data['duration'] = record.duration
        await self.events.emit(CallEvent(call_id, kind, data))

    async def shutdown(self):
        """End any call and release every subscription (session stop)."""
        await self.end_call()
        for call_id in list(self._handlers):
            await self.discard_incoming(call_id)
