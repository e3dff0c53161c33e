"""
SignalingManager - call signaling over the record store and change feed.

Responsibilities:
- Durable path: session offer/answer and status transitions are written to
  the call row; the peer learns about them from row change events.
- Fast path: ICE candidates and call-level events travel over the
  ephemeral side-channel and are never persisted.
- One feed channel per call id, released exactly once.
- Self-originated events (own broadcasts, own row writes) are dropped.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    CallStatus, MediaKind, ALLOWED_TRANSITIONS, BROADCAST_ICE_CANDIDATE,
    BROADCAST_CALL_EVENT, ROW_UPDATE,
)
from .errors import NotInitialized, PersistenceFailure
from .model import CallRecord, SessionDescription, IceCandidate, RowChange, compute_duration
from ..feed.base import Channel, invoke_callback


@dataclass(eq=False)
class SignalingHandlers:
    """
    Callbacks for one call subscription (sync or async).

    on_offer(call_id, description, record)
    on_answer(call_id, description, record)
    on_candidate(call_id, candidate)
    on_call_updated(record, old_record)
    on_call_ended(record)
    on_call_event(call_id, event, data)
    """
    on_offer: Optional[Callable] = None
    on_answer: Optional[Callable] = None
    on_candidate: Optional[Callable] = None
    on_call_updated: Optional[Callable] = None
    on_call_ended: Optional[Callable] = None
    on_call_event: Optional[Callable] = None


@dataclass(eq=False)
class _Subscription:
    call_id: str
    channel: Channel
    handlers: List[SignalingHandlers]


def channel_name(call_id: str) -> str:
    return f'call-{call_id}'


class SignalingManager:
    """
    Publishes and receives session descriptions and candidates per call id.

    Usage:
        signaling = SignalingManager(store, feed)
        signaling.initialize(user_id)
        await signaling.subscribe_to_call(call_id, SignalingHandlers(on_answer=...))
        await signaling.send_offer(call_id, offer, receiver_id)
        ...
        await signaling.unsubscribe_from_call(call_id)
    """

    def __init__(self, store, feed, logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            store: CallStore
            feed: RealtimeFeed
            logger: Logger instance
            clock: Time source for derived timestamps
        """
        self.store = store
        self.feed = feed
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.user_id: Optional[str] = None
        self._subscriptions: Dict[str, _Subscription] = {}

    def initialize(self, user_id: str):
        """Bind the local identity used as sender and for self-event filtering."""
        if self.user_id == user_id:
            return
        if self.user_id is not None:
            self.logger.warning(f"Signaling identity changed: {self.user_id} → {user_id}")
        self.user_id = user_id
        self.logger.debug(f"Signaling initialized for {user_id}")

    def _require_user(self) -> str:
        if not self.user_id:
            raise NotInitialized("SignalingManager.initialize() not called")
        return self.user_id

    def is_subscribed(self, call_id: str) -> bool:
        return call_id in self._subscriptions

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe_to_call(self, call_id: str, handlers: SignalingHandlers) -> Channel:
        """
        Open (or reuse) the subscription for call_id and register handlers.

        Registering the same handlers object twice is a no-op.
        """
        self._require_user()

        subscription = self._subscriptions.get(call_id)
        if subscription is not None:
            if not any(h is handlers for h in subscription.handlers):
                subscription.handlers.append(handlers)
            self.logger.debug(f"Reusing signaling subscription for call {call_id}")
            return subscription.channel

        channel = self.feed.channel(channel_name(call_id))
        subscription = _Subscription(call_id=call_id, channel=channel, handlers=[handlers])
        channel.on_row('id', call_id, lambda change: self._on_row_change(subscription, change), event=ROW_UPDATE)
        channel.on_broadcast(BROADCAST_ICE_CANDIDATE, lambda payload: self._on_candidate(subscription, payload))
        channel.on_broadcast(BROADCAST_CALL_EVENT, lambda payload: self._on_call_event(subscription, payload))

        # Registered before subscribe() so early traffic has somewhere to go
        self._subscriptions[call_id] = subscription
        try:
            await channel.subscribe()
        except Exception:
            self._subscriptions.pop(call_id, None)
            raise

        self.logger.debug(f"Subscribed to signaling for call {call_id}")
        return channel

    async def unsubscribe_from_call(self, call_id: str):
        """Release the subscription for call_id. Safe to call more than once."""
        subscription = self._subscriptions.pop(call_id, None)
        if subscription is None:
            return
        subscription.handlers.clear()
        await subscription.channel.unsubscribe()
        self.logger.debug(f"Unsubscribed from signaling for call {call_id}")

    async def cleanup(self):
        """Release every subscription."""
        for call_id in list(self._subscriptions):
            try:
                await self.unsubscribe_from_call(call_id)
            except Exception as e:
                self.logger.error(f"Error releasing subscription for call {call_id}: {e}", exc_info=True)

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    async def _fire(self, subscription: _Subscription, name: str, *args):
        for handlers in list(subscription.handlers):
            callback = getattr(handlers, name)
            if callback is not None:
                await invoke_callback(callback, *args, logger=self.logger)

    async def _on_row_change(self, subscription: _Subscription, change: RowChange):
        new, old = change.new, change.old
        if new.updated_by == self.user_id:
            return  # own write

        if new.sdp_offer and (old is None or old.sdp_offer != new.sdp_offer):
            self.logger.debug(f"Offer received for call {new.id}")
            await self._fire(subscription, 'on_offer', new.id, new.offer, new)

        if new.sdp_answer and (old is None or old.sdp_answer != new.sdp_answer):
            self.logger.debug(f"Answer received for call {new.id}")
            await self._fire(subscription, 'on_answer', new.id, new.answer, new)

        await self._fire(subscription, 'on_call_updated', new, old)

        if new.is_terminal and (old is None or not old.is_terminal):
            self.logger.info(f"Call {new.id} ended by {new.updated_by} (status={new.status.value})")
            await self._fire(subscription, 'on_call_ended', new)

    async def _on_candidate(self, subscription: _Subscription, payload: Dict[str, Any]):
        if payload.get('senderId') == self.user_id:
            return
        if payload.get('callId') != subscription.call_id:
            self.logger.warning(f"Candidate for call {payload.get('callId')} on channel of {subscription.call_id}")
            return
        candidate = IceCandidate.from_dict(payload.get('candidate') or {})
        await self._fire(subscription, 'on_candidate', subscription.call_id, candidate)

    async def _on_call_event(self, subscription: _Subscription, payload: Dict[str, Any]):
        if payload.get('senderId') == self.user_id:
            return
        if payload.get('callId') != subscription.call_id:
            return
        await self._fire(subscription, 'on_call_event', subscription.call_id,
                         payload.get('event'), payload.get('data') or {})

    # =========================================================================
    # Durable path (call row)
    # =========================================================================

    async def create_call(self, receiver_id: str, room_id: str,
                          media_kind: MediaKind = MediaKind.AUDIO) -> CallRecord:
        """Insert a ringing call row with the local identity as caller."""
        caller_id = self._require_user()
        return await self.store.insert_call(caller_id, receiver_id, room_id, media_kind)

    async def get_call(self, call_id: str) -> CallRecord:
        return await self.store.get_call(call_id)

    async def send_offer(self, call_id: str, description: SessionDescription,
                         receiver_id: Optional[str] = None) -> CallRecord:
        """Persist the caller's session offer."""
        user_id = self._require_user()
        record = await self.store.update_call(
            call_id, {'sdp_offer': description.to_json()}, updated_by=user_id,
            allowed_from=(CallStatus.RINGING, CallStatus.ACTIVE),
        )
        self.logger.debug(f"Offer stored for call {call_id} (to {receiver_id or record.receiver_id})")
        return record

    async def send_answer(self, call_id: str, description: SessionDescription,
                          receiver_id: Optional[str] = None, activate: bool = True) -> CallRecord:
        """
        Persist the receiver's session answer.

        With activate=True the answer is written together with the
        ringing → active transition and start timestamp. Renegotiation
        answers (activate=False) only replace the description.
        """
        user_id = self._require_user()
        fields = {'sdp_answer': description.to_json()}
        if activate:
            record = await self.update_call_status(call_id, CallStatus.ACTIVE, fields, require_offer=True)
        else:
            record = await self.store.update_call(
                call_id, fields, updated_by=user_id,
                allowed_from=(CallStatus.ACTIVE,), require_offer=True,
            )
        self.logger.debug(f"Answer stored for call {call_id} (to {receiver_id or record.caller_id})")
        return record

    async def update_call_status(self, call_id: str, status: CallStatus,
                                 extra_fields: Optional[Dict[str, Any]] = None,
                                 require_offer: bool = False) -> CallRecord:
        """
        Move a call to `status`, deriving timestamps and duration.

        active: started_at = now (unless given)
        terminal: ended_at = now (unless given); duration from started_at,
        falling back to initiated_at, clamped to >= 0
        """
        user_id = self._require_user()
        status = CallStatus(status)
        fields: Dict[str, Any] = dict(extra_fields or {})
        fields['status'] = status
        now = self.clock()

        if status is CallStatus.ACTIVE:
            fields.setdefault('started_at', now)
        elif status.is_terminal:
            ended_at = fields.setdefault('ended_at', now)
            record = await self.store.get_call(call_id)
            started_at = fields.get('started_at', record.started_at)
            fields['duration'] = compute_duration(started_at, record.initiated_at, ended_at)

        record = await self.store.update_call(
            call_id, fields, updated_by=user_id,
            allowed_from=ALLOWED_TRANSITIONS[status], require_offer=require_offer,
        )
        self.logger.info(f"Call {call_id} → {status.value}")
        return record

    async def update_fields(self, call_id: str, fields: Dict[str, Any]) -> CallRecord:
        """Write non-status columns (e.g. audio_mode) on a live call."""
        user_id = self._require_user()
        return await self.store.update_call(
            call_id, fields, updated_by=user_id,
            allowed_from=(CallStatus.RINGING, CallStatus.ACTIVE),
        )

    # =========================================================================
    # Fast path (side-channel)
    # =========================================================================

    def _channel_for(self, call_id: str) -> Channel:
        subscription = self._subscriptions.get(call_id)
        if subscription is not None:
            return subscription.channel
        # Send-only handle; nothing to release
        return self.feed.channel(channel_name(call_id))

    async def send_candidate(self, call_id: str, candidate: IceCandidate, receiver_id: str):
        """Publish one ICE candidate to the peer (not persisted)."""
        user_id = self._require_user()
        payload = {
            'callId': call_id,
            'candidate': candidate.to_dict(),
            'senderId': user_id,
            'receiverId': receiver_id,
            'timestamp': self.clock(),
        }
        await self._channel_for(call_id).send(BROADCAST_ICE_CANDIDATE, payload)

    async def send_call_event(self, call_id: str, event: str, receiver_id: str,
                              data: Optional[Dict[str, Any]] = None):
        """Publish a call-level event to the peer and append it to the event log."""
        user_id = self._require_user()
        event = getattr(event, 'value', event)
        payload = {
            'callId': call_id,
            'event': event,
            'data': data or {},
            'senderId': user_id,
            'receiverId': receiver_id,
            'timestamp': self.clock(),
        }
        await self._channel_for(call_id).send(BROADCAST_CALL_EVENT, payload)

        try:
            await self.store.log_event(call_id, event, user_id, receiver_id, data)
        except PersistenceFailure as e:
            self.logger.warning(f"Failed to log call event {event} for {call_id}: {e}")
