"""
IncomingCallListener - detects calls addressed to the local identity.

Watches INSERTs of call rows with receiver_id = self, shows them to the UI
(IncomingCall), pre-subscribes the call service so early candidates are
buffered, and marks unanswered calls missed after the ring timeout.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import CallConfig
from .constants import CallStatus, ROW_INSERT, ROW_UPDATE
from .errors import CallError, InvalidTransition, NotInitialized
from .events import IncomingCall, IncomingCallDismissed
from .model import CallRecord, RowChange


class IncomingCallListener:
    """
    Inbound call detection for one identity.

    Args:
        store: CallStore (existing-call lookup)
        feed: RealtimeFeed carrying row changes
        service: CallService (busy check, pre-subscription, answer/decline)
        signaling: SignalingManager (missed writes)
        config: Call settings
        profile_lookup: Optional callable(user_id) -> {'username', 'avatar_url'}
            (sync or async) for the caller's display name
        logger: Logger instance
    """

    def __init__(self, store, feed, service, signaling, config: Optional[CallConfig] = None,
                 profile_lookup: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.feed = feed
        self.service = service
        self.signaling = signaling
        self.config = config or CallConfig()
        self.profile_lookup = profile_lookup
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.user_id: Optional[str] = None
        self._channel = None
        self._timers: Dict[str, asyncio.Task] = {}
        self._ringing: Dict[str, CallRecord] = {}

    @property
    def events(self):
        return self.service.events

    @property
    def pending_calls(self) -> Dict[str, CallRecord]:
        """Inbound calls currently ringing, by call id."""
        return dict(self._ringing)

    async def start(self, user_id: str):
        """Subscribe to inbound calls and pick up one already ringing."""
        if self._channel is not None:
            return
        self.user_id = user_id
        channel = self.feed.channel(f'incoming-{user_id}')
        channel.on_row('receiver_id', user_id, self._on_row_change)
        await channel.subscribe()
        self._channel = channel
        self.logger.info(f"Listening for incoming calls to {user_id}")

        await self.check_existing_calls()

    async def stop(self):
        for call_id in list(self._timers):
            self._cancel_timer(call_id)
        self._ringing.clear()
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
        self.logger.debug("Incoming call listener stopped")

    async def check_existing_calls(self):
        """Surface a ringing call that was created shortly before we started."""
        if not self.user_id:
            raise NotInitialized("IncomingCallListener.start() not called")
        since = self.clock() - self.config.missed_lookback
        try:
            calls = await self.store.find_ringing_calls(self.user_id, since)
        except CallError as e:
            self.logger.error(f"Failed to check for existing calls: {e}")
            return
        if calls:
            # Newest first; only one can be shown
            self.logger.info(f"Found existing ringing call {calls[0].id}")
            await self._on_ringing(calls[0])

    # =========================================================================
    # Row changes
    # =========================================================================

    async def _on_row_change(self, change: RowChange):
        record = change.new
        if change.event == ROW_INSERT:
            if record.status is CallStatus.RINGING:
                await self._on_ringing(record)
        elif change.event == ROW_UPDATE:
            if record.id in self._ringing and record.status is not CallStatus.RINGING:
                self._cancel_timer(record.id)
                self._ringing.pop(record.id, None)
                self.logger.debug(f"Incoming call {record.id} left ringing ({record.status.value})")
                await self.events.emit(IncomingCallDismissed(record.id, record.status))

    async def _on_ringing(self, call: CallRecord):
        if call.id in self._ringing:
            return

        if self.service.in_call and self.config.reject_when_busy:
            self.logger.warning(f"Auto-rejecting incoming call (busy): {call.id} from {call.caller_id}")
            try:
                await self.signaling.update_call_status(call.id, CallStatus.REJECTED)
            except CallError as e:
                self.logger.error(f"Error sending busy reject: {e}")
            return

        self.logger.info(f"Incoming {call.call_type.value} call from {call.caller_id} ({call.id})")
        self._ringing[call.id] = call

        try:
            await self.service.receive_incoming(call)
        except CallError as e:
            self.logger.error(f"Failed to subscribe to incoming call {call.id}: {e}")

        remaining = self.config.ring_timeout
        if call.initiated_at is not None:
            remaining = max(0.0, call.initiated_at + self.config.ring_timeout - self.clock())
        self._timers[call.id] = asyncio.ensure_future(self._missed_timeout(call.id, remaining))
        self.logger.debug(f"Started {remaining:.0f}s timeout timer for incoming call: {call.id}")

        name, avatar = await self._caller_profile(call.caller_id)
        await self.events.emit(IncomingCall(call, caller_name=name, caller_avatar=avatar))

    async def _caller_profile(self, caller_id: str):
        if self.profile_lookup is None:
            return None, None
        try:
            profile = self.profile_lookup(caller_id)
            if asyncio.iscoroutine(profile):
                profile = await profile
        except Exception as e:
            self.logger.warning(f"Profile lookup failed for {caller_id}: {e}")
            return None, None
        profile: Dict[str, Any] = profile or {}
        return profile.get('username'), profile.get('avatar_url')

    async def _missed_timeout(self, call_id: str, delay: float):
        await asyncio.sleep(delay)
        self._timers.pop(call_id, None)
        if call_id not in self._ringing:
            return

        self.logger.warning(f"Incoming call timeout ({self.config.ring_timeout}s): {call_id}")
        try:
            # Conditional: no-op if answered or ended meanwhile
            await self.signaling.update_call_status(call_id, CallStatus.MISSED)
        except InvalidTransition as e:
            self.logger.debug(f"Call {call_id} already resolved: {e}")
        except CallError as e:
            self.logger.error(f"Failed to mark call {call_id} missed: {e}")

        # Signaling drops our own row writes, so release the pre-subscription here
        await self.service.discard_incoming(call_id)
        if self._ringing.pop(call_id, None) is not None:
            await self.events.emit(IncomingCallDismissed(call_id, CallStatus.MISSED))

    def _cancel_timer(self, call_id: str):
        task = self._timers.pop(call_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # =========================================================================
    # User actions
    # =========================================================================

    async def accept(self, call_id: str) -> CallRecord:
        """Answer a ringing inbound call."""
        self._cancel_timer(call_id)
        try:
            record = await self.service.answer_call(call_id)
        finally:
            self._ringing.pop(call_id, None)
        return record

    async def decline(self, call_id: str) -> CallRecord:
        """Decline a ringing inbound call."""
        self._cancel_timer(call_id)
        try:
            record = await self.service.decline(call_id)
        finally:
            self._ringing.pop(call_id, None)
        return record
