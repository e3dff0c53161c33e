"""
CallSession - owns every call component for one signed-in identity.

Construct one per session and pass it to whatever needs to place or take
calls:

    session = CallSession(load_config())
    await session.start('alice@example.com')
    handle = await session.service.initiate_call('bob@example.com')
    ...
    await session.stop()

Any component can be injected (tests use an in-memory store, LocalFeed and
fake peers/devices); the rest are built from config.
"""

import logging
import time
from typing import Callable, Optional

from .call_service import CallService
from .config import CallConfig, load_config
from .incoming import IncomingCallListener
from .signaling import SignalingManager
from .widget import build_join_url
from ..version import get_version_string
from ..db.database import Database
from ..feed.local import LocalFeed
from ..utils.logger import setup_main_logger, setup_user_logger, cleanup_old_logs
from ..utils.paths import get_paths


class CallSession:
    """
    Per-session owner of store, feed, signaling, call service and listener.

    Args:
        config: Call settings
        store: CallStore (default: SQLite at config.database_path / paths)
        feed: RealtimeFeed (default: XMPP when config.feed.jid is set, else LocalFeed)
        peer_factory: Peer connection factory (default: ringline_hook.PeerBridge)
        media_source: Local capture (default: ringline_hook.MediaSource)
        audio_output: Remote playback (default: ringline_hook.AudioOutput)
        profile_lookup: Caller profile lookup for incoming calls
        logger: Logger instance
    """

    def __init__(self, config: Optional[CallConfig] = None, store=None, feed=None,
                 peer_factory=None, media_source=None, audio_output=None,
                 profile_lookup: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or CallConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.user_id: Optional[str] = None
        self.started = False

        self.store = store if store is not None else Database(self.config.database_path, clock=clock)
        self.feed = feed if feed is not None else self._build_feed()
        self.store.attach_feed(self.feed)

        if peer_factory is None or media_source is None or audio_output is None:
            from ringline_hook import PeerBridge, MediaSource, AudioOutput, DeviceManager
            devices = DeviceManager(logger=self.logger)
            peer_factory = peer_factory or PeerBridge(self.config.ice_servers, logger=self.logger)
            media_source = media_source or MediaSource(
                self.config.devices.microphone, self.config.devices.camera, devices, logger=self.logger
            )
            audio_output = audio_output or AudioOutput(
                self.config.devices.speaker, self.config.devices.earpiece, devices, logger=self.logger
            )

        self.signaling = SignalingManager(self.store, self.feed, logger=self.logger, clock=clock)
        self.service = CallService(
            self.signaling, peer_factory, media_source, audio_output,
            config=self.config, logger=self.logger, clock=clock,
        )
        self.listener = IncomingCallListener(
            self.store, self.feed, self.service, self.signaling, config=self.config,
            profile_lookup=profile_lookup, logger=self.logger, clock=clock,
        )

    def _build_feed(self):
        settings = self.config.feed
        if not settings.jid:
            return LocalFeed(logger=self.logger)

        from ..feed.xmpp import SignalClient, XmppFeed
        client = SignalClient(settings.jid, settings.password, logger=self.logger)
        return XmppFeed(client, settings.jid, replica=self.store, logger=self.logger)

    @property
    def events(self):
        return self.service.events

    async def start(self, user_id: str):
        """
        Bring the session up for user_id.

        Raises:
            TransportNotReady: feed not ready within config.ready_timeout
            PersistenceFailure: store could not be initialized
        """
        if self.started:
            return

        initialize = getattr(self.store, 'initialize', None)
        if initialize is not None:
            initialize()

        client = getattr(self.feed, 'client', None)
        if client is not None and not self.feed.is_ready:
            self.logger.info(f"Connecting signal feed for {user_id}")
            client.connect()
        await self.feed.wait_ready(self.config.ready_timeout)

        self.user_id = user_id
        self.service.initialize(user_id)
        await self.listener.start(user_id)
        self.started = True
        self.logger.info(f"Call session started for {user_id}")

    async def stop(self):
        """End any call, stop listening and release every subscription."""
        if not self.started:
            return
        self.started = False

        # Layer 1: call in progress
        try:
            await self.service.shutdown()
        except Exception as e:
            self.logger.error(f"Error ending call on stop: {e}", exc_info=True)

        # Layer 2: incoming listener
        try:
            await self.listener.stop()
        except Exception as e:
            self.logger.error(f"Error stopping incoming listener: {e}", exc_info=True)

        # Layer 3: subscriptions and transport
        await self.signaling.cleanup()
        await self.feed.close()
        client = getattr(self.feed, 'client', None)
        if client is not None:
            client.disconnect()

        self.logger.info(f"Call session stopped for {self.user_id}")

    def join_url(self, room: str, display_name: Optional[str] = None) -> str:
        """Hosted widget URL for a call's room."""
        return build_join_url(self.config.widget_base_url, room, display_name)


async def open_session(user_id: str, profile: str = 'default', **components) -> CallSession:
    """
    Load settings for a profile, set up logging and start a session.

    Args:
        user_id: Authenticated identity
        profile: Path profile (config, database and logs live under it)
        **components: Passed through to CallSession (store, feed, ...)
    """
    paths = get_paths(profile)
    config = load_config(paths.config_path)
    if config.database_path is None:
        config.database_path = str(paths.database_path)

    main_logger = setup_main_logger(config.log_level, paths=paths)
    main_logger.info(f"{get_version_string()} starting (profile: {profile})")
    cleanup_old_logs(config.log_retention_days, paths=paths)
    user_logger = setup_user_logger(user_id, config.log_level, paths=paths)

    components.setdefault('logger', user_logger)
    session = CallSession(config, **components)
    await session.start(user_id)
    return session
