"""
PeerBridge - peer connection factory over aiortc.

Each call gets a fresh RtcPeer. Callbacks may be sync or async:

    bridge = PeerBridge(ice_servers=[{'urls': ['stun:stun.l.google.com:19302']}])
    peer = bridge.create(
        on_connection_state=lambda state: ...,
        on_track=lambda track: ...,
    )
    peer.add_track(track)
    offer = await peer.create_offer()

aiortc gathers candidates before the local description is returned and
embeds them in the SDP, so local candidates travel inside the offer and
answer and nothing is trickled. Remote candidates trickled by other
clients are still applied. ICE restart is done by building a new RtcPeer;
a fresh connection always carries fresh ICE credentials.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ringline.core.model import SessionDescription, IceCandidate


class RtcPeer:
    """One aiortc RTCPeerConnection plus the callbacks the call service needs."""

    def __init__(self, configuration: RTCConfiguration,
                 on_connection_state: Optional[Callable] = None,
                 on_track: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.on_connection_state = on_connection_state
        self.on_track = on_track
        self.pc = RTCPeerConnection(configuration=configuration)
        self._closed = False

        @self.pc.on('connectionstatechange')
        async def _on_connection_state_change():
            state = self.pc.connectionState
            self.logger.info(f"Peer connection state: {state}")
            await self._callback('on_connection_state', state)

        @self.pc.on('track')
        async def _on_track(track):
            self.logger.info(f"Remote {track.kind} track received")
            await self._callback('on_track', track)

    async def _callback(self, name: str, *args):
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            # Call callback (may be sync or async)
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.logger.error(f"Error in {name} callback: {e}", exc_info=True)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    def add_track(self, track):
        self.pc.addTrack(track)

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        """
        Create and apply a local offer.

        aiortc cannot restart ICE on a negotiated connection, so an ICE
        restart offer must come from a fresh peer.
        """
        if ice_restart and self.pc.localDescription is not None:
            raise RuntimeError("ICE restart needs a fresh peer connection")
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        local = self.pc.localDescription
        self.logger.debug(f"Local offer ready ({len(local.sdp)} bytes, ice_restart={ice_restart})")
        return SessionDescription(sdp=local.sdp, type=local.type)

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        local = self.pc.localDescription
        self.logger.debug(f"Local answer ready ({len(local.sdp)} bytes)")
        return SessionDescription(sdp=local.sdp, type=local.type)

    async def set_remote_description(self, description: SessionDescription):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate):
        value = candidate.candidate
        if not value:
            self.logger.debug("End-of-candidates marker received")
            return
        if value.startswith('candidate:'):
            value = value.split(':', 1)[1]

        rtc_candidate = candidate_from_sdp(value)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(rtc_candidate)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.pc.close()


class PeerBridge:
    """
    Builds RtcPeer instances configured with the call's ICE servers.

    Args:
        ice_servers: [{'urls': [...], 'username': ..., 'credential': ...}]
        logger: Logger instance
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None,
                 logger: Optional[logging.Logger] = None):
        self.ice_servers = ice_servers or []
        self.logger = logger or logging.getLogger(__name__)

    def _configuration(self) -> RTCConfiguration:
        servers = []
        for server in self.ice_servers:
            urls = server.get('urls', [])
            servers.append(RTCIceServer(
                urls=urls,
                username=server.get('username'),
                credential=server.get('credential'),
            ))
        return RTCConfiguration(iceServers=servers)

    def create(self, on_ice_candidate: Optional[Callable] = None,
               on_connection_state: Optional[Callable] = None,
               on_track: Optional[Callable] = None) -> RtcPeer:
        """
        Build a peer for one call.

        on_ice_candidate is accepted for the factory interface but never
        called: local candidates are carried in the SDP.
        """
        self.logger.debug(f"Creating peer connection ({len(self.ice_servers)} ICE servers)")
        return RtcPeer(
            self._configuration(),
            on_connection_state=on_connection_state,
            on_track=on_track,
            logger=self.logger,
        )
