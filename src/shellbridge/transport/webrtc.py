"""
Direct transport — one aiortc peer connection with a "terminal" data channel.

This side is always the offerer: it creates the data channel, gathers ICE
candidates for a bounded time and hands back the offer for the relay to
carry. The answer and the peer's candidates come back through the
coordinator. Frames on the channel use the flat wire form.

Requires: pip install aiortc
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from shellbridge.core.config import WebRTCConfig
from shellbridge.core.errors import WireError
from shellbridge.transport.base import Transport
from shellbridge.wire import decode, encode

logger = logging.getLogger(__name__)

# ── Optional aiortc imports (graceful degradation) ────────────

try:
    from aiortc import (
        RTCConfiguration,
        RTCIceServer,
        RTCPeerConnection,
        RTCSessionDescription,
    )
    from aiortc.sdp import candidate_from_sdp

    AIORTC_AVAILABLE = True
except ModuleNotFoundError:
    AIORTC_AVAILABLE = False
    logger.info(
        "aiortc not installed; direct channel unavailable, relay only. "
        "Install with: pip install aiortc"
    )


class DirectChannel(Transport):
    name = "webrtc"

    def __init__(self, config: WebRTCConfig):
        super().__init__()

        if not AIORTC_AVAILABLE:
            raise RuntimeError(
                "aiortc is required for the direct channel. "
                "Install with: pip install aiortc"
            )

        self.config = config
        self._ice_servers = [RTCIceServer(**srv) for srv in config.ice_servers]
        self._pc: Optional[RTCPeerConnection] = None
        self._channel: Any = None  # RTCDataChannel
        self._local_description_task: Optional[asyncio.Task] = None

    # ─── Transport Interface ─────────────────────────────────────

    async def start(self) -> None:
        """Create the peer connection and the outgoing data channel."""
        if self._pc is not None:
            return
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=self._ice_servers))
        self._channel = self._pc.createDataChannel(self.config.channel_label)
        self._setup_pc_handlers(self._pc)
        self._setup_channel_handlers(self._channel)
        self._running = True

    async def stop(self) -> None:
        self._running = False
        if self._local_description_task and not self._local_description_task.done():
            self._local_description_task.cancel()
        pc, self._pc, self._channel = self._pc, None, None
        if pc is not None:
            await pc.close()
            logger.debug("Peer connection closed")

    def is_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def send(self, event: str, payload: Any = None) -> bool:
        if not self.is_open():
            return False
        try:
            self._channel.send(encode(event, payload))
        except Exception as e:
            logger.warning(f"Data channel send failed for {event}: {e}")
            return False
        return True

    # ─── Signaling ───────────────────────────────────────────────

    async def create_offer(self) -> dict[str, str]:
        """
        Create the local offer and wait (bounded) for ICE gathering.

        aiortc gathers inside setLocalDescription. If that takes longer than
        the gathering timeout, gathering keeps going in the background and
        the offer goes out with what is available now.

        Returns:
            {"sdp": str, "type": "offer"}
        """
        await self.start()
        offer = await self._pc.createOffer()
        self._local_description_task = asyncio.ensure_future(
            self._pc.setLocalDescription(offer)
        )
        try:
            await asyncio.wait_for(
                asyncio.shield(self._local_description_task),
                timeout=self.config.gathering_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"ICE gathering not complete after {self.config.gathering_timeout}s; "
                "sending offer with candidates gathered so far"
            )

        description = self._pc.localDescription or offer
        return {"sdp": description.sdp, "type": description.type}

    async def set_remote_answer(self, sdp: str, sdp_type: str = "answer") -> None:
        if self._pc is None:
            raise RuntimeError("No peer connection")
        if self._local_description_task is not None:
            await self._local_description_task
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))

    async def add_remote_candidate(
        self,
        candidate: str,
        sdp_mid: Optional[str] = None,
        sdp_mline_index: Optional[int] = None,
    ) -> None:
        if self._pc is None:
            raise RuntimeError("No peer connection")

        if candidate.startswith("candidate:"):
            candidate = candidate[len("candidate:") :]
        ice_candidate = candidate_from_sdp(candidate)
        if sdp_mid is not None:
            ice_candidate.sdpMid = sdp_mid
        if sdp_mline_index is not None:
            ice_candidate.sdpMLineIndex = sdp_mline_index

        await self._pc.addIceCandidate(ice_candidate)
        logger.debug(f"Added remote ICE candidate ({sdp_mid})")

    # ─── Peer Connection Event Handlers ──────────────────────────

    def _setup_pc_handlers(self, pc: RTCPeerConnection) -> None:
        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = pc.connectionState
            logger.info(f"Direct connection state: {state}")
            await self._notify_connection(state)

        @pc.on("datachannel")
        def on_datachannel(channel):
            # The peer opened its own channel; accept it as a second inbound path
            logger.info(f"Remote data channel opened: {channel.label}")
            self._setup_channel_handlers(channel)

    def _setup_channel_handlers(self, channel) -> None:
        @channel.on("open")
        def on_open():
            logger.info(f"Data channel '{channel.label}' open")

        @channel.on("close")
        def on_close():
            logger.info(f"Data channel '{channel.label}' closed")

        @channel.on("message")
        async def on_message(message):
            try:
                command = decode(message)
            except WireError as e:
                logger.warning(f"Invalid data channel frame: {e.message}")
                return
            await self._notify_message(command)
