"""Tests for the aiortc direct channel.

These create real RTCPeerConnections but never connect them to a peer, so
no network is needed beyond local interface enumeration.
"""

import asyncio
import json

import pytest

from shellbridge.core.config import WebRTCConfig
from shellbridge.wire import Command

# ── Check if aiortc is available ─────────────────────────────

try:
    from shellbridge.transport.webrtc import AIORTC_AVAILABLE, DirectChannel
    from aiortc import RTCSessionDescription

    HAS_WEBRTC = AIORTC_AVAILABLE
except (ImportError, RuntimeError):
    HAS_WEBRTC = False

pytestmark = pytest.mark.skipif(
    not HAS_WEBRTC,
    reason="aiortc not installed, direct channel tests skipped",
)


class SlowGatheringPeer:
    """Stands in for RTCPeerConnection; ICE gathering finishes only on release."""

    def __init__(self):
        self.localDescription = None
        self.remote = []
        self.release = asyncio.Event()

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0\r\n", type="offer")

    async def setLocalDescription(self, description):
        await self.release.wait()
        self.localDescription = RTCSessionDescription(
            sdp=description.sdp + "a=candidate:1 1 udp 1 10.0.0.2 5000 typ host\r\n",
            type=description.type,
        )

    async def setRemoteDescription(self, description):
        self.remote.append(description)

    async def close(self):
        pass


@pytest.fixture
def config():
    return WebRTCConfig(stun_urls=(), gathering_timeout=2.0)


class TestDirectChannel:
    def test_ice_servers_from_config(self):
        channel = DirectChannel(WebRTCConfig(stun_urls=("stun:stun.example.org:3478",)))
        assert [s.urls for s in channel._ice_servers] == ["stun:stun.example.org:3478"]

    @pytest.mark.asyncio
    async def test_not_open_before_connect(self, config):
        channel = DirectChannel(config)
        assert not channel.is_open()
        assert channel.send("terminal:output", {"id": "a", "data": "x"}) is False

        await channel.start()
        assert channel.is_running
        assert not channel.is_open()
        await channel.stop()

    @pytest.mark.asyncio
    async def test_create_offer(self, config):
        channel = DirectChannel(config)
        try:
            offer = await channel.create_offer()
            assert offer["type"] == "offer"
            assert "m=application" in offer["sdp"]
            assert channel._channel.label == "terminal"
        finally:
            await channel.stop()
        assert not channel.is_running

    @pytest.mark.asyncio
    async def test_signaling_requires_peer_connection(self, config):
        channel = DirectChannel(config)
        with pytest.raises(RuntimeError):
            await channel.set_remote_answer("v=0\r\n")
        with pytest.raises(RuntimeError):
            await channel.add_remote_candidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host")

    @pytest.mark.asyncio
    async def test_offer_sent_when_gathering_times_out(self):
        channel = DirectChannel(WebRTCConfig(stun_urls=(), gathering_timeout=0.05))
        peer = SlowGatheringPeer()
        channel._pc = peer
        try:
            offer = await asyncio.wait_for(channel.create_offer(), timeout=1)
            assert offer == {"sdp": "v=0\r\n", "type": "offer"}
            assert not channel._local_description_task.done()

            # The answer may only be applied once the local description is set
            answer = asyncio.create_task(channel.set_remote_answer("v=0\r\n"))
            await asyncio.sleep(0.02)
            assert not answer.done()
            assert peer.remote == []

            peer.release.set()
            await asyncio.wait_for(answer, timeout=1)
            assert [d.type for d in peer.remote] == ["answer"]
            assert "a=candidate:" in peer.localDescription.sdp
        finally:
            await channel.stop()

    @pytest.mark.asyncio
    async def test_inbound_frames_are_decoded(self, config):
        channel = DirectChannel(config)
        received = []

        async def on_message(command):
            received.append(command)

        channel.on_message(on_message)
        await channel.start()
        try:
            data_channel = channel._channel
            frame = {"type": "process.switch", "payload": {"activeIds": ["a"]}}
            data_channel.emit("message", json.dumps(frame))
            data_channel.emit("message", "not json")
            for _ in range(5):
                await asyncio.sleep(0)
        finally:
            await channel.stop()

        assert received == [Command("terminal", "process:switch", {"activeIds": ["a"]})]
