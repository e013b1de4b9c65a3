"""
Transport coordinator — direct channel first, relay always behind it.

Phases per pairing:

    IDLE -> NEGOTIATING -> CONNECTED -> DEGRADED | CLOSED
                 ^                          |
                 +---- begin_negotiation ---+

DEGRADED means the direct channel dropped but the relay still works.
Sessions are never touched here: a network blip must not kill shells.

Remote ICE candidates that arrive before the answer are queued and applied,
in arrival order and exactly once, right after the remote description.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from shellbridge.core.config import WebRTCConfig
from shellbridge.transport.base import MessageCallback, Transport
from shellbridge.wire import Command

logger = logging.getLogger(__name__)

_FAILED_STATES = ("disconnected", "failed", "closed")


class TransportPhase(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class TransportState:
    phase: TransportPhase = TransportPhase.IDLE
    direct_channel_ready: bool = False
    remote_description_set: bool = False
    pending_remote_candidates: list[dict[str, Any]] = field(default_factory=list)
    shared_secret: Optional[bytes] = None


class TransportCoordinator:
    def __init__(
        self,
        relay: Transport,
        config: Optional[WebRTCConfig] = None,
        channel_factory: Optional[Callable[[], Any]] = None,
    ):
        self.relay = relay
        self.config = config or WebRTCConfig()
        self._channel_factory = channel_factory or self._default_channel
        self.state = TransportState()
        self._direct: Any = None  # DirectChannel or a stand-in with the same surface
        self._message_callback: Optional[MessageCallback] = None
        self._closing: set[asyncio.Task] = set()

    def _default_channel(self):
        from shellbridge.transport.webrtc import DirectChannel

        return DirectChannel(self.config)

    # ─── Status ────────────────────────────────────────────────────

    @property
    def phase(self) -> TransportPhase:
        return self.state.phase

    @property
    def trusted(self) -> bool:
        return (
            self.state.shared_secret is not None
            and self.state.phase != TransportPhase.CLOSED
        )

    @property
    def direct_open(self) -> bool:
        return self._direct is not None and self._direct.is_open()

    def on_message(self, callback: MessageCallback) -> None:
        """Inbound commands from the direct channel go here."""
        self._message_callback = callback

    # ─── Pairing Lifecycle ─────────────────────────────────────────

    async def reset(self, shared_secret: bytes) -> None:
        """Fresh state for a new, handshake-confirmed pairing."""
        await self._drop_direct()
        self.state = TransportState(shared_secret=shared_secret)
        logger.info("Transport reset for new pairing", extra={"phase": self.state.phase.value})

    async def begin_negotiation(self) -> bool:
        """Build a new direct channel and send our offer through the relay."""
        if not self.trusted:
            logger.warning("Refusing to negotiate before the pairing is trusted")
            return False

        await self._drop_direct()
        self.state.pending_remote_candidates.clear()
        self.state.remote_description_set = False
        self.state.direct_channel_ready = False

        try:
            channel = self._channel_factory()
        except RuntimeError as e:
            logger.warning(f"Direct channel unavailable, staying on relay: {e}")
            self._set_phase(TransportPhase.DEGRADED)
            return False

        channel.on_message(self._deliver)
        channel.on_connection_change(
            lambda state, ch=channel: self._on_channel_state(ch, state)
        )
        self._direct = channel

        try:
            offer = await channel.create_offer()
        except Exception as e:
            logger.error(f"Failed to create offer: {e}", exc_info=True)
            await self._drop_direct()
            self._set_phase(TransportPhase.DEGRADED)
            return False

        if self._direct is not channel:
            # Torn down while gathering
            return False

        self._set_phase(TransportPhase.NEGOTIATING)
        # Flat form plus the nested form older clients read
        self.relay.send("webrtc:offer", {**offer, "offer": offer})
        logger.info("Sent offer via relay")
        return True

    async def on_remote_answer(self, payload: Any) -> bool:
        answer = payload.get("answer", payload) if isinstance(payload, dict) else None
        if not isinstance(answer, dict) or not answer.get("sdp"):
            logger.warning("Ignoring malformed answer")
            return False

        if (
            self.state.phase != TransportPhase.NEGOTIATING
            or self.state.remote_description_set
            or self._direct is None
        ):
            logger.info(f"Discarding answer received in phase {self.state.phase.value}")
            return False

        channel = self._direct
        try:
            await channel.set_remote_answer(answer["sdp"], answer.get("type") or "answer")
        except Exception as e:
            logger.error(f"Failed to apply answer: {e}", exc_info=True)
            return False

        # Candidates that arrive while flushing join the end of the queue
        while self.state.pending_remote_candidates and self._direct is channel:
            candidate = self.state.pending_remote_candidates.pop(0)
            await self._apply_candidate(channel, candidate)
        if self._direct is channel:
            self.state.remote_description_set = True
        logger.info("Remote answer applied")
        return True

    async def on_remote_candidate(self, payload: Any) -> None:
        candidate = _normalize_candidate(payload)
        if candidate is None:
            logger.debug("Ignoring empty ICE candidate")
            return
        if self._direct is None:
            logger.debug("ICE candidate with no direct channel; discarded")
            return
        if not self.state.remote_description_set:
            self.state.pending_remote_candidates.append(candidate)
            logger.debug(
                f"Queued ICE candidate ({len(self.state.pending_remote_candidates)} pending)"
            )
            return
        await self._apply_candidate(self._direct, candidate)

    async def _apply_candidate(self, channel: Any, candidate: dict[str, Any]) -> None:
        try:
            await channel.add_remote_candidate(
                candidate["candidate"],
                candidate.get("sdpMid"),
                candidate.get("sdpMLineIndex"),
            )
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate: {e}")

    # ─── Sending ───────────────────────────────────────────────────

    def send(self, event: str, payload: Any = None) -> bool:
        """Direct first, relay in the same call otherwise. True if direct delivered."""
        if not self.trusted:
            logger.debug(f"Not paired; dropping {event}")
            return False

        if self._direct is not None:
            try:
                if self._direct.send(event, payload):
                    return True
            except Exception as e:
                logger.warning(f"Direct send failed for {event}, using relay: {e}")

        if not self.relay.send(event, payload):
            logger.warning(f"No open channel for {event}; dropped")
        return False

    # ─── Connection State ──────────────────────────────────────────

    async def _on_channel_state(self, channel: Any, state: str) -> None:
        if channel is not self._direct:
            # Late callback from a channel we already replaced
            return
        await self.on_direct_state_change(state)

    async def on_direct_state_change(self, state: str) -> None:
        if state == "connected":
            self.state.direct_channel_ready = True
            self._set_phase(TransportPhase.CONNECTED)
        elif state in _FAILED_STATES:
            self.state.direct_channel_ready = False
            if self.state.phase != TransportPhase.CLOSED:
                self._set_phase(TransportPhase.DEGRADED)
            self.state.pending_remote_candidates.clear()
            self.state.remote_description_set = False
            self._schedule_close(self._direct)
            self._direct = None

    async def on_peer_fully_disconnected(self) -> None:
        await self._drop_direct()
        self.state.pending_remote_candidates.clear()
        self.state.direct_channel_ready = False
        self.state.shared_secret = None
        self._set_phase(TransportPhase.CLOSED)

    async def close(self) -> None:
        await self._drop_direct()
        for task in list(self._closing):
            task.cancel()
        self.state.shared_secret = None
        self._set_phase(TransportPhase.CLOSED)

    # ─── Internals ─────────────────────────────────────────────────

    async def _deliver(self, command: Command) -> None:
        if not self.trusted:
            logger.warning(f"Dropping {command.action} from untrusted direct channel")
            return
        if self._message_callback:
            await self._message_callback(command)

    def _set_phase(self, phase: TransportPhase) -> None:
        if phase != self.state.phase:
            logger.info(
                f"Transport {self.state.phase.value} -> {phase.value}",
                extra={"phase": phase.value},
            )
        self.state.phase = phase

    async def _drop_direct(self) -> None:
        channel, self._direct = self._direct, None
        if channel is None:
            return
        try:
            await channel.stop()
        except Exception as e:
            logger.debug(f"Error closing direct channel: {e}")

    def _schedule_close(self, channel: Any) -> None:
        # Called from inside the channel's own state callback
        if channel is None:
            return

        async def _close() -> None:
            try:
                await channel.stop()
            except Exception as e:
                logger.debug(f"Error closing direct channel: {e}")

        task = asyncio.get_running_loop().create_task(_close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)


def _normalize_candidate(payload: Any) -> Optional[dict[str, Any]]:
    """Accept {candidate, sdpMid, sdpMLineIndex} or the same nested under "candidate"."""
    if not isinstance(payload, dict):
        return None
    inner = payload.get("candidate")
    if isinstance(inner, dict):
        payload = inner
        inner = payload.get("candidate")
    if not isinstance(inner, str) or not inner:
        return None
    return {
        "candidate": inner,
        "sdpMid": payload.get("sdpMid"),
        "sdpMLineIndex": payload.get("sdpMLineIndex"),
    }
