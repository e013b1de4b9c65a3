"""
Daemon context — builds every component once and wires them together.

The daemon owns the relay's control events (registration, login, the
handshake, pairing and peer loss). Everything else the relay delivers is a
peer command and goes straight to the router.

Pairing sequence as seen from here:

    connect -> register -> [login_required -> authenticated]
    handshake:initiate -> handshake:response
    handshake:verify   -> handshake:confirmed | handshake:failed
    paired             -> processes:sync, webrtc:offer
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Any, Awaitable, Callable, Optional

from shellbridge.agent.loop import AgentLoop
from shellbridge.agent.provider import CompletionProvider, OpenAICompletionProvider
from shellbridge.core.config import ShellBridgeConfig
from shellbridge.core.errors import HandshakeFailed
from shellbridge.core.identity import (
    clear_token,
    load_or_create_device_id,
    load_token,
    save_token,
)
from shellbridge.handshake import Handshake, KeyPair, generate_key_pair
from shellbridge.router import CommandRouter
from shellbridge.sessions.registry import SessionRegistry
from shellbridge.transport.base import Transport
from shellbridge.transport.coordinator import TransportCoordinator
from shellbridge.transport.relay import RelayTransport
from shellbridge.wire import Command

logger = logging.getLogger(__name__)


class Daemon:
    def __init__(
        self,
        config: ShellBridgeConfig,
        *,
        relay: Optional[Transport] = None,
        registry: Optional[SessionRegistry] = None,
        provider: Optional[CompletionProvider] = None,
        channel_factory: Optional[Callable[[], Any]] = None,
        key_pair: Optional[KeyPair] = None,
    ):
        self.config = config
        self.key_pair = key_pair if key_pair is not None else generate_key_pair()
        self.handshake = Handshake(self.key_pair)
        self.device_id: Optional[str] = None

        self.registry = registry if registry is not None else SessionRegistry(config.terminal)
        self.relay = relay if relay is not None else RelayTransport(config.relay)
        self.coordinator = TransportCoordinator(self.relay, config.webrtc, channel_factory)
        self.provider = provider if provider is not None else OpenAICompletionProvider(config.agent)
        self.agent = AgentLoop(self.registry, self.provider, config.agent)
        self.router = CommandRouter(self.registry, self.coordinator, self.agent, config.terminal)

        self.relay.on_message(self.handle_relay_message)
        self.relay.on_connection_change(self.handle_relay_connection)

        self._control: dict[str, Callable[[Any], Awaitable[None]]] = {
            "login_required": self._on_login_required,
            "authenticated": self._on_authenticated,
            "auth_error": self._on_auth_error,
            "handshake:initiate": self._on_handshake_initiate,
            "handshake:verify": self._on_handshake_verify,
            "paired": self._on_paired,
            "paired_device_disconnected": self._on_peer_disconnected,
            "request_dimensions": self._on_request_dimensions,
            "waiting_for_peer": self._on_waiting_for_peer,
            "error": self._on_relay_error,
        }
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = False

    # ─── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        self.device_id = load_or_create_device_id(self.config.relay.device_id_file)
        logger.info(f"Device ID: {self.device_id}")
        logger.debug(f"Public key: {self.key_pair.public_key[:16]}...")
        await self.relay.start()

    async def run(self) -> None:
        """Start and keep running until stop() is called."""
        self._stop_event = asyncio.Event()
        await self.start()
        await self._stop_event.wait()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down...")

        await self.router.shutdown()
        self.registry.cleanup()
        await self.coordinator.close()
        try:
            await self.relay.stop()
        except Exception as e:
            logger.warning(f"Error stopping relay: {e}")
        await self.provider.stop()

        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("Shutdown complete")

    # ─── Relay Events ──────────────────────────────────────────────

    async def handle_relay_connection(self, state: str) -> None:
        if state == "connected":
            self.register()

    async def handle_relay_message(self, command: Command) -> None:
        handler = self._control.get(command.action)
        if handler is None:
            await self.router.dispatch(command)
            return
        try:
            await handler(command.payload)
        except Exception as e:
            logger.error(f"Error handling relay event {command.action}: {e}", exc_info=True)

    def register(self) -> None:
        if self.device_id is None:
            self.device_id = load_or_create_device_id(self.config.relay.device_id_file)
        self.relay.send(
            "register",
            {
                "type": self.config.relay.device_type,
                "token": load_token(self.config.relay.token_file),
                "deviceId": self.device_id,
                "deviceName": self.config.relay.device_name,
                "publicKey": self.key_pair.public_key,
            },
        )
        logger.info(f"Registered with relay as {self.config.relay.device_name}")

    async def _on_login_required(self, payload: Any) -> None:
        url = payload.get("loginUrl") if isinstance(payload, dict) else None
        if not url:
            logger.warning("Relay asked for login without a URL")
            return
        logger.info(f"Login required: {url}")
        if self.config.relay.open_browser:
            try:
                webbrowser.open(url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open a browser: {e}")

    async def _on_authenticated(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("token"):
            return
        save_token(self.config.relay.token_file, payload["token"])
        user = payload.get("user") or {}
        name = user.get("email") or user.get("name") if isinstance(user, dict) else user
        logger.info(f"Authenticated as {name or 'unknown user'}")

    async def _on_auth_error(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else payload
        logger.warning(f"Relay rejected our token: {message}")
        clear_token(self.config.relay.token_file)
        self.register()

    # ─── Handshake ─────────────────────────────────────────────────

    async def _on_handshake_initiate(self, payload: Any) -> None:
        payload = payload if isinstance(payload, dict) else {}
        peer_id = payload.get("peerId")
        logger.info(f"Starting handshake with {peer_id}", extra={"peer_id": peer_id})
        try:
            signature = self.handshake.respond(
                peer_id, payload.get("peerPublicKey"), payload.get("challenge")
            )
        except HandshakeFailed as e:
            logger.error(f"Handshake with {peer_id} failed: {e.message}")
            self.relay.send("handshake:failed", {"peerId": peer_id, "error": e.message})
            return
        self.relay.send("handshake:response", {"peerId": peer_id, "signature": signature})

    async def _on_handshake_verify(self, payload: Any) -> None:
        payload = payload if isinstance(payload, dict) else {}
        peer_id = payload.get("peerId")
        if self.handshake.verify_peer(peer_id, payload.get("signature"), payload.get("challenge")):
            self.relay.send("handshake:confirmed")
            return
        logger.error(f"Peer {peer_id} failed verification; pairing abandoned")
        self.relay.send(
            "handshake:failed", {"peerId": peer_id, "error": "Signature verification failed"}
        )

    # ─── Pairing ───────────────────────────────────────────────────

    async def _on_paired(self, payload: Any) -> None:
        payload = payload if isinstance(payload, dict) else {}
        peer_id = payload.get("peerId")
        if not self.handshake.confirmed or peer_id != self.handshake.peer_id:
            logger.error(f"Relay reported pairing with {peer_id} without a verified handshake; ignoring")
            return

        logger.info(payload.get("message") or f"Paired with {peer_id}", extra={"peer_id": peer_id})
        await self.coordinator.reset(self.handshake.shared_secret)
        self.router.send_sync()
        await self.coordinator.begin_negotiation()

    async def _on_peer_disconnected(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else None
        logger.warning(message or "Paired device disconnected")

        if self.coordinator.direct_open:
            logger.info("Relay lost the peer but the direct channel is still open")
            return

        await self.coordinator.on_peer_fully_disconnected()
        if self.config.terminal.keep_sessions_on_peer_loss:
            logger.info(f"Keeping {len(self.registry)} session(s) for reconnection")
        else:
            self.registry.cleanup()
        self.handshake.reset()
        self.register()

    async def _on_request_dimensions(self, payload: Any) -> None:
        logger.debug("Relay requested terminal dimensions; waiting for terminal:dimensions")

    async def _on_waiting_for_peer(self, payload: Any) -> None:
        logger.info("Waiting for a device to connect...")

    async def _on_relay_error(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else payload
        logger.warning(f"Relay error: {message}")
