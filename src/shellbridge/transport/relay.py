"""
Relay transport — Socket.IO client to the relay server.

The relay carries registration, login, the handshake and WebRTC signaling,
and doubles as the fallback data path when the direct channel is down.
Every event (except Socket.IO's own connect/disconnect) is turned into a
wire Command and handed to the message callback; the daemon picks off the
control events and passes the rest to the router.

Reconnection is Socket.IO's: each successful (re)connect is reported as a
"connected" state change so the daemon can register again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import socketio

from shellbridge.core.config import RelayConfig
from shellbridge.transport.base import Transport
from shellbridge.wire import from_event

logger = logging.getLogger(__name__)

_RESERVED_EVENTS = ("connect", "disconnect", "connect_error")


class RelayTransport(Transport):
    name = "relay"

    def __init__(self, config: RelayConfig, client: Optional[socketio.AsyncClient] = None):
        super().__init__()
        self.config = config
        self._sio = client or socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=config.reconnect_attempts,
        )
        self._register_handlers()

    def _register_handlers(self) -> None:
        sio = self._sio

        @sio.event
        async def connect() -> None:
            logger.info(f"Connected to relay {self.config.url}")
            await self._notify_connection("connected")

        @sio.event
        async def connect_error(data: Any = None) -> None:
            logger.warning(f"Relay connection error: {data}")

        @sio.event
        async def disconnect(*_args: Any) -> None:
            logger.warning("Disconnected from relay")
            await self._notify_connection("disconnected")

        @sio.on("*")
        async def on_any(event: str, *args: Any) -> None:
            if event in _RESERVED_EVENTS:
                return
            payload = args[0] if args else None
            await self._notify_message(from_event(event, payload))

    # ─── Transport Interface ─────────────────────────────────────

    async def start(self) -> None:
        if not self.config.url:
            raise ValueError("Relay URL is not configured (SHELLBRIDGE_RELAY_URL)")
        logger.info(f"Connecting to relay {self.config.url}...")
        try:
            await self._sio.connect(
                self.config.url,
                transports=["websocket", "polling"],
                wait_timeout=self.config.timeout,
            )
        except socketio.exceptions.ConnectionError as e:
            raise ConnectionError(f"Could not reach relay {self.config.url}: {e}") from e
        self._running = True

    async def stop(self) -> None:
        self._running = False
        if self._sio.connected:
            await self._sio.disconnect()
        logger.info("Relay transport stopped")

    def is_open(self) -> bool:
        return bool(self._sio.connected)

    def send(self, event: str, payload: Any = None) -> bool:
        """Schedule an emit on the running loop; the caller does not await it."""
        if not self.is_open():
            logger.debug(f"Relay not connected; dropping {event}")
            return False

        async def _do_emit() -> None:
            try:
                await self._sio.emit(event, payload)
            except Exception as e:
                logger.error(f"Relay emit failed for {event}: {e}")

        asyncio.get_running_loop().create_task(_do_emit())
        return True
