"""
Base Transport Interface - the narrow capability both channels implement.

The relay socket and the direct data channel deliver the same events with
the same payloads, so the coordinator depends only on this interface:
``send(event, payload) -> bool`` and ``is_open()``. Inbound frames are
decoded into wire Commands before they reach the message callback.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from shellbridge.wire import Command

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Command], Awaitable[None]]
ConnectionCallback = Callable[[str], Awaitable[None]]


class Transport(ABC):
    """
    Base class for the relay and direct transports.

    ``send`` is synchronous: it either hands the frame to the underlying
    channel right away and returns True, or returns False so the caller can
    use the other channel within the same call.
    """

    # Transport name - must be unique
    name: str = "base"

    def __init__(self):
        self._message_callback: Optional[MessageCallback] = None
        self._connection_callback: Optional[ConnectionCallback] = None
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Open the underlying connection."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the underlying connection (graceful shutdown)."""

    @abstractmethod
    def send(self, event: str, payload: Any = None) -> bool:
        """
        Send one event.

        Returns:
            True if the frame was handed to the channel, False if the
            channel is not open or refused it.
        """

    @abstractmethod
    def is_open(self) -> bool:
        """True while frames can be sent."""

    # ─── Callback Registration ────────────────────────────────────

    def on_message(self, callback: MessageCallback) -> None:
        """Set callback for decoded inbound commands."""
        self._message_callback = callback

    def on_connection_change(self, callback: ConnectionCallback) -> None:
        """Set callback for connection state changes ("connected", "failed", ...)."""
        self._connection_callback = callback

    # ─── Helper Methods ───────────────────────────────────────────

    async def _notify_message(self, command: Command) -> None:
        """Internal: notify message callback."""
        if self._message_callback:
            try:
                await self._message_callback(command)
            except Exception as e:
                logger.error(
                    f"Error in message callback for {self.name}: {e}", exc_info=True
                )

    async def _notify_connection(self, state: str) -> None:
        """Internal: notify connection callback."""
        if self._connection_callback:
            try:
                await self._connection_callback(state)
            except Exception as e:
                logger.error(
                    f"Error in connection callback for {self.name}: {e}", exc_info=True
                )

    @property
    def is_running(self) -> bool:
        """Check if transport is running."""
        return self._running

    def __repr__(self) -> str:
        return f"<{self.name} Transport>"
