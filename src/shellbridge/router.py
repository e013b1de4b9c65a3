"""
Command router — wire commands in, session and agent events out.

Inbound commands from either channel are dispatched to the session
registry, the transport coordinator or the agent loop. Outbound events all
leave through ``coordinator.send`` so they take the direct channel when it
is open and the relay otherwise.

Output policy: a session's output is forwarded only while the session is in
the active set. Inactive output is dropped here; the session's own buffer is
what a later ``process:switch`` repaints from.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from shellbridge.agent.loop import AgentLoop
from shellbridge.core.config import TerminalConfig
from shellbridge.core.errors import AgentBusy, SessionExists, SpawnFailed
from shellbridge.sessions.pty_process import MAX_DIMENSION, clamp_dimension
from shellbridge.sessions.registry import SessionRegistry
from shellbridge.transport.coordinator import TransportCoordinator
from shellbridge.wire import Command, active_ids_of, session_id_of

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class CommandRouter:
    def __init__(
        self,
        registry: SessionRegistry,
        coordinator: TransportCoordinator,
        agent: Optional[AgentLoop] = None,
        config: Optional[TerminalConfig] = None,
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.agent = agent
        self.config = config if config is not None else TerminalConfig()

        self.cols = self.config.default_cols
        self.rows = self.config.default_rows
        self._resync_pending = False
        self._agent_task: Optional[asyncio.Task] = None

        self._handlers: dict[str, Handler] = {
            "process:create": self._process_create,
            "process:terminate": self._process_terminate,
            "process:switch": self._process_switch,
            "process:rename": self._process_rename,
            "terminal:input": self._terminal_input,
            "terminal:resize": self._terminal_resize,
            "terminal:dimensions": self._terminal_dimensions,
            "terminal:actions": self._terminal_actions,
            "ai:prompt": self._ai_prompt,
            "webrtc:answer": self.coordinator.on_remote_answer,
            "webrtc:ice-candidate": self.coordinator.on_remote_candidate,
        }

        registry.on_output(self._on_output)
        registry.on_exit(self._on_exit)
        coordinator.on_message(self.dispatch)
        if agent is not None:
            agent.on_event(self.emit)

    # ─── Outbound ──────────────────────────────────────────────────

    def emit(self, event: str, payload: Any = None) -> bool:
        return self.coordinator.send(event, payload)

    def send_sync(self) -> None:
        """Tell a (re)connected peer which sessions exist and which are active."""
        self.emit(
            "processes:sync",
            {
                "processes": self.registry.list_for_sync(),
                "activeIds": self.registry.active_ids(),
            },
        )
        # The peer's next switch gets a full repaint of every tab it asks for
        self._resync_pending = True

    def _on_output(self, session_id: str, data: str) -> None:
        if not self.registry.is_active(session_id):
            return
        self.emit("terminal:output", {"id": session_id, "data": data})

    def _on_exit(self, session_id: str) -> None:
        self.emit("process:exited", {"id": session_id})

    # ─── Inbound ───────────────────────────────────────────────────

    async def dispatch(self, command: Command) -> None:
        if command.namespace != "terminal":
            logger.debug(f"Unhandled {command.namespace} command: {command.action}")
            return
        if not self.coordinator.trusted:
            logger.warning(f"Dropping {command.action}: pairing not confirmed")
            return

        handler = self._handlers.get(command.action)
        if handler is None:
            logger.debug(f"Unknown command: {command.action}")
            return

        try:
            await handler(command.payload)
        except Exception as e:
            logger.error(f"Error handling {command.action}: {e}", exc_info=True)

    # ─── Process Commands ──────────────────────────────────────────

    async def _process_create(self, payload: Any) -> None:
        session_id = session_id_of(payload)
        if not session_id:
            logger.warning("process:create without an id")
            return

        cols = clamp_dimension(_int_or(payload.get("cols"), self.cols), self.cols)
        rows = clamp_dimension(_int_or(payload.get("rows"), self.rows), self.rows)
        try:
            handle = self.registry.create(session_id, cols, rows, payload.get("name"))
        except (SpawnFailed, SessionExists) as e:
            self.emit("process:error", {"id": session_id, "error": e.message})
            return

        # A new tab is the only one on screen
        self.registry.set_active([session_id])
        self.emit(
            "process:created",
            {"id": handle.id, "name": handle.name, "createdAt": handle.created_at},
        )

    async def _process_terminate(self, payload: Any) -> None:
        session_id = session_id_of(payload)
        if session_id and self.registry.terminate(session_id):
            self.emit("process:terminated", {"id": session_id})

    async def _process_switch(self, payload: Any) -> None:
        requested = active_ids_of(payload)
        snapshots = self.registry.set_active(requested)
        if self._resync_pending:
            self._resync_pending = False
            snapshots = {
                session_id: self.registry.buffered_output(session_id)
                for session_id in self.registry.active_ids()
            }
        for session_id, data in snapshots.items():
            self.emit("process:screen", {"id": session_id, "data": data})

    async def _process_rename(self, payload: Any) -> None:
        session_id = session_id_of(payload)
        name = payload.get("name") if isinstance(payload, dict) else None
        if not session_id or not isinstance(name, str):
            return
        if not self.registry.rename(session_id, name):
            logger.debug(f"Rename of unknown session {session_id}")

    # ─── Terminal Commands ─────────────────────────────────────────

    async def _terminal_input(self, payload: Any) -> None:
        if isinstance(payload, str):
            session_id, data = self._first_active(), payload
        elif isinstance(payload, dict):
            session_id = session_id_of(payload) or self._first_active()
            data = payload.get("data")
        else:
            return
        if session_id is None or not isinstance(data, str):
            logger.debug("terminal:input with no target session")
            return
        self.registry.write(session_id, data)

    async def _terminal_resize(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        cols, rows = _int_or(payload.get("cols"), 0), _int_or(payload.get("rows"), 0)
        if cols <= 0 or rows <= 0:
            return
        cols, rows = min(cols, MAX_DIMENSION), min(rows, MAX_DIMENSION)
        session_id = session_id_of(payload)
        if session_id:
            self.registry.resize(session_id, cols, rows)
        else:
            self.cols, self.rows = cols, rows
            self.registry.resize_all(cols, rows)

    async def _terminal_dimensions(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        cols, rows = _int_or(payload.get("cols"), 0), _int_or(payload.get("rows"), 0)
        if cols <= 0 or rows <= 0:
            return
        cols, rows = min(cols, MAX_DIMENSION), min(rows, MAX_DIMENSION)
        logger.info(f"Peer terminal is {cols}x{rows}")
        self.cols, self.rows = cols, rows
        self.registry.resize_all(cols, rows)

    async def _terminal_actions(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        session_id = session_id_of(payload) or self._first_active()
        actions = payload.get("actions") or []
        if session_id is None:
            return
        for action in actions:
            if not isinstance(action, dict) or not isinstance(action.get("value"), str):
                continue
            kind = action.get("type")
            if kind == "text":
                self.registry.write(session_id, action["value"])
            elif kind == "command":
                self.registry.write(session_id, action["value"] + "\r")
            else:
                logger.debug(f"Unknown terminal action type: {kind}")

    # ─── Agent ─────────────────────────────────────────────────────

    async def _ai_prompt(self, payload: Any) -> None:
        if self.agent is None:
            self.emit("ai:status", {"state": "failed", "error": "AI is not configured"})
            return

        prompt = payload.get("prompt") if isinstance(payload, dict) else payload
        if not isinstance(prompt, str) or not prompt.strip():
            return
        session_id = session_id_of(payload) or self._first_active()
        if session_id is None or session_id not in self.registry:
            self.emit("ai:status", {"state": "failed", "error": "No active session"})
            return
        if self.agent.busy:
            self.emit("ai:status", {"state": "busy", "id": session_id})
            return

        self._agent_task = asyncio.create_task(self._run_prompt(prompt, session_id))

    async def _run_prompt(self, prompt: str, session_id: str) -> None:
        try:
            await self.agent.handle_prompt(prompt, session_id)
        except AgentBusy:
            self.emit("ai:status", {"state": "busy", "id": session_id})

    async def shutdown(self) -> None:
        if self.agent is not None:
            self.agent.cancel()
        task, self._agent_task = self._agent_task, None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("AI prompt still running at shutdown; cancelled")

    # ─── Helpers ───────────────────────────────────────────────────

    def _first_active(self) -> Optional[str]:
        active = self.registry.active_ids()
        return active[0] if active else None


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
