"""
Session registry — owns every live shell and its output buffer.

The registry knows nothing about peers or wire formats. Output callbacks
fire for every session whatever its active flag; the router decides what
actually reaches the peer. ``set_active`` hands back the buffered backlog of
each newly activated session so a switched-to tab can repaint at once.
"""

from __future__ import annotations

import codecs
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Protocol

from shellbridge.core.config import TerminalConfig
from shellbridge.core.errors import SessionExists, SpawnFailed, UnknownSession
from shellbridge.sessions.buffer import OutputBuffer, ScreenSnapshot
from shellbridge.sessions.pty_process import PtyProcess, clamp_dimension

logger = logging.getLogger(__name__)


class ShellProcess(Protocol):
    pid: int

    def start(self, on_data: Callable[[bytes], None], on_exit: Callable[[], None]) -> None: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def terminate(self, grace: float = 1.0) -> None: ...

    def cwd(self) -> Optional[str]: ...


Spawner = Callable[..., ShellProcess]


@dataclass(frozen=True)
class SessionHandle:
    id: str
    name: str
    created_at: int  # epoch ms


@dataclass
class Session:
    id: str
    name: str
    cols: int
    rows: int
    process: ShellProcess
    buffer: OutputBuffer
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    active: bool = False
    exited: bool = False
    decoder: Any = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def working_directory(self) -> Optional[str]:
        try:
            return self.process.cwd()
        except OSError:
            return None


class SessionRegistry:
    def __init__(
        self,
        config: Optional[TerminalConfig] = None,
        spawner: Optional[Spawner] = None,
    ):
        self.config = config if config is not None else TerminalConfig()
        self._spawner: Spawner = spawner if spawner is not None else PtyProcess.spawn
        self._sessions: dict[str, Session] = {}
        self._active: list[str] = []
        self._output_callback: Optional[Callable[[str, str], None]] = None
        self._exit_callback: Optional[Callable[[str], None]] = None

    # ─── Callback Registration ─────────────────────────────────────

    def on_output(self, callback: Callable[[str, str], None]) -> None:
        self._output_callback = callback

    def on_exit(self, callback: Callable[[str], None]) -> None:
        self._exit_callback = callback

    # ─── Lifecycle ─────────────────────────────────────────────────

    def create(
        self,
        session_id: str,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        name: Optional[str] = None,
    ) -> SessionHandle:
        if session_id in self._sessions:
            raise SessionExists(session_id)

        cols = clamp_dimension(cols, self.config.default_cols)
        rows = clamp_dimension(rows, self.config.default_rows)
        start_dir = os.environ.get("HOME") or os.getcwd()
        argv = [self.config.shell or "bash"]

        try:
            process = self._spawner(argv, cols, rows, cwd=start_dir)
        except OSError as e:
            logger.error(f"Failed to spawn session {session_id}: {e}")
            raise SpawnFailed(session_id, str(e)) from e

        session = Session(
            id=session_id,
            name=name or _derive_name(start_dir),
            cols=cols,
            rows=rows,
            process=process,
            buffer=OutputBuffer(self.config.buffer_size),
        )
        self._sessions[session_id] = session

        try:
            process.start(
                lambda data: self._handle_data(session, data),
                lambda: self._handle_exit(session),
            )
        except (OSError, RuntimeError) as e:
            del self._sessions[session_id]
            process.terminate(self.config.kill_grace)
            logger.error(f"Failed to attach session {session_id}: {e}")
            raise SpawnFailed(session_id, str(e)) from e

        logger.info(
            f"Session {session_id[:8]} created ({session.name}, {cols}x{rows})",
            extra={"session_id": session_id},
        )
        return SessionHandle(session.id, session.name, session.created_at)

    def terminate(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session_id in self._active:
            self._active.remove(session_id)
        session.exited = True
        try:
            session.process.terminate(self.config.kill_grace)
        except OSError as e:
            logger.warning(f"Error terminating session {session_id}: {e}")
        logger.info(f"Session {session_id[:8]} terminated", extra={"session_id": session_id})
        return True

    def cleanup(self) -> None:
        if not self._sessions:
            return
        logger.info(f"Cleaning up {len(self._sessions)} session(s)")
        for session_id in list(self._sessions):
            self.terminate(session_id)
        self._active.clear()

    # ─── I/O ───────────────────────────────────────────────────────

    def write(self, session_id: str, data: str | bytes) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.exited:
            logger.debug(f"Write to unknown session {session_id}; dropped")
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            session.process.write(data)
        except OSError as e:
            logger.warning(f"Write to session {session_id} failed: {e}")
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        cols = clamp_dimension(cols, session.cols)
        rows = clamp_dimension(rows, session.rows)
        session.process.resize(cols, rows)
        session.cols = cols
        session.rows = rows
        return True

    def resize_all(self, cols: int, rows: int) -> None:
        for session_id in list(self._sessions):
            self.resize(session_id, cols, rows)

    # ─── Active Set ────────────────────────────────────────────────

    def set_active(self, session_ids: Iterable[str]) -> dict[str, str]:
        """Make exactly ``session_ids`` active. Returns backlog for newly active ones."""
        requested: list[str] = []
        for session_id in session_ids:
            if session_id in self._sessions and session_id not in requested:
                requested.append(session_id)

        previous = set(self._active)
        for session in self._sessions.values():
            session.active = session.id in requested
        self._active = requested

        return {
            session_id: self._sessions[session_id].buffer.text
            for session_id in requested
            if session_id not in previous
        }

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def active_ids(self) -> list[str]:
        return list(self._active)

    # ─── Introspection ─────────────────────────────────────────────

    def rename(self, session_id: str, name: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.name = name
        return True

    def list_for_sync(self) -> list[dict[str, Any]]:
        return [
            {"id": s.id, "name": s.name, "createdAt": s.created_at}
            for s in self._sessions.values()
        ]

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def buffered_output(self, session_id: str) -> str:
        session = self._sessions.get(session_id)
        return session.buffer.text if session else ""

    def snapshot(
        self,
        session_id: str,
        slice_start: Optional[int] = None,
        slice_end: Optional[int] = None,
        default_tail: Optional[int] = None,
    ) -> ScreenSnapshot:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        content, start, end = session.buffer.slice(slice_start, slice_end, default_tail)
        return ScreenSnapshot(
            content=content,
            slice_start=start,
            slice_end=end,
            total_length=len(session.buffer),
            screen_id=session.buffer.screen_id,
            cols=session.cols,
            rows=session.rows,
        )

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ─── Process Callbacks ─────────────────────────────────────────

    def _handle_data(self, session: Session, data: bytes) -> None:
        text = session.decoder.decode(data)
        if not text:
            return
        session.buffer.append(text)
        if self._output_callback:
            try:
                self._output_callback(session.id, text)
            except Exception as e:
                logger.error(f"Error in output callback for {session.id}: {e}", exc_info=True)

    def _handle_exit(self, session: Session) -> None:
        if self._sessions.get(session.id) is not session:
            return
        tail = session.decoder.decode(b"", final=True)
        if tail:
            session.buffer.append(tail)
        session.exited = True
        del self._sessions[session.id]
        if session.id in self._active:
            self._active.remove(session.id)
        logger.info(f"Session {session.id[:8]} exited", extra={"session_id": session.id})
        if self._exit_callback:
            try:
                self._exit_callback(session.id)
            except Exception as e:
                logger.error(f"Error in exit callback for {session.id}: {e}", exc_info=True)


def _derive_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path)) or path or "shell"
