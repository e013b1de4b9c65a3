"""
One shell in a pseudo-terminal, driven from the asyncio loop.

The child is forked onto the slave side of a fresh pty with its own session
and controlling terminal. The parent keeps the master fd non-blocking and
reads it with ``loop.add_reader``; EOF (or EIO on Linux) means the shell is
gone.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Callable, Optional

logger = logging.getLogger(__name__)

READ_SIZE = 65536
MAX_DIMENSION = 65535
_REAP_INTERVAL = 0.1


class PtyProcess:
    """A forked shell attached to a pty master fd."""

    def __init__(self, pid: int, fd: int, cols: int, rows: int):
        self.pid = pid
        self.fd = fd
        self.cols = cols
        self.rows = rows
        self.exit_status: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reading = False
        self._writing = False
        self._closed = False
        self._pending = bytearray()
        self._on_data: Optional[Callable[[bytes], None]] = None
        self._on_exit: Optional[Callable[[], None]] = None

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        cols: int,
        rows: int,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> PtyProcess:
        """Fork ``argv`` onto a new pty. Raises OSError if the pty cannot start."""
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, cols, rows)
            child_env = dict(os.environ if env is None else env)
            child_env.update(TERM="xterm-256color", COLORTERM="truecolor")
            pid = os.fork()
        except (OSError, struct.error) as e:
            os.close(master_fd)
            os.close(slave_fd)
            if isinstance(e, OSError):
                raise
            raise OSError(errno.EINVAL, f"invalid terminal size {cols}x{rows}") from e

        if pid == 0:
            # child
            try:
                os.close(master_fd)
                os.setsid()
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
                for fd in range(3):
                    os.dup2(slave_fd, fd)
                if slave_fd > 2:
                    os.close(slave_fd)
                if cwd:
                    os.chdir(cwd)
                os.execvpe(argv[0], argv, child_env)
            finally:
                os._exit(127)

        os.close(slave_fd)
        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        logger.debug(f"Spawned {argv[0]} (pid={pid}, fd={master_fd})")
        return cls(pid, master_fd, cols, rows)

    # ─── Reading ───────────────────────────────────────────────────

    def start(self, on_data: Callable[[bytes], None], on_exit: Callable[[], None]) -> None:
        """Begin forwarding output. Must be called from inside the event loop."""
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self.fd, self._on_readable)
        self._reading = True

    def detach(self) -> None:
        """Stop reading; no further data or exit callbacks fire."""
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self.fd)
        if self._writing and self._loop is not None:
            self._loop.remove_writer(self.fd)
        self._reading = False
        self._writing = False
        self._on_data = None
        self._on_exit = None

    def _on_readable(self) -> None:
        try:
            data = os.read(self.fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # Linux reports a hung-up pty as EIO rather than EOF
            if e.errno != errno.EIO:
                logger.warning(f"pty read error (pid={self.pid}): {e}")
            data = b""

        if data:
            if self._on_data is not None:
                self._on_data(data)
            return

        on_exit = self._on_exit
        self.detach()
        self._close_fd()
        self._reap_later()
        if on_exit is not None:
            on_exit()

    # ─── Input / Control ───────────────────────────────────────────

    @property
    def alive(self) -> bool:
        return not self._closed and self.exit_status is None

    def write(self, data: bytes) -> None:
        if self._closed:
            raise OSError(errno.EBADF, "pty is closed")
        self._pending.extend(data)
        self._flush()

    def _flush(self) -> None:
        if self._closed:
            self._pending.clear()
            return
        while self._pending:
            try:
                written = os.write(self.fd, self._pending)
            except BlockingIOError:
                break
            del self._pending[:written]

        # Input queue full: finish when the fd becomes writable again
        if self._pending and not self._writing and self._loop is not None:
            self._loop.add_writer(self.fd, self._flush)
            self._writing = True
        elif not self._pending and self._writing and self._loop is not None:
            self._loop.remove_writer(self.fd)
            self._writing = False

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        _set_winsize(self.fd, cols, rows)
        self.cols = cols
        self.rows = rows

    def terminate(self, grace: float = 1.0) -> None:
        """SIGHUP the shell's process group, SIGKILL it if still around after ``grace``."""
        self.detach()
        self._signal(signal.SIGHUP)
        self._close_fd()
        if self._reap():
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_later(grace, self._kill)
        else:
            self._signal(signal.SIGKILL)
            self._reap(block=True)

    def _kill(self) -> None:
        if self._reap():
            return
        logger.debug(f"Shell pid={self.pid} ignored SIGHUP; sending SIGKILL")
        self._signal(signal.SIGKILL)
        self._reap_later()

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                os.kill(self.pid, sig)
            except ProcessLookupError:
                pass

    def _reap(self, block: bool = False) -> bool:
        """Collect the exit status. True once the child is gone."""
        if self.exit_status is not None:
            return True
        try:
            pid, status = os.waitpid(self.pid, 0 if block else os.WNOHANG)
        except ChildProcessError:
            self.exit_status = -1
            return True
        if pid == 0:
            return False
        self.exit_status = os.waitstatus_to_exitcode(status)
        logger.debug(f"Shell pid={self.pid} exited with {self.exit_status}")
        return True

    def _reap_later(self) -> None:
        """Poll until the child can be collected, so it never lingers as a zombie."""
        if self._reap():
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_later(_REAP_INTERVAL, self._reap_later)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.fd)
        except OSError:
            pass

    # ─── Introspection ─────────────────────────────────────────────

    def cwd(self) -> Optional[str]:
        """Best-effort current directory of the shell."""
        proc_path = f"/proc/{self.pid}/cwd"
        if os.path.exists(proc_path):
            try:
                return os.readlink(proc_path)
            except OSError:
                return None

        try:
            out = subprocess.run(
                ["lsof", "-a", "-p", str(self.pid), "-d", "cwd", "-Fn"],
                capture_output=True,
                text=True,
                timeout=2,
                check=False,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return None
        for line in out.splitlines():
            if line.startswith("n"):
                return line[1:]
        return None


def clamp_dimension(value: Optional[int], default: int) -> int:
    """Fit a requested column or row count into what TIOCSWINSZ accepts."""
    if not value or value < 1:
        return default
    return min(value, MAX_DIMENSION)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError as e:
        logger.debug(f"TIOCSWINSZ failed on fd {fd}: {e}")
