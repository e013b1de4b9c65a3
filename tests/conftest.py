"""Shared fakes: pty processes, transports and a scripted completion service."""

from __future__ import annotations

from typing import Any, Optional

import pytest

from shellbridge.agent.provider import CompletionProvider
from shellbridge.core.config import (
    AgentConfig,
    RelayConfig,
    ShellBridgeConfig,
    TerminalConfig,
    WebRTCConfig,
)
from shellbridge.sessions.registry import SessionRegistry
from shellbridge.transport.base import Transport
from shellbridge.wire import Command


# ── Fake pty ─────────────────────────────────────────────────


class FakeProcess:
    """Stands in for PtyProcess; output and exit are pushed by the test."""

    _next_pid = 1000

    def __init__(self, argv, cols, rows, cwd=None, env=None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = argv
        self.cols = cols
        self.rows = rows
        self.start_dir = cwd
        self.writes: list[bytes] = []
        self.terminated = False
        self._on_data = None
        self._on_exit = None

    def start(self, on_data, on_exit) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def write(self, data: bytes) -> None:
        if self.terminated:
            raise OSError("pty is closed")
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows

    def terminate(self, grace: float = 1.0) -> None:
        self.terminated = True

    def cwd(self) -> Optional[str]:
        return self.start_dir

    # test helpers

    def emit(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._on_data:
            self._on_data(data)

    def exit(self) -> None:
        if self._on_exit:
            self._on_exit()

    @property
    def written(self) -> str:
        return b"".join(self.writes).decode("utf-8")


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, argv, cols, rows, cwd=None, env=None) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(argv, cols, rows, cwd, env)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


# ── Fake transports ──────────────────────────────────────────


class FakeTransport(Transport):
    """Records every send; open/closed is controlled by the test."""

    name = "fake"

    def __init__(self, open_: bool = True):
        super().__init__()
        self.open = open_
        self.sent: list[tuple[str, Any]] = []
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True
        self._running = True

    async def stop(self) -> None:
        self.stopped = True
        self._running = False

    def is_open(self) -> bool:
        return self.open

    def send(self, event: str, payload: Any = None) -> bool:
        if not self.open:
            return False
        self.sent.append((event, payload))
        return True

    # test helpers

    async def deliver(self, event: str, payload: Any = None) -> None:
        await self._notify_message(Command("terminal", event, {} if payload is None else payload))

    async def connect(self) -> None:
        await self._notify_connection("connected")

    def events(self, name: str) -> list[Any]:
        return [payload for event, payload in self.sent if event == name]


class FakeDirectChannel(FakeTransport):
    """Direct channel stand-in with the signaling surface of DirectChannel."""

    name = "fake-direct"

    def __init__(self):
        super().__init__(open_=False)
        self.answers: list[tuple[str, str]] = []
        self.candidates: list[tuple[str, Any, Any]] = []
        self.offer = {"sdp": "v=0\r\nfake-offer\r\n", "type": "offer"}

    async def create_offer(self) -> dict[str, str]:
        return dict(self.offer)

    async def set_remote_answer(self, sdp: str, sdp_type: str = "answer") -> None:
        self.answers.append((sdp, sdp_type))

    async def add_remote_candidate(self, candidate, sdp_mid=None, sdp_mline_index=None) -> None:
        self.candidates.append((candidate, sdp_mid, sdp_mline_index))

    async def state(self, state: str) -> None:
        await self._notify_connection(state)


class ChannelFactory:
    def __init__(self):
        self.channels: list[FakeDirectChannel] = []

    def __call__(self) -> FakeDirectChannel:
        channel = FakeDirectChannel()
        self.channels.append(channel)
        return channel

    @property
    def last(self) -> FakeDirectChannel:
        return self.channels[-1]


# ── Fake completion service ──────────────────────────────────


class ScriptedProvider(CompletionProvider):
    """Returns canned replies in order; records every request."""

    def __init__(self, replies: list[str]):
        self.replies = list(replies)
        self.requests: list[list[dict]] = []
        self.stopped = False

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        self.stopped = True

    async def complete(self, system_prompt: str, messages: list[dict]) -> str:
        self.requests.append([dict(m) for m in messages])
        if not self.replies:
            raise AssertionError("completion requested more times than scripted")
        return self.replies.pop(0)


async def no_sleep(_seconds: float) -> None:
    return None


# ── Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def terminal_config() -> TerminalConfig:
    return TerminalConfig(shell="bash", buffer_size=1000, kill_grace=0.01)


@pytest.fixture
def registry(spawner, terminal_config) -> SessionRegistry:
    return SessionRegistry(terminal_config, spawner=spawner)


@pytest.fixture
def relay() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def channels() -> ChannelFactory:
    return ChannelFactory()


@pytest.fixture
def config(tmp_path, terminal_config) -> ShellBridgeConfig:
    return ShellBridgeConfig(
        relay=RelayConfig(
            url="http://relay.test",
            device_name="test-host",
            token_file=str(tmp_path / ".token"),
            device_id_file=str(tmp_path / ".device_id"),
            open_browser=False,
        ),
        webrtc=WebRTCConfig(stun_urls=(), gathering_timeout=0.1),
        terminal=terminal_config,
        agent=AgentConfig(settle_delay=0.0, max_turns=5, initial_slice=500),
    )
