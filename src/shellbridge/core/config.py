"""
shellbridge configuration — every setting the daemon needs.

Reads from environment variables (a local .env is loaded first) with
sensible defaults. The daemon builds one ShellBridgeConfig at startup and
hands it to each component; nothing reads the environment after that.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class RelayConfig:
    """Relay (signaling + fallback data path) settings."""

    url: str = ""
    device_type: str = "mac"
    device_name: str = field(default_factory=socket.gethostname)
    token_file: str = ".token"
    device_id_file: str = ".device_id"
    reconnect_attempts: int = 5
    timeout: float = 10.0
    open_browser: bool = True

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            url=os.getenv("SHELLBRIDGE_RELAY_URL", os.getenv("RELAY_SERVER_URL", "")),
            device_type=os.getenv("SHELLBRIDGE_DEVICE_TYPE", "mac"),
            device_name=os.getenv("SHELLBRIDGE_DEVICE_NAME", socket.gethostname()),
            token_file=os.getenv("SHELLBRIDGE_TOKEN_FILE", ".token"),
            device_id_file=os.getenv("SHELLBRIDGE_DEVICE_ID_FILE", ".device_id"),
            reconnect_attempts=int(os.getenv("SHELLBRIDGE_RECONNECT_ATTEMPTS", "5")),
            timeout=float(os.getenv("SHELLBRIDGE_RELAY_TIMEOUT", "10.0")),
            open_browser=_env_bool("SHELLBRIDGE_OPEN_BROWSER", True),
        )


@dataclass(frozen=True)
class WebRTCConfig:
    """Direct channel negotiation settings."""

    stun_urls: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
    gathering_timeout: float = 2.0  # seconds to wait for ICE gathering
    channel_label: str = "terminal"

    @classmethod
    def from_env(cls) -> WebRTCConfig:
        return cls(
            stun_urls=_env_list(
                "SHELLBRIDGE_STUN_URLS", "stun:stun.l.google.com:19302"
            ),
            gathering_timeout=float(
                os.getenv("SHELLBRIDGE_ICE_GATHERING_TIMEOUT", "2.0")
            ),
            channel_label=os.getenv("SHELLBRIDGE_CHANNEL_LABEL", "terminal"),
        )

    @property
    def ice_servers(self) -> list[dict[str, str]]:
        return [{"urls": url} for url in self.stun_urls]


@dataclass(frozen=True)
class TerminalConfig:
    """Pseudo-terminal session settings."""

    shell: str = "bash"
    default_cols: int = 80
    default_rows: int = 30
    buffer_size: int = 100_000  # characters of output kept per session
    keep_sessions_on_peer_loss: bool = True
    kill_grace: float = 1.0  # seconds between SIGHUP and SIGKILL

    def __post_init__(self):
        if self.buffer_size < 1:
            raise ValueError(f"buffer_size must be at least 1, got {self.buffer_size}")

    @classmethod
    def from_env(cls) -> TerminalConfig:
        return cls(
            shell=os.getenv("SHELL", "bash"),
            default_cols=int(os.getenv("SHELLBRIDGE_COLS", "80")),
            default_rows=int(os.getenv("SHELLBRIDGE_ROWS", "30")),
            buffer_size=int(os.getenv("SHELLBRIDGE_BUFFER_SIZE", "100000")),
            keep_sessions_on_peer_loss=_env_bool(
                "SHELLBRIDGE_KEEP_SESSIONS_ON_PEER_LOSS", True
            ),
            kill_grace=float(os.getenv("SHELLBRIDGE_KILL_GRACE", "1.0")),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Completion service and agent loop settings."""

    api_key: str = ""
    base_url: str = ""
    model: str = "gpt-4o"
    max_tokens: int = 4096
    temperature: float = 0.2
    max_turns: int = 20
    max_history: int = 20
    settle_delay: float = 0.3  # seconds before each screen capture
    initial_slice: int = 15_000  # characters in the default screen slice

    @classmethod
    def from_env(cls) -> AgentConfig:
        return cls(
            api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv("SHELLBRIDGE_LLM_BASE_URL", ""),
            model=os.getenv("SHELLBRIDGE_LLM_MODEL", "gpt-4o"),
            max_tokens=int(os.getenv("SHELLBRIDGE_LLM_MAX_TOKENS", "4096")),
            temperature=float(os.getenv("SHELLBRIDGE_LLM_TEMPERATURE", "0.2")),
            max_turns=int(os.getenv("SHELLBRIDGE_AGENT_MAX_TURNS", "20")),
            max_history=int(os.getenv("SHELLBRIDGE_AGENT_MAX_HISTORY", "20")),
            settle_delay=float(os.getenv("SHELLBRIDGE_AGENT_SETTLE_DELAY", "0.3")),
            initial_slice=int(os.getenv("SHELLBRIDGE_AGENT_INITIAL_SLICE", "15000")),
        )


@dataclass(frozen=True)
class ShellBridgeConfig:
    """Root configuration, built once at startup."""

    relay: RelayConfig = field(default_factory=RelayConfig)
    webrtc: WebRTCConfig = field(default_factory=WebRTCConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def from_env(cls) -> ShellBridgeConfig:
        return cls(
            relay=RelayConfig.from_env(),
            webrtc=WebRTCConfig.from_env(),
            terminal=TerminalConfig.from_env(),
            agent=AgentConfig.from_env(),
        )
