"""
shellbridge error types.

Only SpawnFailed and HandshakeFailed are surfaced to the peer as failures.
The rest are logged no-ops or states the daemon recovers from on its own.
"""

from typing import Any, Optional


class ShellBridgeError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class SpawnFailed(ShellBridgeError):
    def __init__(self, session_id: str, message: str):
        super().__init__("spawn_failed", message, {"id": session_id})
        self.session_id = session_id


class SessionExists(ShellBridgeError):
    def __init__(self, session_id: str):
        super().__init__(
            "session_exists", f"Session {session_id} already exists", {"id": session_id}
        )
        self.session_id = session_id


class UnknownSession(ShellBridgeError):
    def __init__(self, session_id: str):
        super().__init__(
            "unknown_session", f"Unknown session {session_id}", {"id": session_id}
        )
        self.session_id = session_id


class HandshakeFailed(ShellBridgeError):
    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__("handshake_failed", message, {"peerId": peer_id})
        self.peer_id = peer_id


class AgentParseError(ShellBridgeError):
    """The completion service returned something that is not a valid action list."""

    def __init__(self, message: str, raw: str):
        super().__init__("agent_parse_error", message, {"raw": raw})
        self.raw = raw


class AgentBusy(ShellBridgeError):
    def __init__(self):
        super().__init__("agent_busy", "An AI prompt is already running")


class WireError(ShellBridgeError):
    def __init__(self, message: str):
        super().__init__("wire_error", message)
