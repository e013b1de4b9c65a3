from shellbridge.sessions.buffer import OutputBuffer, ScreenSnapshot
from shellbridge.sessions.registry import Session, SessionHandle, SessionRegistry

__all__ = [
    "OutputBuffer",
    "ScreenSnapshot",
    "Session",
    "SessionHandle",
    "SessionRegistry",
]
