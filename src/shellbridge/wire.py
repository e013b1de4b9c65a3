"""
Wire envelope — the only place that knows how messages look on the wire.

Inbound, three shapes are accepted:

    {"namespace": "terminal", "action": "process:create", "payload": {...}}
    {"type": "process:create", "payload": {...}}        (legacy flat form)
    {"type": "process.create", "payload": {...}}        (dotted legacy form)

Relay messages arrive as a Socket.IO event name plus payload and go through
``from_event``. Outbound frames on the direct channel use the flat form.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from shellbridge.core.errors import WireError

NAMESPACES = ("terminal", "code")
DEFAULT_NAMESPACE = "terminal"


@dataclass(frozen=True)
class Command:
    namespace: str
    action: str  # colon-joined, e.g. "process:create"
    payload: Any = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.action


def normalize_type(raw_type: str) -> str:
    return raw_type.strip().replace(".", ":")


def decode(raw: str | bytes | dict) -> Command:
    """Parse one inbound frame. Raises WireError on anything unusable."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WireError(f"Frame is not UTF-8: {e}") from e

    if isinstance(raw, str):
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as e:
            raise WireError(f"Frame is not JSON: {raw[:100]}") from e
    else:
        msg = raw

    if not isinstance(msg, dict):
        raise WireError(f"Frame is not an object: {type(msg).__name__}")

    payload = msg.get("payload")
    if payload is None:
        payload = {}

    if "action" in msg:
        namespace = msg.get("namespace") or DEFAULT_NAMESPACE
        action = msg.get("action")
        if not isinstance(action, str) or not action:
            raise WireError("Envelope has an empty action")
        if namespace not in NAMESPACES:
            # {"namespace": "process", "action": "create"}
            return Command(DEFAULT_NAMESPACE, normalize_type(f"{namespace}:{action}"), payload)
        return Command(namespace, normalize_type(action), payload)

    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise WireError("Frame has neither an action nor a type")
    return Command(DEFAULT_NAMESPACE, normalize_type(msg_type), payload)


def from_event(event: str, payload: Any = None) -> Command:
    return Command(DEFAULT_NAMESPACE, normalize_type(event), {} if payload is None else payload)


def encode(event: str, payload: Any = None) -> str:
    return json.dumps({"type": event, "payload": {} if payload is None else payload})


# ─── Payload Helpers ────────────────────────────────────────────


def session_id_of(payload: Any) -> str | None:
    """``id`` with the older ``uuid`` key as a fallback."""
    if not isinstance(payload, dict):
        return None
    value = payload.get("id", payload.get("uuid"))
    return str(value) if value is not None else None


def active_ids_of(payload: Any) -> list[str]:
    if not isinstance(payload, dict):
        return []
    ids = payload.get("activeIds", payload.get("activeUuids")) or []
    if isinstance(ids, str):
        ids = [ids]
    return [str(i) for i in ids]
