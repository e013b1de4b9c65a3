"""
Agent actions — the closed set of things the model may ask for.

A completion is expected to hold one JSON object:

    {"thinking": "...", "actions": [
        {"type": "keystroke", "value": "ls -la"},
        {"type": "keystroke", "value": "Enter"},
        {"type": "delay", "value": 300},
        {"type": "request_screen", "value": null},
        {"type": "message", "value": "Listing files"}
    ]}

Anything else is an AgentParseError carrying the raw text.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from shellbridge.core.errors import AgentParseError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r'\{[\s\S]*"actions"[\s\S]*\}')


@dataclass(frozen=True)
class Keystroke:
    value: str
    type: str = field(default="keystroke", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "value": self.value}


@dataclass(frozen=True)
class Delay:
    ms: float
    type: str = field(default="delay", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "value": self.ms}


@dataclass(frozen=True)
class RequestScreen:
    slice_start: Optional[int] = None
    slice_end: Optional[int] = None
    type: str = field(default="request_screen", init=False)

    def to_dict(self) -> dict:
        if self.slice_start is None and self.slice_end is None:
            return {"type": self.type, "value": None}
        value: dict[str, int] = {}
        if self.slice_start is not None:
            value["sliceStart"] = self.slice_start
        if self.slice_end is not None:
            value["sliceEnd"] = self.slice_end
        return {"type": self.type, "value": value}


@dataclass(frozen=True)
class Message:
    text: str
    type: str = field(default="message", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "value": self.text}


Action = Union[Keystroke, Delay, RequestScreen, Message]


@dataclass(frozen=True)
class AgentResponse:
    actions: list[Action]
    thinking: Optional[str] = None

    @property
    def wants_screen(self) -> bool:
        return bool(self.actions) and isinstance(self.actions[-1], RequestScreen)

    def to_json(self) -> str:
        data: dict[str, Any] = {"actions": [a.to_dict() for a in self.actions]}
        if self.thinking:
            data["thinking"] = self.thinking
        return json.dumps(data)


# ─── Parsing ────────────────────────────────────────────────────


def extract_json(text: str) -> str:
    candidate = text.strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    if not candidate.startswith("{"):
        embedded = _OBJECT_RE.search(candidate)
        if embedded:
            candidate = embedded.group(0)
    return candidate


def parse_response(text: str) -> AgentResponse:
    """Decode a completion into actions. Never guesses: bad input raises."""
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise AgentParseError(f"Response is not valid JSON: {e}", text) from e

    if not isinstance(data, dict):
        raise AgentParseError("Response is not a JSON object", text)

    raw_actions = data.get("actions")
    if not isinstance(raw_actions, list):
        raise AgentParseError("Response missing 'actions' array", text)

    actions = [_parse_action(raw, index, text) for index, raw in enumerate(raw_actions)]

    thinking = data.get("thinking")
    if thinking is not None and not isinstance(thinking, str):
        thinking = str(thinking)
    return AgentResponse(actions=actions, thinking=thinking)


def _parse_action(raw: Any, index: int, text: str) -> Action:
    if not isinstance(raw, dict):
        raise AgentParseError(f"Action {index} is not an object", text)

    kind = raw.get("type")
    value = raw.get("value")

    if kind == "keystroke":
        if not isinstance(value, str):
            raise AgentParseError(f"Action {index}: keystroke requires a string value", text)
        return Keystroke(value)

    if kind == "delay":
        if not _is_number(value) or value < 0:
            raise AgentParseError(f"Action {index}: delay requires a non-negative number", text)
        return Delay(value)

    if kind == "message":
        if not isinstance(value, str):
            raise AgentParseError(f"Action {index}: message requires a string value", text)
        return Message(value)

    if kind == "request_screen":
        if value is None:
            return RequestScreen()
        if not isinstance(value, dict):
            raise AgentParseError(
                f"Action {index}: request_screen value must be null or an object", text
            )
        start = _slice_bound(value.get("sliceStart"), "sliceStart", index, text)
        end = _slice_bound(value.get("sliceEnd"), "sliceEnd", index, text)
        return RequestScreen(start, end)

    if kind is None:
        raise AgentParseError(f"Action {index} is missing 'type'", text)
    raise AgentParseError(f"Action {index}: unknown type {kind!r}", text)


def _slice_bound(value: Any, name: str, index: int, text: str) -> Optional[int]:
    if value is None:
        return None
    if not _is_number(value):
        raise AgentParseError(f"Action {index}: {name} must be a number", text)
    return int(value)


def _is_number(value: Any) -> bool:
    # json accepts Infinity and NaN, and overflows 1e400 to inf
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


# ─── Keystrokes ─────────────────────────────────────────────────

SPECIAL_KEYS = {
    "Enter": "\r",
    "Tab": "\t",
    "Escape": "\x1b",
    "Backspace": "\x7f",
    "Delete": "\x1b[3~",
    "Up": "\x1b[A",
    "Down": "\x1b[B",
    "Right": "\x1b[C",
    "Left": "\x1b[D",
    "Home": "\x1b[H",
    "End": "\x1b[F",
    "PageUp": "\x1b[5~",
    "PageDown": "\x1b[6~",
}

_CTRL_RE = re.compile(r"^Ctrl\+(.)$", re.IGNORECASE)


def keystroke_bytes(value: str) -> str:
    """Translate a named key (``Enter``, ``Ctrl+C``) to its sequence; other text is literal."""
    if value in SPECIAL_KEYS:
        return SPECIAL_KEYS[value]
    ctrl = _CTRL_RE.match(value)
    if ctrl:
        char = ctrl.group(1).upper()
        # Ctrl+A..Ctrl+Z, Ctrl+[ (ESC) and friends
        if "@" <= char <= "_":
            return chr(ord(char) & 0x1F)
    return value
