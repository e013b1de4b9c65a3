"""
Bounded output buffer with a screen identity token.

Keeps the most recent ``max_chars`` characters of a session's output. The
screen id is a fresh uuid every time the buffer mutates, so the agent loop
can tell whether anything arrived between two captures.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ScreenSnapshot:
    content: str
    slice_start: int
    slice_end: int
    total_length: int
    screen_id: str
    cols: int
    rows: int
    timestamp: float = field(default_factory=time.time)

    @property
    def is_full(self) -> bool:
        return self.slice_start == 0 and self.slice_end == self.total_length


class OutputBuffer:
    def __init__(self, max_chars: int = 100_000):
        if max_chars < 1:
            raise ValueError(f"max_chars must be at least 1, got {max_chars}")
        self.max_chars = max_chars
        self._text = ""
        self.screen_id = str(uuid.uuid4())

    def __len__(self) -> int:
        return len(self._text)

    @property
    def text(self) -> str:
        return self._text

    def append(self, data: str) -> None:
        if not data:
            return
        self._text += data
        if len(self._text) > self.max_chars:
            self._text = self._text[-self.max_chars :]
        self.screen_id = str(uuid.uuid4())

    def slice(
        self,
        slice_start: Optional[int] = None,
        slice_end: Optional[int] = None,
        default_tail: Optional[int] = None,
    ) -> tuple[str, int, int]:
        """Return (content, start, end).

        Explicit bounds are clamped to the buffer. With no bounds, the last
        ``default_tail`` characters are returned, or everything if no tail is
        given or the buffer is shorter.
        """
        total = len(self._text)
        if slice_start is not None or slice_end is not None:
            start = min(total, max(0, slice_start if slice_start is not None else 0))
            end = min(total, slice_end if slice_end is not None else total)
            end = max(start, end)
        elif default_tail is not None and total > default_tail:
            start, end = total - default_tail, total
        else:
            start, end = 0, total
        return self._text[start:end], start, end
