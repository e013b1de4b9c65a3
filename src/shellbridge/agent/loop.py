"""
Agent loop — lets a completion model drive one terminal session.

    Idle -> Capturing -> Awaiting-Completion -> Executing -> Capturing | Idle

Each turn sends the conversation so far, parses the reply into actions and
runs them against the session. The loop only continues when the model's
last action is ``request_screen``; anything else (including no actions)
ends the prompt. At most ``max_turns`` turns, one prompt at a time.

Progress is reported through ``on_event(event, payload)``:
    ai:status  {state, id, turn?, error?}
    ai:message {id, text}
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from shellbridge.agent.actions import (
    Action,
    Delay,
    Keystroke,
    Message,
    RequestScreen,
    keystroke_bytes,
    parse_response,
)
from shellbridge.agent.prompts import SYSTEM_PROMPT, format_screen, initial_message, trim_history
from shellbridge.agent.provider import CompletionProvider
from shellbridge.core.config import AgentConfig
from shellbridge.core.errors import AgentBusy, AgentParseError, UnknownSession
from shellbridge.core.logging import TurnTimer
from shellbridge.sessions.buffer import ScreenSnapshot
from shellbridge.sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], Any]


class AgentPhase(str, enum.Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    AWAITING_COMPLETION = "awaiting_completion"
    EXECUTING = "executing"


@dataclass
class Conversation:
    turns: list[dict] = field(default_factory=list)
    screen_id: Optional[str] = None
    turn_count: int = 0


@dataclass
class AgentResult:
    status: str  # completed | max_turns | failed | cancelled
    turns: int
    error: Optional[str] = None
    raw_response: Optional[str] = None


class _Cancelled(Exception):
    pass


class AgentLoop:
    def __init__(
        self,
        registry: SessionRegistry,
        provider: CompletionProvider,
        config: Optional[AgentConfig] = None,
        on_event: Optional[EventCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.provider = provider
        self.config = config if config is not None else AgentConfig()
        self._on_event = on_event
        self._sleep = sleep
        self.phase = AgentPhase.IDLE
        self._busy = False
        self._cancelled = False
        self._suspension: Optional[asyncio.Future] = None

    @property
    def busy(self) -> bool:
        return self._busy

    def on_event(self, callback: EventCallback) -> None:
        self._on_event = callback

    def cancel(self) -> None:
        """Stop at the next suspension point. A completion in flight is discarded."""
        if self._busy:
            logger.info("Agent loop cancellation requested")
            self._cancelled = True
            if self._suspension is not None:
                self._suspension.cancel()

    # ─── Prompt Handling ───────────────────────────────────────────

    async def handle_prompt(self, prompt: str, session_id: str) -> AgentResult:
        if self._busy:
            raise AgentBusy()

        self._busy = True
        self._cancelled = False
        conversation = Conversation()
        logger.info(f"AI prompt for {session_id[:8]}: {prompt!r}", extra={"session_id": session_id})
        self._emit("ai:status", {"state": "started", "id": session_id})

        try:
            result = await self._run(prompt, session_id, conversation)
        except _Cancelled:
            result = AgentResult("cancelled", conversation.turn_count)
        except AgentParseError as e:
            logger.error(f"Unusable model response: {e.message}")
            logger.debug(f"Raw response: {e.raw}")
            result = AgentResult("failed", conversation.turn_count, e.message, e.raw)
        except UnknownSession as e:
            logger.warning(f"AI prompt target vanished: {e.message}")
            result = AgentResult("failed", conversation.turn_count, e.message)
        except Exception as e:
            logger.error(f"AI prompt failed: {e}", exc_info=True)
            result = AgentResult("failed", conversation.turn_count, str(e))
        finally:
            self._busy = False
            self._cancelled = False
            self.phase = AgentPhase.IDLE

        status: dict[str, Any] = {"state": result.status, "id": session_id, "turn": result.turns}
        if result.error:
            status["error"] = result.error
        self._emit("ai:status", status)
        logger.info(
            f"AI prompt finished: {result.status} after {result.turns} turn(s)",
            extra={"session_id": session_id, "turn": result.turns, "status": result.status},
        )
        return result

    async def _run(self, prompt: str, session_id: str, conversation: Conversation) -> AgentResult:
        screen = await self._capture(session_id)
        conversation.screen_id = screen.screen_id
        conversation.turns.append({"role": "user", "content": initial_message(prompt, screen)})

        while conversation.turn_count < self.config.max_turns:
            conversation.turn_count += 1
            turn = conversation.turn_count
            timer = TurnTimer()
            self._emit("ai:status", {"state": "thinking", "id": session_id, "turn": turn})

            self.phase = AgentPhase.AWAITING_COMPLETION
            text = await self._suspend(
                self.provider.complete(SYSTEM_PROMPT, list(conversation.turns))
            )
            timer.mark("completion")

            response = parse_response(text)
            if response.thinking:
                logger.debug(f"Turn {turn} thinking: {response.thinking}")
            if not response.actions:
                logger.info(f"Turn {turn}: no actions, done")
                return AgentResult("completed", turn)

            self._append(conversation, {"role": "assistant", "content": response.to_json()})

            self.phase = AgentPhase.EXECUTING
            self._emit("ai:status", {"state": "executing", "id": session_id, "turn": turn})
            await self._execute(session_id, response.actions)
            timer.mark("execute")
            logger.info(
                f"Turn {turn}: {len(response.actions)} action(s) | {timer.summary()}",
                extra={"turn": turn, "duration_ms": int(timer.total() * 1000)},
            )

            if not response.wants_screen:
                return AgentResult("completed", turn)

            request = response.actions[-1]
            screen = await self._capture(session_id, request)
            logger.debug(f"Screen {screen.screen_id[:8]} captured for turn {turn + 1}")
            conversation.screen_id = screen.screen_id
            self._append(conversation, {"role": "user", "content": format_screen(screen)})

        logger.warning(f"Reached maximum turns ({self.config.max_turns}), stopping")
        return AgentResult("max_turns", conversation.turn_count)

    # ─── Steps ─────────────────────────────────────────────────────

    async def _capture(
        self, session_id: str, request: Optional[RequestScreen] = None
    ) -> ScreenSnapshot:
        self.phase = AgentPhase.CAPTURING
        # Let output from the previous actions land before reading the buffer
        await self._suspend(self._sleep(self.config.settle_delay))
        return self.registry.snapshot(
            session_id,
            slice_start=request.slice_start if request else None,
            slice_end=request.slice_end if request else None,
            default_tail=self.config.initial_slice,
        )

    async def _execute(self, session_id: str, actions: list[Action]) -> None:
        for action in actions:
            if isinstance(action, Keystroke):
                if not self.registry.write(session_id, keystroke_bytes(action.value)):
                    raise UnknownSession(session_id)
            elif isinstance(action, Delay):
                await self._suspend(self._sleep(action.ms / 1000))
            elif isinstance(action, Message):
                self._emit("ai:message", {"id": session_id, "text": action.text})
            elif isinstance(action, RequestScreen):
                pass  # Captured once the turn's actions are done

    def _append(self, conversation: Conversation, message: dict) -> None:
        conversation.turns.append(message)
        if len(conversation.turns) > self.config.max_history:
            logger.debug(
                f"Trimming conversation from {len(conversation.turns)} to {self.config.max_history}"
            )
            conversation.turns[:] = trim_history(conversation.turns, self.config.max_history)

    async def _suspend(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` in a way cancel() can interrupt."""
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Cancelled()
        self._suspension = asyncio.ensure_future(awaitable)
        try:
            return await self._suspension
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            raise _Cancelled() from None
        finally:
            self._suspension = None

    def _emit(self, event: str, payload: dict) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, payload)
        except Exception as e:
            logger.error(f"Error in agent event callback for {event}: {e}", exc_info=True)
