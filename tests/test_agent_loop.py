"""Tests for the agent loop, driven by a scripted completion provider."""

import asyncio
import json
import re

import pytest

from shellbridge.agent.loop import AgentLoop, AgentPhase
from shellbridge.core.config import AgentConfig
from shellbridge.core.errors import AgentBusy

from conftest import ScriptedProvider, no_sleep

SCREEN_ID_RE = re.compile(r'screenId: "([^"]+)"')


def reply(*actions, thinking=None):
    data = {"actions": [{"type": t, "value": v} for t, v in actions]}
    if thinking:
        data["thinking"] = thinking
    return json.dumps(data)


class EventLog:
    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def states(self):
        return [p["state"] for e, p in self.events if e == "ai:status"]

    def messages(self):
        return [p for e, p in self.events if e == "ai:message"]


@pytest.fixture
def session(registry, spawner):
    registry.create("s1", 80, 24)
    spawner.last.emit("user@host:~$ ")
    return spawner.last


def make_agent(registry, provider, sleep=no_sleep, **overrides):
    config = AgentConfig(settle_delay=0, **overrides)
    log = EventLog()
    return AgentLoop(registry, provider, config, on_event=log, sleep=sleep), log


class TestTurns:
    @pytest.mark.asyncio
    async def test_keystroke_only_ends_after_one_turn(self, registry, session):
        provider = ScriptedProvider([reply(("keystroke", "ls\n")), reply()])
        captures = []

        async def counting_sleep(seconds):
            captures.append(seconds)

        agent, log = make_agent(registry, provider, sleep=counting_sleep)
        result = await agent.handle_prompt("list files", "s1")

        assert result.status == "completed"
        assert result.turns == 1
        assert session.writes == [b"ls\n"]
        assert len(provider.requests) == 1
        # Only the initial capture
        assert len(captures) == 1

    @pytest.mark.asyncio
    async def test_empty_actions_complete(self, registry, session):
        provider = ScriptedProvider([reply()])
        agent, log = make_agent(registry, provider)
        result = await agent.handle_prompt("nothing to do", "s1")
        assert result.status == "completed"
        assert session.writes == []
        assert log.states() == ["started", "thinking", "completed"]

    @pytest.mark.asyncio
    async def test_request_screen_gives_one_more_turn_with_new_screen(self, registry, session):
        provider = ScriptedProvider(
            [
                reply(("keystroke", "ls"), ("keystroke", "Enter"), ("request_screen", None)),
                reply(("message", "Done")),
            ]
        )

        async def shell_prints(seconds):
            if session.writes:
                session.emit("notes.txt\r\n")

        agent, log = make_agent(registry, provider, sleep=shell_prints)
        result = await agent.handle_prompt("list files", "s1")

        assert result.status == "completed"
        assert result.turns == 2
        assert len(provider.requests) == 2

        first_screen = provider.requests[0][0]["content"]
        second_screen = provider.requests[1][-1]["content"]
        assert first_screen.startswith("User Request: list files")
        assert "notes.txt" in second_screen
        assert SCREEN_ID_RE.search(first_screen).group(1) != SCREEN_ID_RE.search(second_screen).group(1)
        assert provider.requests[1][1]["role"] == "assistant"
        assert log.messages() == [{"id": "s1", "text": "Done"}]

    @pytest.mark.asyncio
    async def test_requested_slice_is_honoured(self, registry, session):
        session.emit("0123456789")
        provider = ScriptedProvider(
            [
                reply(("request_screen", {"sliceStart": 0, "sliceEnd": 4})),
                reply(),
            ]
        )
        agent, _ = make_agent(registry, provider)
        await agent.handle_prompt("show the top", "s1")

        screen = provider.requests[1][-1]["content"]
        assert "sliceStart: 0, sliceEnd: 4" in screen
        assert "```\nuser\n```" in screen

    @pytest.mark.asyncio
    async def test_initial_capture_is_tail(self, registry, session):
        session.emit("x" * 50)
        provider = ScriptedProvider([reply()])
        agent, _ = make_agent(registry, provider, initial_slice=10)
        await agent.handle_prompt("hi", "s1")
        assert "sliceStart: 53, sliceEnd: 63, totalLength: 63" in provider.requests[0][0]["content"]

    @pytest.mark.asyncio
    async def test_stops_at_max_turns(self, registry, session):
        provider = ScriptedProvider([reply(("request_screen", None))] * 3)
        agent, log = make_agent(registry, provider, max_turns=3)
        result = await agent.handle_prompt("loop forever", "s1")
        assert result.status == "max_turns"
        assert result.turns == 3
        assert log.states()[-1] == "max_turns"

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, registry, session):
        provider = ScriptedProvider([reply(("request_screen", None))] * 5 + [reply()])
        agent, _ = make_agent(registry, provider, max_history=4)
        await agent.handle_prompt("keep looking", "s1")

        last_request = provider.requests[-1]
        assert len(last_request) == 4
        assert last_request[0]["content"].startswith("User Request: keep looking")

    @pytest.mark.asyncio
    async def test_special_keys_and_delays(self, registry, session):
        slept = []

        async def record_sleep(seconds):
            slept.append(seconds)

        provider = ScriptedProvider(
            [reply(("keystroke", "vim a.txt"), ("keystroke", "Enter"), ("delay", 500),
                   ("keystroke", "Ctrl+C"))]
        )
        agent, _ = make_agent(registry, provider, sleep=record_sleep)
        await agent.handle_prompt("open vim", "s1")

        assert session.writes == [b"vim a.txt", b"\r", b"\x03"]
        assert 0.5 in slept


class TestFailures:
    @pytest.mark.asyncio
    async def test_unparseable_reply_fails_with_raw_text(self, registry, session):
        provider = ScriptedProvider(["Sorry, I can't do that."])
        agent, log = make_agent(registry, provider)
        result = await agent.handle_prompt("rm everything", "s1")

        assert result.status == "failed"
        assert result.raw_response == "Sorry, I can't do that."
        assert session.writes == []
        final = [p for e, p in log.events if e == "ai:status"][-1]
        assert final["state"] == "failed"
        assert final["error"]
        assert not agent.busy

    @pytest.mark.asyncio
    async def test_unknown_session_fails(self, registry):
        agent, log = make_agent(registry, ScriptedProvider([]))
        result = await agent.handle_prompt("hi", "ghost")
        assert result.status == "failed"
        assert log.states()[-1] == "failed"

    @pytest.mark.asyncio
    async def test_session_exits_mid_prompt(self, registry, session):
        provider = ScriptedProvider([reply(("keystroke", "exit"), ("keystroke", "Enter"))])
        original = provider.complete

        async def complete_then_exit(system_prompt, messages):
            text = await original(system_prompt, messages)
            session.exit()
            return text

        provider.complete = complete_then_exit
        agent, _ = make_agent(registry, provider)
        result = await agent.handle_prompt("quit", "s1")
        assert result.status == "failed"

    @pytest.mark.asyncio
    async def test_provider_error_fails(self, registry, session):
        class BrokenProvider(ScriptedProvider):
            async def complete(self, system_prompt, messages):
                raise ConnectionError("service unavailable")

        agent, log = make_agent(registry, BrokenProvider([]))
        result = await agent.handle_prompt("hi", "s1")
        assert result.status == "failed"
        assert "service unavailable" in result.error


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_busy_rejects_second_prompt(self, registry, session):
        agent = None
        second_error = []

        class ReentrantProvider(ScriptedProvider):
            async def complete(self, system_prompt, messages):
                try:
                    await agent.handle_prompt("second", "s1")
                except AgentBusy as e:
                    second_error.append(e)
                return await super().complete(system_prompt, messages)

        agent, _ = make_agent(registry, ReentrantProvider([reply()]))
        result = await agent.handle_prompt("first", "s1")

        assert result.status == "completed"
        assert len(second_error) == 1
        assert not agent.busy

    @pytest.mark.asyncio
    async def test_cancel_discards_in_flight_completion(self, registry, session):
        agent = None

        class CancellingProvider(ScriptedProvider):
            async def complete(self, system_prompt, messages):
                agent.cancel()
                return await super().complete(system_prompt, messages)

        agent, log = make_agent(
            registry, CancellingProvider([reply(("keystroke", "rm -rf build"))])
        )
        result = await agent.handle_prompt("clean", "s1")

        assert result.status == "cancelled"
        assert session.writes == []
        assert log.states()[-1] == "cancelled"
        assert not agent.busy

    @pytest.mark.asyncio
    async def test_cancel_interrupts_long_delay(self, registry, session):
        agent, log = make_agent(
            registry,
            ScriptedProvider([reply(("delay", 600_000), ("keystroke", "make\n"))]),
            sleep=asyncio.sleep,
        )
        task = asyncio.create_task(agent.handle_prompt("wait, then build", "s1"))
        for _ in range(100):
            if agent.phase == AgentPhase.EXECUTING:
                break
            await asyncio.sleep(0)
        assert agent.phase == AgentPhase.EXECUTING

        agent.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        assert result.status == "cancelled"
        assert session.writes == []
        assert not agent.busy
        assert log.states()[-1] == "cancelled"
