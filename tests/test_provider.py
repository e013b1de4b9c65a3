"""Tests for the OpenAI completion provider (client mocked)."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from shellbridge.agent.provider import OpenAICompletionProvider
from shellbridge.core.config import AgentConfig


def _response(content):
    choice = SimpleNamespace(message=SimpleNamespace(content=content))
    return SimpleNamespace(choices=[choice])


@pytest.fixture
def provider():
    p = OpenAICompletionProvider(AgentConfig(api_key="sk-test", model="gpt-4o-mini", max_tokens=256))
    p.client = MagicMock()
    p.client.chat.completions.create = AsyncMock(return_value=_response('{"actions": []}'))
    p.client.close = AsyncMock()
    return p


@pytest.mark.asyncio
async def test_complete_sends_system_prompt_first(provider):
    messages = [{"role": "user", "content": "User Request: ls"}]
    text = await provider.complete("You operate a terminal.", messages)

    assert text == '{"actions": []}'
    kwargs = provider.client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["max_tokens"] == 256
    assert kwargs["messages"][0] == {"role": "system", "content": "You operate a terminal."}
    assert kwargs["messages"][1:] == messages


@pytest.mark.asyncio
async def test_empty_content_is_empty_string(provider):
    provider.client.chat.completions.create.return_value = _response(None)
    assert await provider.complete("sys", []) == ""


@pytest.mark.asyncio
async def test_stop_closes_client(provider):
    client = provider.client
    await provider.stop()
    client.close.assert_awaited_once()
    assert provider.client is None
    assert (await provider.health_check())["status"] == "not_started"


@pytest.mark.asyncio
async def test_start_uses_base_url():
    provider = OpenAICompletionProvider(
        AgentConfig(api_key="sk-test", base_url="https://openrouter.ai/api/v1")
    )
    await provider.start()
    try:
        assert str(provider.client.base_url).startswith("https://openrouter.ai/api/v1")
        assert (await provider.health_check())["status"] == "ready"
    finally:
        await provider.stop()
