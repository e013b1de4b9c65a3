"""
Completion providers — where the agent loop's text comes from.

The loop only needs ``complete(system_prompt, messages) -> str``. The
shipped provider uses the OpenAI SDK and works against any
OpenAI-compatible base_url.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from openai import AsyncOpenAI

from shellbridge.core.config import AgentConfig

logger = logging.getLogger(__name__)


class CompletionProvider(ABC):
    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def complete(self, system_prompt: str, messages: list[dict]) -> str:
        """Return the full text of one (non-streamed) completion."""

    async def health_check(self) -> dict:
        return {"provider": self.__class__.__name__, "status": "unknown"}


class OpenAICompletionProvider(CompletionProvider):
    def __init__(self, config: AgentConfig):
        self.config = config
        self.client: AsyncOpenAI | None = None

    async def start(self) -> None:
        if self.client:
            return  # Already started

        client_kwargs = {}
        if self.config.api_key:
            client_kwargs["api_key"] = self.config.api_key
        if self.config.base_url:
            client_kwargs["base_url"] = self.config.base_url
            logger.info(f"Using custom base_url: {self.config.base_url}")

        self.client = AsyncOpenAI(**client_kwargs)
        logger.info(f"Completion provider ready (model={self.config.model})")

    async def stop(self) -> None:
        if self.client:
            await self.client.close()
        self.client = None

    async def complete(self, system_prompt: str, messages: list[dict]) -> str:
        if not self.client:
            await self.start()

        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def health_check(self) -> dict:
        status = "ready" if self.client else "not_started"
        return {
            "provider": "openai",
            "model": self.config.model,
            "status": status,
        }
