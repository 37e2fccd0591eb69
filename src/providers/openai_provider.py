"""OpenAI-compatible provider using openai SDK with native async.

Also serves any OpenAI-compatible endpoint (DeepSeek, xAI, self-hosted) via base_url.
"""

import asyncio
import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from src.models import ModelResponse
from src.providers.base import AIProvider, ChunkCallback, PermanentModelError, classify_error

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise PermanentModelError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _messages(self, system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    async def _stream(self, system_prompt: str, user_prompt: str, on_chunk: ChunkCallback) -> tuple[str, int | None]:
        stream = await self._client.chat.completions.create(
            model=self._config.model,
            messages=self._messages(system_prompt, user_prompt),
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            stream=True,
        )
        parts: list[str] = []
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content or ""
            if delta:
                parts.append(delta)
                on_chunk("".join(parts))
        return "".join(parts), None

    async def _complete(self, system_prompt: str, user_prompt: str) -> tuple[str, int | None]:
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=self._messages(system_prompt, user_prompt),
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice else None
        token_count = response.usage.total_tokens if response.usage else None
        return content or "", token_count

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        round_number: int,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        start = time.monotonic()
        try:
            if on_chunk is not None:
                call = self._stream(system_prompt, user_prompt, on_chunk)
            else:
                call = self._complete(system_prompt, user_prompt)
            content, token_count = await asyncio.wait_for(call, timeout=self._config.timeout_sec)
        except TimeoutError as exc:
            raise classify_error(
                self._config.name, TimeoutError(f"no reply after {self._config.timeout_sec}s")
            ) from exc
        except Exception as exc:
            raise classify_error(self._config.name, exc) from exc

        latency = time.monotonic() - start

        if not content:
            raise PermanentModelError(self._config.name, "Empty response content")

        logger.info(
            "OpenAI-compatible %s round %d: %.2fs, %s tokens",
            self._config.name,
            round_number,
            latency,
            token_count,
        )

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            round_number=round_number,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
