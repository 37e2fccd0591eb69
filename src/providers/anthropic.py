"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from src.models import ModelResponse
from src.providers.base import AIProvider, ChunkCallback, PermanentModelError, classify_error

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise PermanentModelError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def _stream(self, system_prompt: str, user_prompt: str, on_chunk: ChunkCallback) -> tuple[str, int | None]:
        parts: list[str] = []
        async with self._client.messages.stream(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        ) as stream:
            async for text in stream.text_stream:
                parts.append(text)
                on_chunk("".join(parts))
            final = await stream.get_final_message()

        token_count: int | None = None
        if final.usage:
            token_count = final.usage.input_tokens + final.usage.output_tokens
        return "".join(parts), token_count

    async def _complete(self, system_prompt: str, user_prompt: str) -> tuple[str, int | None]:
        response = await self._client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        text_blocks = [b.text for b in response.content or [] if b.type == "text"]

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens
        return "\n".join(text_blocks), token_count

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
            raise PermanentModelError(self._config.name, "No text blocks in response")

        logger.info(
            "Anthropic round %d: %.2fs, %s tokens",
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
