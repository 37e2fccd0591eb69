"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from src.models import ModelResponse
from src.providers.base import AIProvider, ChunkCallback, PermanentModelError, classify_error

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise PermanentModelError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _generation_config(self, system_prompt: str) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )

    async def _stream(self, system_prompt: str, user_prompt: str, on_chunk: ChunkCallback) -> tuple[str, int | None]:
        parts: list[str] = []
        token_count: int | None = None
        stream = await self._client.aio.models.generate_content_stream(
            model=self._config.model,
            contents=user_prompt,
            config=self._generation_config(system_prompt),
        )
        async for chunk in stream:
            if chunk.text:
                parts.append(chunk.text)
                on_chunk("".join(parts))
            if chunk.usage_metadata and chunk.usage_metadata.total_token_count:
                token_count = chunk.usage_metadata.total_token_count
        return "".join(parts), token_count

    async def _complete(self, system_prompt: str, user_prompt: str) -> tuple[str, int | None]:
        response = await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=user_prompt,
            config=self._generation_config(system_prompt),
        )
        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count
        return response.text or "", token_count

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
            raise PermanentModelError(self._config.name, "Empty response text")

        logger.info(
            "Gemini round %d: %.2fs, %s tokens",
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
