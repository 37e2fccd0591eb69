"""Persona-bound model client: cache lookup, provider call, exponential-backoff retry."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from config.config_loader import PersonaConfig, RetryConfig
from src.cache import ResponseCache, make_cache_key
from src.metrics import SessionMetrics
from src.models import ModelResponse
from src.providers.base import AIProvider, ChunkCallback, ProviderError, TransientModelError

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, retry: RetryConfig) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(retry.base_delay_sec * retry.multiplier ** attempt, retry.max_delay_sec)


class ModelClient:
    """Invokes one persona's model.

    Transient failures are retried with exponential backoff; permanent ones
    propagate immediately. Cancellation is never retried.
    """

    def __init__(
        self,
        provider: AIProvider,
        persona: PersonaConfig,
        retry: RetryConfig | None = None,
        cache: ResponseCache | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.persona = persona
        self._retry = retry or RetryConfig()
        self._cache = cache
        self._sleep = sleep
        self.metrics: SessionMetrics | None = None

    @property
    def name(self) -> str:
        return self.persona.name

    def cache_key(self, system_prompt: str, user_prompt: str, round_number: int) -> str:
        return make_cache_key(
            system_prompt,
            user_prompt,
            self.provider.name(),
            self.provider.model_string(),
            self.persona.key,
            round_number,
        )

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        round_number: int,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Return the model's full text, streaming snapshots to on_chunk when given.

        Raises:
            ProviderError: Permanent failure, or transient failure after the
                last retry.
        """
        key = self.cache_key(system_prompt, user_prompt, round_number) if self._cache else None
        if self._cache is not None and key is not None:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for %s round %d", self.persona.key, round_number)
                if on_chunk is not None:
                    on_chunk(cached)
                if self.metrics is not None:
                    self.metrics.record_call(self.persona.key, round_number, 0.0, None, cached=True)
                return cached

        response, attempts = await self._call_with_retry(system_prompt, user_prompt, round_number, on_chunk)
        if self.metrics is not None:
            self.metrics.record_call(
                self.persona.key, round_number, response.latency_sec, response.token_count, attempts=attempts,
            )

        if self._cache is not None and key is not None:
            self._cache.set(key, response.content)
        return response.content

    async def _call_with_retry(
        self,
        system_prompt: str,
        user_prompt: str,
        round_number: int,
        on_chunk: ChunkCallback | None,
    ) -> tuple[ModelResponse, int]:
        """Return the response and the number of attempts it took."""
        attempt = 0
        while True:
            try:
                response = await self.provider.generate(system_prompt, user_prompt, round_number, on_chunk)
                if attempt:
                    logger.info(
                        "%s recovered on attempt %d in round %d",
                        self.persona.key, attempt + 1, round_number,
                    )
                return response, attempt + 1
            except TransientModelError as exc:
                if attempt >= self._retry.max_retries:
                    logger.error(
                        "%s failed after %d attempts in round %d: %s",
                        self.persona.key, attempt + 1, round_number, exc,
                    )
                    if self.metrics is not None:
                        self.metrics.record_failure()
                    raise
                delay = backoff_delay(attempt, self._retry)
                logger.warning(
                    "Attempt %d/%d for %s failed in round %d: %s. Retrying in %.1fs",
                    attempt + 1, self._retry.max_retries + 1, self.persona.key, round_number, exc, delay,
                )
                await self._sleep(delay)
                attempt += 1
            except ProviderError as exc:
                logger.error("%s permanent failure in round %d: %s", self.persona.key, round_number, exc)
                if self.metrics is not None:
                    self.metrics.record_failure()
                raise
