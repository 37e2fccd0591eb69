"""Shared pytest fixtures."""

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    CacheConfig,
    DefaultsConfig,
    ModelConfig,
    PersonaConfig,
    PromptsConfig,
    RetryConfig,
)
from src.model_client import ModelClient
from src.models import ModelResponse, Transcript, Turn
from src.providers.base import AIProvider, ChunkCallback

QUESTION = "How should we cache API responses in a Python service?"


def judge_reply(**overrides) -> str:
    """A judge reply wrapping a JSON verdict; defaults to 'keep discussing'."""
    data = {
        "hasConsensus": False,
        "confidence": 40,
        "consensusLevel": "weak",
        "reason": "The participants are still exploring options.",
        "recommendedAction": "continue",
        "keyPoints": ["Caching reduces latency"],
        "remainingIssues": ["Invalidation strategy is undecided"],
        "suggestions": ["Settle on a TTL"],
        "discussionQuality": "adequate",
        "questionMatchScore": 60,
        "questionCoverage": "partial",
        "unaddressedAspects": [],
        "solutionCompleteness": "incomplete",
    }
    data.update(overrides)
    return "Here is my assessment:\n" + json.dumps(data) + "\nEnd of assessment."


CONSENSUS_REPLY = judge_reply(
    hasConsensus=True,
    confidence=92,
    consensusLevel="strong",
    reason="Both agree on a complete, concrete answer.",
    recommendedAction="consensus",
    remainingIssues=[],
    discussionQuality="thorough",
    questionMatchScore=90,
    questionCoverage="complete",
    solutionCompleteness="complete",
)


class MockProvider(AIProvider):
    """Test double AIProvider.

    `replies` is a script consumed one item per call: a string is returned as
    the content, an exception instance is raised. Once the script runs out,
    `response_content` is returned.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = "Mock response",
        replies: list | None = None,
    ) -> None:
        self._name = provider_name
        self._response_content = response_content
        self.replies = list(replies or [])
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(side_effect=self._scripted)  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def _scripted(
        self,
        system_prompt: str,
        user_prompt: str,
        round_number: int,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        item = self.replies.pop(0) if self.replies else self._response_content
        if isinstance(item, BaseException):
            raise item
        if on_chunk is not None:
            words = item.split(" ")
            for i in range(1, len(words) + 1):
                on_chunk(" ".join(words[:i]))
        return ModelResponse(
            provider=self._name,
            model="mock-model",
            round_number=round_number,
            content=item,
            latency_sec=0.1,
            token_count=10,
        )

    async def generate(  # type: ignore[override]
        self,
        system_prompt: str,
        user_prompt: str,
        round_number: int,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        """Default implementation; replaced by AsyncMock in __init__."""
        return await self._scripted(system_prompt, user_prompt, round_number, on_chunk)


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="openai",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        persona_a_system="You are {name} ({traits}), talking with {partner}. Round {round}.\n{guidance}",
        persona_b_system="You are {name} ({traits}), replying to {partner}. Round {round}.\n{guidance}",
        synthesis_system="You are {name} ({traits}). Merge {persona_a} ({persona_a_traits}) and {persona_b} ({persona_b_traits}).",
        judge_system="You are {name} ({traits}). Reply with JSON only.",
        opening="Question: {question}\nOpen the discussion.",
        continuation="Question: {question}\nSo far:\n{transcript}\nContinue.",
        response="Question: {question}\n{partner} said:\n{partner_turn}\nSo far:\n{transcript}\nRespond.",
        synthesis="Question: {question}\n{persona_a} and {persona_b}, {rounds} rounds:\n{transcript}\nAnswer.",
        judge="Question: {question}\n{analysis}\n{summary}\nRound {round}\n{response_schema}",
    )


@pytest.fixture
def sample_personas() -> dict[str, PersonaConfig]:
    return {
        "persona_a": PersonaConfig("persona_a", "Analyst", "alpha", ["rigorous"]),
        "persona_b": PersonaConfig("persona_b", "Pragmatist", "beta", ["practical"]),
        "synthesis": PersonaConfig("synthesis", "Synthesizer", "gamma", ["balanced"]),
        "judge": PersonaConfig("judge", "Consensus Judge", "delta", ["strict"]),
    }


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    sample_prompts_config: PromptsConfig,
    sample_personas: dict[str, PersonaConfig],
) -> AppConfig:
    models = {
        key: ModelConfig(
            name=key,
            sdk="openai",
            model=f"{key}-model",
            api_key_env=f"{key.upper()}_API_KEY",
            timeout_sec=60,
            max_tokens=4096,
        )
        for key in ("alpha", "beta", "gamma", "delta")
    }
    return AppConfig(
        defaults=DefaultsConfig(max_rounds=4, output_dir=tmp_path / "output"),
        models=models,
        personas=sample_personas,
        prompts=sample_prompts_config,
        retry=RetryConfig(max_retries=2, base_delay_sec=1.0, multiplier=2.0, max_delay_sec=10.0),
        cache=CacheConfig(),
        available_models=set(models),
    )


@pytest.fixture
def mock_providers() -> dict[str, MockProvider]:
    """One scripted provider per persona model: alpha=A, beta=B, gamma=synthesis, delta=judge."""
    return {
        "alpha": MockProvider("alpha", "I think we should cache responses with a TTL. For example, 60 seconds."),
        "beta": MockProvider("beta", "I agree that a TTL works. We should also invalidate on writes."),
        "gamma": MockProvider("gamma", "## Final answer\nCache API responses with a TTL and invalidate on writes."),
        "delta": MockProvider("delta", judge_reply()),
    }


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def make_clients(sample_app_config: AppConfig, mock_providers: dict[str, MockProvider], fake_sleep: FakeSleep):
    """Factory for role -> ModelClient over the mock providers."""

    def _make(cache=None) -> dict[str, ModelClient]:
        return {
            role: ModelClient(
                mock_providers[persona.model],
                persona,
                retry=sample_app_config.retry,
                cache=cache,
                sleep=fake_sleep,
            )
            for role, persona in sample_app_config.personas.items()
        }

    return _make


def build_transcript(question: str, rounds: list[tuple[str, str]]) -> Transcript:
    """Transcript with a user turn and one (persona_a, persona_b) pair per round."""
    transcript = Transcript(original_question=question)
    transcript.turns.append(Turn(speaker="user", content=question))
    for number, (text_a, text_b) in enumerate(rounds, start=1):
        transcript.turns.append(Turn(speaker="persona_a", content=text_a, round_number=number))
        transcript.turns.append(Turn(speaker="persona_b", content=text_b, round_number=number))
    transcript.current_round = len(rounds)
    return transcript
