"""Final synthesis: format the transcript, call the synthesis persona, return the closing turn."""

import logging

from config.config_loader import PersonaConfig, PromptsConfig
from src.model_client import ModelClient
from src.models import ConsensusVerdict, Transcript, Turn
from src.providers.base import ChunkCallback

logger = logging.getLogger(__name__)


def format_transcript(turns: list[Turn], names: dict[str, str]) -> str:
    """Format persona turns into one block; speakers missing from names are skipped."""
    parts: list[str] = []
    for turn in turns:
        if turn.speaker not in names:
            continue
        header = f"**{names[turn.speaker]}**"
        if turn.round_number is not None:
            header += f" (round {turn.round_number})"
        parts.append(f"{header}\n{turn.content}")
    return "\n\n".join(parts)


def build_synthesis_prompts(
    question: str,
    transcript: Transcript,
    prompts: PromptsConfig,
    synthesizer: PersonaConfig,
    persona_a: PersonaConfig,
    persona_b: PersonaConfig,
) -> tuple[str, str]:
    names = {"persona_a": persona_a.name, "persona_b": persona_b.name}
    system_prompt = prompts.synthesis_system.format(
        name=synthesizer.name,
        traits=synthesizer.traits_text(),
        persona_a=persona_a.name,
        persona_a_traits=persona_a.traits_text(),
        persona_b=persona_b.name,
        persona_b_traits=persona_b.traits_text(),
    )
    user_prompt = prompts.synthesis.format(
        question=question,
        persona_a=persona_a.name,
        persona_b=persona_b.name,
        rounds=transcript.completed_rounds,
        transcript=format_transcript(transcript.persona_turns(), names),
    )
    return system_prompt, user_prompt


async def synthesize(
    question: str,
    transcript: Transcript,
    client: ModelClient,
    prompts: PromptsConfig,
    persona_a: PersonaConfig,
    persona_b: PersonaConfig,
    verdict: ConsensusVerdict,
    on_chunk: ChunkCallback | None = None,
) -> Turn:
    """Run synthesis and return the terminal synthesis turn.

    Args:
        question: The original question.
        transcript: All completed discussion rounds.
        client: Model client bound to the synthesis persona.
        prompts: Prompt templates from config.
        persona_a: First discussion persona, named in the prompt.
        persona_b: Second discussion persona, named in the prompt.
        verdict: The verdict that triggered synthesis; attached to the turn.
        on_chunk: Optional streaming snapshot callback.

    Returns:
        Frozen synthesis Turn tagged with the verdict.

    Raises:
        ProviderError: If the synthesis call fails.
    """
    system_prompt, user_prompt = build_synthesis_prompts(
        question, transcript, prompts, client.persona, persona_a, persona_b,
    )
    round_number = transcript.completed_rounds + 1

    logger.info("Running synthesis via %s (%s)", client.name, client.provider.name())
    content = await client.invoke(system_prompt, user_prompt, round_number=round_number, on_chunk=on_chunk)

    return Turn(speaker="synthesis", content=content, round_number=round_number, verdict=verdict)
