"""Discussion orchestration: the round state machine that sequences persona turns, verdicts and synthesis."""

import asyncio
import logging
import time
from collections.abc import Callable

from config.config_loader import PERSONA_ROLES, PersonaConfig, PromptsConfig
from src.consensus import ConsensusDetector
from src.dialogue import AdaptiveDialogueManager
from src.model_client import ModelClient
from src.models import ConsensusVerdict, SessionState, Strategy, Transcript, Turn
from src.providers.base import ProviderError
from src.question_analysis import analyze_question, targeted_guidance
from src.synthesis import format_transcript, synthesize

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 4

TurnCallback = Callable[[Turn], None]
VerdictCallback = Callable[[ConsensusVerdict], None]


class Discussion:
    """One question, discussed by two personas until consensus or the round cap.

    The transcript is readable at any time; run() drives it through
    IDLE -> RUNNING_ROUND -> DETECTING_CONSENSUS -> ... -> SYNTHESIZING -> COMPLETE,
    or into FAILED / CANCELLED.
    """

    def __init__(
        self,
        question: str,
        clients: dict[str, ModelClient],
        prompts: PromptsConfig,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        stream: bool = False,
        detector: ConsensusDetector | None = None,
        dialogue: AdaptiveDialogueManager | None = None,
        on_turn: TurnCallback | None = None,
        on_verdict: VerdictCallback | None = None,
        on_stream: TurnCallback | None = None,
    ) -> None:
        missing = [role for role in PERSONA_ROLES if role not in clients]
        if missing:
            raise ValueError(f"Missing model clients for: {', '.join(missing)}")
        if max_rounds < 1:
            raise ValueError(f"max_rounds must be >= 1, got {max_rounds}")
        if not question.strip():
            raise ValueError("Question must not be empty")

        self.transcript = Transcript(original_question=question)
        self._clients = clients
        self._prompts = prompts
        self._max_rounds = max_rounds
        self._stream = stream
        self._detector = detector or ConsensusDetector(
            clients["judge"], prompts, clients["persona_a"].persona, clients["persona_b"].persona,
        )
        self._dialogue = dialogue or AdaptiveDialogueManager()
        self._on_turn = on_turn
        self._on_verdict = on_verdict
        self._on_stream = on_stream
        self._analysis = analyze_question(question)
        for client in clients.values():
            client.metrics = self.transcript.metrics

    @property
    def question(self) -> str:
        return self.transcript.original_question

    def _persona(self, role: str) -> PersonaConfig:
        return self._clients[role].persona

    @property
    def _names(self) -> dict[str, str]:
        return {role: self._persona(role).name for role in ("persona_a", "persona_b")}

    async def run(self) -> Transcript:
        """Drive the discussion to a terminal state and return the transcript.

        Model failures end in FAILED with an error turn appended. Cancellation
        discards any in-flight turn, sets CANCELLED and re-raises.
        """
        transcript = self.transcript
        if transcript.state is not SessionState.IDLE:
            raise RuntimeError(f"Discussion already started (state={transcript.state.value})")

        transcript.is_processing = True
        self._append(Turn(speaker="user", content=self.question))
        logger.info("Discussion started: max %d rounds", self._max_rounds)

        try:
            verdict = await self._run_rounds()
            transcript.state = SessionState.SYNTHESIZING
            await self._synthesize(verdict)
            transcript.final_verdict = verdict
            transcript.is_complete = True
            transcript.state = SessionState.COMPLETE
            logger.info("Discussion complete after %d rounds", transcript.completed_rounds)
        except asyncio.CancelledError:
            transcript.pending = None
            transcript.state = SessionState.CANCELLED
            logger.warning("Discussion cancelled in round %d", transcript.current_round)
            raise
        except ProviderError as exc:
            self._fail(exc)
            logger.error("Discussion failed in round %d: %s", transcript.current_round, exc)
        except Exception as exc:
            self._fail(exc)
            logger.exception("Discussion failed unexpectedly in round %d", transcript.current_round)
        finally:
            transcript.is_processing = False

        return transcript

    async def _run_rounds(self) -> ConsensusVerdict:
        transcript = self.transcript
        strategy: Strategy | None = None
        verdict: ConsensusVerdict | None = None

        for round_number in range(1, self._max_rounds + 1):
            transcript.current_round = round_number
            transcript.state = SessionState.RUNNING_ROUND
            logger.info("Starting round %d", round_number)

            guidance = self._guidance(round_number, strategy, verdict)
            turn_a = await self._speak("persona_a", round_number, self._prompt_a(round_number), guidance)
            turn_b = await self._speak("persona_b", round_number, self._prompt_b(turn_a), guidance)

            transcript.state = SessionState.DETECTING_CONSENSUS
            started = time.monotonic()
            verdict = await self._detector.detect(self.question, transcript, round_number)
            transcript.metrics.record_consensus(time.monotonic() - started, verdict.question_match_score)
            transcript.verdicts.append(verdict)
            if self._on_verdict:
                self._on_verdict(verdict)

            if verdict.recommended_action == "consensus":
                logger.info("Consensus reached in round %d (confidence %.0f)", round_number, verdict.confidence)
                break
            if round_number >= self._max_rounds:
                logger.info("Round cap %d reached without consensus", self._max_rounds)
                break

            state = self._dialogue.build_state(round_number, self.question, transcript, verdict)
            previous = strategy
            strategy = self._dialogue.decide(state, [turn_a.content, turn_b.content], verdict)
            if previous is not None and previous.prompt_adjustment != strategy.prompt_adjustment:
                transcript.metrics.record_adjustment()
            for hint in self._dialogue.optimization_suggestions(state):
                logger.debug("Round %d hint: %s", round_number, hint)

        if verdict is None:
            raise RuntimeError("Discussion ended without a verdict")
        return verdict

    def _guidance(
        self,
        round_number: int,
        strategy: Strategy | None,
        verdict: ConsensusVerdict | None,
    ) -> str:
        sections = [targeted_guidance(self._analysis, round_number)]
        if strategy is not None:
            sections.append(self._dialogue.prompt_guidance(strategy))
        if verdict is not None:
            open_points = verdict.remaining_issues + verdict.unaddressed_aspects
            if open_points:
                sections.append("Still open from the last round:\n" + "\n".join(f"- {p}" for p in open_points))
        return "\n\n".join(sections)

    def _prompt_a(self, round_number: int) -> str:
        if round_number == 1:
            return self._prompts.opening.format(question=self.question)
        return self._prompts.continuation.format(
            question=self.question,
            transcript=format_transcript(self.transcript.persona_turns(), self._names),
        )

    def _prompt_b(self, turn_a: Turn) -> str:
        return self._prompts.response.format(
            question=self.question,
            partner=self._persona("persona_a").name,
            partner_turn=turn_a.content,
            transcript=format_transcript(self.transcript.persona_turns(), self._names),
        )

    def _system_prompt(self, role: str, round_number: int, guidance: str) -> str:
        partner = "persona_b" if role == "persona_a" else "persona_a"
        template = self._prompts.persona_a_system if role == "persona_a" else self._prompts.persona_b_system
        persona = self._persona(role)
        return template.format(
            name=persona.name,
            traits=persona.traits_text(),
            partner=self._persona(partner).name,
            round=round_number,
            guidance=guidance,
        )

    async def _speak(self, role: str, round_number: int, user_prompt: str, guidance: str) -> Turn:
        system_prompt = self._system_prompt(role, round_number, guidance)
        on_chunk = self._begin_stream(role, round_number)
        content = await self._clients[role].invoke(
            system_prompt, user_prompt, round_number=round_number, on_chunk=on_chunk,
        )
        turn = self._finish_stream(content) or Turn(speaker=role, content=content, round_number=round_number)
        self._append(turn)
        return turn

    async def _synthesize(self, verdict: ConsensusVerdict) -> None:
        on_chunk = self._begin_stream("synthesis", self.transcript.completed_rounds + 1)
        turn = await synthesize(
            self.question,
            self.transcript,
            self._clients["synthesis"],
            self._prompts,
            self._persona("persona_a"),
            self._persona("persona_b"),
            verdict,
            on_chunk=on_chunk,
        )
        streamed = self._finish_stream(turn.content)
        if streamed is not None:
            streamed.verdict = turn.verdict
            turn = streamed
        self._append(turn)

    def _begin_stream(self, speaker: str, round_number: int) -> Callable[[str], None] | None:
        if not self._stream:
            return None
        pending = Turn(speaker=speaker, content="", round_number=round_number, streaming=True)
        self.transcript.pending = pending

        def on_chunk(text: str) -> None:
            pending.update_stream(text)
            if self._on_stream:
                self._on_stream(pending)

        return on_chunk

    def _finish_stream(self, content: str) -> Turn | None:
        pending = self.transcript.pending
        self.transcript.pending = None
        if pending is not None:
            pending.freeze(content)
        return pending

    def _append(self, turn: Turn) -> None:
        self.transcript.turns.append(turn)
        if self._on_turn:
            self._on_turn(turn)

    def _fail(self, exc: Exception) -> None:
        transcript = self.transcript
        transcript.pending = None
        transcript.error = str(exc)
        transcript.state = SessionState.FAILED
        self._append(Turn(speaker="error", content=f"Discussion failed: {exc}", round_number=transcript.current_round))
