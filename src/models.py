"""Dataclasses for the discussion engine: turns, transcripts, verdicts, dialogue state."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from src.metrics import SessionMetrics

SPEAKERS = ("user", "persona_a", "persona_b", "synthesis", "error")
CONSENSUS_LEVELS = ("strong", "medium", "weak", "none")
RECOMMENDED_ACTIONS = ("continue", "consensus", "extend")
DISCUSSION_QUALITIES = ("superficial", "adequate", "thorough", "excellent")
QUESTION_COVERAGES = ("complete", "partial", "minimal", "off-topic")
SOLUTION_COMPLETENESS = ("complete", "incomplete", "unclear")


class SessionState(Enum):
    IDLE = "idle"
    RUNNING_ROUND = "running_round"
    DETECTING_CONSENSUS = "detecting_consensus"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.FAILED, SessionState.CANCELLED)


@dataclass
class ModelResponse:
    provider: str          # model key from settings, e.g. "openai", "claude"
    model: str             # actual model string used
    round_number: int
    content: str
    latency_sec: float
    token_count: int | None


@dataclass
class ConsensusMetrics:
    semantic_similarity: float
    argument_alignment: float
    evidence_consistency: float
    conclusion_convergence: float
    dialogue_quality: float
    overall: float
    threshold: float

    @property
    def above_threshold(self) -> bool:
        return self.overall > self.threshold


@dataclass
class ConsensusVerdict:
    has_consensus: bool
    confidence: float                    # 0-100
    reason: str
    consensus_level: str = "none"
    recommended_action: str = "continue"
    key_points: list[str] = field(default_factory=list)
    remaining_issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    discussion_quality: str = "adequate"
    question_match_score: float = 50.0   # 0-100
    question_coverage: str = "partial"
    unaddressed_aspects: list[str] = field(default_factory=list)
    solution_completeness: str = "incomplete"
    source: str = "judge"                # "judge" or "fallback"
    metrics: ConsensusMetrics | None = None


@dataclass
class Turn:
    speaker: str                         # one of SPEAKERS
    content: str
    round_number: int | None = None
    verdict: ConsensusVerdict | None = None
    streaming: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def update_stream(self, text: str) -> None:
        """Replace content with the latest streamed snapshot."""
        if not self.streaming:
            raise ValueError(f"Turn {self.id} is frozen")
        self.content = text

    def freeze(self, text: str | None = None) -> None:
        if text is not None:
            self.content = text
        self.streaming = False


@dataclass
class Transcript:
    original_question: str
    turns: list[Turn] = field(default_factory=list)
    current_round: int = 0
    is_complete: bool = False
    is_processing: bool = False
    state: SessionState = SessionState.IDLE
    final_verdict: ConsensusVerdict | None = None
    verdicts: list[ConsensusVerdict] = field(default_factory=list)
    pending: Turn | None = None          # in-flight streaming turn, not yet in turns
    error: str | None = None
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    def turns_for(self, speaker: str) -> list[Turn]:
        return [t for t in self.turns if t.speaker == speaker]

    def round_turns(self, round_number: int) -> list[Turn]:
        return [t for t in self.turns if t.round_number == round_number]

    def persona_turns(self) -> list[Turn]:
        return [t for t in self.turns if t.speaker in ("persona_a", "persona_b")]

    @property
    def completed_rounds(self) -> int:
        """Rounds in which both personas have spoken."""
        return len(self.turns_for("persona_b"))


@dataclass
class DialogueState:
    round_number: int
    topic: str
    complexity: float
    consensus_progress: float            # 0-1
    participant_engagement: tuple[float, float]  # (persona_a, persona_b)
    quality_trend: str = "stable"        # "improving", "stable", "declining"


@dataclass
class Strategy:
    next_speaker: str                    # "persona_a", "persona_b", "moderator"
    prompt_adjustment: str               # "deeper", "broader", "refocus", "conclude"
    time_allocation: float
    quality_threshold: float
