"""Adaptive dialogue management: pick the next round's strategy from the state of the discussion."""

import logging
from collections import deque
from dataclasses import replace

from src import features
from src.models import ConsensusVerdict, DialogueState, Strategy, Transcript
from src.question_analysis import analyze_question

logger = logging.getLogger(__name__)

HISTORY_CAP = 10
PERFORMANCE_BASELINE = 0.7
_TREND_MARGIN = 0.05

_ADJUSTMENT_GUIDANCE = {
    "deeper": "Go deeper: give concrete mechanisms, numbers, code or steps rather than restating positions.",
    "broader": "Broaden the view: raise an alternative or a consideration neither of you has covered yet.",
    "refocus": "Refocus: the discussion is drifting. Return to exactly what the user asked.",
    "conclude": "Converge: state the final answer you both support and any caveat that still matters.",
}


class AdaptiveDialogueManager:
    """Chooses speaker routing, prompt adjustment and thresholds per round.

    Holds a rolling history of DialogueState snapshots, so create one
    manager per discussion session.
    """

    def __init__(self, history_cap: int = HISTORY_CAP, baseline: float = PERFORMANCE_BASELINE) -> None:
        self._history: deque[DialogueState] = deque(maxlen=history_cap)
        self._qualities: deque[float] = deque(maxlen=history_cap)
        self._baseline = baseline
        self._last_speaker = "persona_b"

    @property
    def history(self) -> list[DialogueState]:
        return list(self._history)

    def build_state(
        self,
        round_number: int,
        question: str,
        transcript: Transcript,
        verdict: ConsensusVerdict,
    ) -> DialogueState:
        """Snapshot the discussion after a round's verdict."""
        analysis = analyze_question(question)
        complexity = min(1.0, len(features.tokenize(question)) / 30 + 0.15 * len(analysis.key_elements))
        if verdict.metrics is not None:
            progress = verdict.metrics.overall
        else:
            progress = verdict.confidence / 100

        a_turns = [t for t in transcript.round_turns(round_number) if t.speaker == "persona_a"]
        b_turns = [t for t in transcript.round_turns(round_number) if t.speaker == "persona_b"]
        engagement = (
            features.engagement_level([t.content for t in a_turns]),
            features.engagement_level([t.content for t in b_turns]),
        )
        return DialogueState(
            round_number=round_number,
            topic=question,
            complexity=complexity,
            consensus_progress=progress,
            participant_engagement=engagement,
        )

    def decide(self, state: DialogueState, responses: list[str], verdict: ConsensusVerdict) -> Strategy:
        drift = self._topic_drift(responses)
        quality = features.dialogue_quality(state.topic, responses)
        convergence = self._convergence_rate()

        if verdict.confidence / 100 > 0.85:
            strategy = Strategy("moderator", "conclude", 0.5, 0.9)
        elif drift > 0.6:
            strategy = Strategy("moderator", "refocus", 1.0, 0.8)
        elif quality < 0.6:
            strategy = Strategy(self._best_performer(), "deeper", 1.5, 0.75)
        elif convergence < 0.3:
            strategy = Strategy(self._other_speaker(), "broader", 1.2, 0.7)
        else:
            strategy = Strategy(self._other_speaker(), "deeper", 1.0, 0.75)

        strategy = self._adapt(strategy)
        self._remember(state, quality)
        if strategy.next_speaker != "moderator":
            self._last_speaker = strategy.next_speaker

        logger.debug(
            "Round %d strategy: %s/%s (drift=%.2f quality=%.2f convergence=%.2f)",
            state.round_number,
            strategy.next_speaker,
            strategy.prompt_adjustment,
            drift,
            quality,
            convergence,
        )
        return strategy

    def optimization_suggestions(self, state: DialogueState) -> list[str]:
        suggestions: list[str] = []
        if state.complexity > 0.8 and state.consensus_progress < 0.6:
            suggestions.append("The question is complex; break it into sub-questions and settle them one at a time.")
        if any(e < 0.5 for e in state.participant_engagement):
            suggestions.append("Engagement is low; prompt each persona to respond directly to the other's points.")
        if state.round_number > 4 and state.consensus_progress < 0.7:
            suggestions.append("Many rounds with slow progress; refocus on the core of the question.")
        return suggestions

    def prompt_guidance(self, strategy: Strategy) -> str:
        """Render a strategy as text for the next round's persona prompts."""
        lines = [_ADJUSTMENT_GUIDANCE[strategy.prompt_adjustment]]
        if strategy.next_speaker in ("persona_a", "persona_b"):
            lines.append(f"Lead speaker this round: {strategy.next_speaker}.")
        if strategy.time_allocation > 1.0:
            lines.append("Take the space you need for a thorough answer.")
        elif strategy.time_allocation < 1.0:
            lines.append("Keep it brief.")
        lines.append(f"Aim for a quality bar of {strategy.quality_threshold:.0%}.")
        return "\n".join(lines)

    # --- internals ---

    @staticmethod
    def _topic_drift(responses: list[str]) -> float:
        if len(responses) < 2:
            return 0.0
        drifts = [
            1 - features.cosine_similarity(prev, cur)
            for prev, cur in zip(responses, responses[1:])
        ]
        return sum(drifts) / len(drifts)

    def _convergence_rate(self) -> float:
        if len(self._history) < 2:
            return 0.5
        recent = list(self._history)[-3:]
        changes = [b.consensus_progress - a.consensus_progress for a, b in zip(recent, recent[1:])]
        return max(0.0, min(1.0, 0.5 + sum(changes) / len(changes)))

    def _best_performer(self) -> str:
        if len(self._history) < 2:
            return "persona_a"
        recent = list(self._history)[-3:]
        avg_a = sum(s.participant_engagement[0] for s in recent) / len(recent)
        avg_b = sum(s.participant_engagement[1] for s in recent) / len(recent)
        return "persona_a" if avg_a > avg_b else "persona_b"

    def _other_speaker(self) -> str:
        return "persona_b" if self._last_speaker == "persona_a" else "persona_a"

    def _adapt(self, strategy: Strategy) -> Strategy:
        if len(self._history) < 3:
            return strategy
        recent = list(self._history)[-3:]
        performance = sum(s.consensus_progress for s in recent) / len(recent)
        if performance < self._baseline:
            return replace(
                strategy,
                quality_threshold=min(0.9, strategy.quality_threshold + 0.1),
                time_allocation=strategy.time_allocation * 1.2,
            )
        if performance > self._baseline + 0.2:
            return replace(
                strategy,
                time_allocation=strategy.time_allocation * 0.9,
                quality_threshold=max(0.6, strategy.quality_threshold - 0.05),
            )
        return strategy

    def _remember(self, state: DialogueState, quality: float) -> None:
        trend = "stable"
        if len(self._qualities) >= 2:
            recent = list(self._qualities)[-2:]
            average = sum(recent) / len(recent)
            if quality > average + _TREND_MARGIN:
                trend = "improving"
            elif quality < average - _TREND_MARGIN:
                trend = "declining"
        self._history.append(replace(state, quality_trend=trend))
        self._qualities.append(quality)
