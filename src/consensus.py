"""Consensus detection: judge-model verdicts, a normalizing gate, and a keyword fallback.

The judge persona is asked for a strict JSON verdict. Its reply goes through
parse_judge_response (schema check) and normalize_verdict (the gate). Any
parse failure or model error is absorbed into fallback_verdict, so detect()
always returns a fully normalized ConsensusVerdict.
"""

import json
import logging
import math
from dataclasses import replace

from config.config_loader import PersonaConfig, PromptsConfig
from src import features
from src.model_client import ModelClient
from src.models import (
    CONSENSUS_LEVELS,
    DISCUSSION_QUALITIES,
    QUESTION_COVERAGES,
    RECOMMENDED_ACTIONS,
    SOLUTION_COMPLETENESS,
    ConsensusMetrics,
    ConsensusVerdict,
    Transcript,
    Turn,
)
from src.providers.base import ProviderError
from src.question_analysis import analyze_question, describe
from src.synthesis import format_transcript

logger = logging.getLogger(__name__)

QUESTION_MATCH_GATE = 70
GATED_CONFIDENCE_CAP = 60
MIN_TRUSTED_CONFIDENCE = 80
UNTRUSTED_ROUNDS = 3
SUPERFICIAL_ROUNDS = 4
FALLBACK_EXTEND_AFTER_ROUND = 3
FALLBACK_MATCH_CAP = 60
RECENT_ROUNDS_VERBATIM = 2

_GATE_NOTE = " [gated: discussion does not yet fully answer the question]"

RESPONSE_SCHEMA = """Reply with exactly one JSON object of this shape and nothing else:
{
  "hasConsensus": true | false,
  "confidence": 0-100,
  "consensusLevel": "strong" | "medium" | "weak" | "none",
  "reason": "why you reached this verdict",
  "recommendedAction": "continue" | "consensus" | "extend",
  "keyPoints": ["points both participants agree on"],
  "remainingIssues": ["points still disputed or open"],
  "suggestions": ["what the next round should address"],
  "discussionQuality": "superficial" | "adequate" | "thorough" | "excellent",
  "questionMatchScore": 0-100,
  "questionCoverage": "complete" | "partial" | "minimal" | "off-topic",
  "unaddressedAspects": ["parts of the question nobody has answered"],
  "solutionCompleteness": "complete" | "incomplete" | "unclear"
}"""

STRONG_CONSENSUS_CUES = (
    "we have reached consensus",
    "we've reached consensus",
    "we have reached a consensus",
    "reached consensus",
    "we are in full agreement",
    "i completely agree",
    "i fully agree",
    "no disagreement",
    "our views are aligned",
)
MEDIUM_CONSENSUS_CUES = (
    "i agree",
    "agreed",
    "you're right",
    "you are right",
    "good point",
    "makes sense",
    "i concur",
)
DISAGREEMENT_CUES = (
    "i disagree",
    "i don't agree",
    "i do not agree",
    "not convinced",
    "i see it differently",
    "that's not quite right",
    "on the other hand",
)
SOLVED_CUES = (
    "fully answers",
    "completely answers",
    "fully answered",
    "question is answered",
    "question has been answered",
    "problem is solved",
    "fully addressed",
    "covers everything",
)
UNSOLVED_CUES = (
    "still need",
    "still missing",
    "not yet",
    "open question",
    "needs more",
    "remains unclear",
    "haven't covered",
    "have not covered",
)


class JudgeParseError(Exception):
    """Judge reply is not a JSON object matching the verdict contract."""


# --- judge response parsing ---

def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    # json.loads accepts NaN and Infinity.
    if not math.isfinite(value):
        return None
    return float(value)


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _choice(value: object, allowed: tuple[str, ...], default: str) -> str:
    return value if isinstance(value, str) and value in allowed else default


def parse_judge_response(raw: str) -> ConsensusVerdict:
    """Extract and validate the JSON verdict embedded in a judge reply.

    Raises:
        JudgeParseError: No braces, invalid JSON, or a required field
            (hasConsensus, confidence, reason) missing or mistyped.
    """
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise JudgeParseError("No JSON object found in judge response")

    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as exc:
        raise JudgeParseError(f"Invalid JSON in judge response: {exc}") from exc

    if not isinstance(data, dict):
        raise JudgeParseError("Judge response JSON is not an object")
    if not isinstance(data.get("hasConsensus"), bool):
        raise JudgeParseError("hasConsensus missing or not a boolean")
    confidence = _number(data.get("confidence"))
    if confidence is None:
        raise JudgeParseError("confidence missing or not a number")
    if not isinstance(data.get("reason"), str):
        raise JudgeParseError("reason missing or not a string")

    has_consensus = data["hasConsensus"]
    match_score = _number(data.get("questionMatchScore"))
    return ConsensusVerdict(
        has_consensus=has_consensus,
        confidence=confidence,
        reason=data["reason"],
        consensus_level=_choice(data.get("consensusLevel"), CONSENSUS_LEVELS, ""),
        recommended_action=_choice(
            data.get("recommendedAction", data.get("recommendAction")),
            RECOMMENDED_ACTIONS,
            "consensus" if has_consensus else "continue",
        ),
        key_points=_str_list(data.get("keyPoints")),
        remaining_issues=_str_list(data.get("remainingIssues")),
        suggestions=_str_list(data.get("suggestions")),
        discussion_quality=_choice(data.get("discussionQuality"), DISCUSSION_QUALITIES, "adequate"),
        question_match_score=match_score if match_score is not None else 50.0,
        question_coverage=_choice(data.get("questionCoverage"), QUESTION_COVERAGES, "partial"),
        unaddressed_aspects=_str_list(data.get("unaddressedAspects")),
        solution_completeness=_choice(data.get("solutionCompleteness"), SOLUTION_COMPLETENESS, "incomplete"),
        source="judge",
    )


# --- the gate ---

def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _level_for(confidence: float) -> str:
    if confidence >= 85:
        return "strong"
    if confidence >= 70:
        return "medium"
    if confidence >= 50:
        return "weak"
    return "none"


def _demote(action: str, keep_extend: bool) -> str:
    return "extend" if keep_extend and action == "extend" else "continue"


def normalize_verdict(verdict: ConsensusVerdict, round_number: int) -> ConsensusVerdict:
    """Apply the consensus gate. Idempotent.

    recommended_action decides; has_consensus is rewritten to agree with it.
    The action is forced to "continue" when the question-match gate fails,
    in untrusted early rounds, below the trusted confidence, or for a
    superficial discussion in the first rounds. Fallback verdicts keep
    their round-ceiling "extend".
    """
    keep_extend = verdict.source == "fallback"
    confidence = _clamp(verdict.confidence)
    match_score = _clamp(verdict.question_match_score)
    coverage = _choice(verdict.question_coverage, QUESTION_COVERAGES, "partial")
    completeness = _choice(verdict.solution_completeness, SOLUTION_COMPLETENESS, "incomplete")
    quality = _choice(verdict.discussion_quality, DISCUSSION_QUALITIES, "adequate")
    level = _choice(verdict.consensus_level, CONSENSUS_LEVELS, _level_for(confidence))
    action = _choice(
        verdict.recommended_action,
        RECOMMENDED_ACTIONS,
        "consensus" if verdict.has_consensus else "continue",
    )
    reason = verdict.reason

    gate_failed = (
        match_score < QUESTION_MATCH_GATE
        or coverage != "complete"
        or completeness != "complete"
    )
    if gate_failed:
        if action == "consensus" and _GATE_NOTE not in reason:
            reason += _GATE_NOTE
        confidence = min(confidence, GATED_CONFIDENCE_CAP)
        action = _demote(action, keep_extend)

    if round_number <= UNTRUSTED_ROUNDS or confidence < MIN_TRUSTED_CONFIDENCE:
        action = _demote(action, keep_extend)

    if quality == "superficial" and round_number <= SUPERFICIAL_ROUNDS:
        action = _demote(action, keep_extend)

    return replace(
        verdict,
        has_consensus=action == "consensus",
        confidence=confidence,
        consensus_level=level,
        recommended_action=action,
        reason=reason,
        discussion_quality=quality,
        question_match_score=match_score,
        question_coverage=coverage,
        solution_completeness=completeness,
    )


# --- deterministic scoring ---

def _latest_pair(transcript: Transcript) -> tuple[str, str]:
    a_turns = transcript.turns_for("persona_a")
    b_turns = transcript.turns_for("persona_b")
    return (a_turns[-1].content if a_turns else "", b_turns[-1].content if b_turns else "")


def consensus_threshold(round_number: int) -> float:
    if round_number > 5:
        return 0.65
    if round_number > 3:
        return 0.70
    return 0.75


def score_consensus_metrics(question: str, response_a: str, response_b: str, round_number: int) -> ConsensusMetrics:
    similarity = features.lexical_similarity(response_a, response_b)
    alignment = features.argument_alignment(response_a, response_b)
    evidence = features.evidence_consistency(response_a, response_b)
    convergence = features.conclusion_convergence(response_a, response_b)
    quality = features.dialogue_quality(question, [r for r in (response_a, response_b) if r])
    overall = (
        similarity * 0.3
        + alignment * 0.25
        + convergence * 0.2
        + evidence * 0.1
        + quality * 0.15
    )
    return ConsensusMetrics(
        semantic_similarity=similarity,
        argument_alignment=alignment,
        evidence_consistency=evidence,
        conclusion_convergence=convergence,
        dialogue_quality=quality,
        overall=overall,
        threshold=consensus_threshold(round_number),
    )


def explain_metrics(metrics: ConsensusMetrics) -> str:
    lines = [
        f"Overall score: {metrics.overall * 100:.1f}% (threshold {metrics.threshold * 100:.0f}%)",
        f"- Semantic similarity: {metrics.semantic_similarity * 100:.1f}%",
        f"- Argument alignment: {metrics.argument_alignment * 100:.1f}%",
        f"- Evidence consistency: {metrics.evidence_consistency * 100:.1f}%",
        f"- Conclusion convergence: {metrics.conclusion_convergence * 100:.1f}%",
        f"- Dialogue quality: {metrics.dialogue_quality * 100:.1f}%",
    ]
    if metrics.semantic_similarity < 0.5:
        lines.append("The two positions still differ widely; refocus on the core question.")
    elif metrics.argument_alignment < 0.6:
        lines.append("Arguments are not yet aligned; clarify the key disagreements.")
    return "\n".join(lines)


def _quality_label(score: float) -> str:
    if score < 0.3:
        return "superficial"
    if score < 0.6:
        return "adequate"
    if score < 0.8:
        return "thorough"
    return "excellent"


def _sentences_with(text: str, cues: tuple[str, ...], limit: int = 3) -> list[str]:
    found = [s for s in features.split_sentences(text) if any(c in s.lower() for c in cues)]
    return found[:limit]


def fallback_verdict(
    question: str,
    transcript: Transcript,
    round_number: int,
    metrics: ConsensusMetrics | None = None,
) -> ConsensusVerdict:
    """Conservative keyword verdict from the most recent exchange. Never raises."""
    response_a, response_b = _latest_pair(transcript)
    recent = f"{response_a}\n{response_b}"
    lowered = recent.lower()

    strong = any(c in lowered for c in STRONG_CONSENSUS_CUES)
    medium = any(c in lowered for c in MEDIUM_CONSENSUS_CUES)
    disagreement = any(c in lowered for c in DISAGREEMENT_CUES)
    solved = any(c in lowered for c in SOLVED_CUES)
    unsolved = any(c in lowered for c in UNSOLVED_CUES)

    signals = []
    if strong:
        signals.append("strong agreement language")
    elif medium:
        signals.append("partial agreement language")
    if disagreement:
        signals.append("open disagreement")
    if solved:
        signals.append("problem declared solved")
    if unsolved:
        signals.append("problem declared unsolved")

    if disagreement or unsolved:
        level = "none"
    elif strong:
        level = "medium"
    elif medium:
        level = "weak"
    else:
        level = "none"

    responses = [r for r in (response_a, response_b) if r]
    relevance = (
        sum(features.relevance_to_question(question, r) for r in responses) / len(responses)
        if responses else 0.0
    )
    if relevance < 0.2:
        coverage = "off-topic"
    elif relevance < 0.4:
        coverage = "minimal"
    else:
        coverage = "partial"

    analysis = analyze_question(question)
    unaddressed: list[str] = []
    if any("code" in req for req in analysis.context_requirements) and not features.contains_code(recent):
        unaddressed.append("concrete code examples")

    suggestions = ["Check the consensus judge configuration; this verdict comes from keyword fallback."]
    if disagreement:
        suggestions.append("Resolve the open disagreement explicitly in the next round.")
    if unaddressed:
        suggestions.append("Provide the missing " + ", ".join(unaddressed) + ".")

    verdict = ConsensusVerdict(
        has_consensus=False,
        confidence=30.0 if (strong or solved) and not disagreement else 25.0,
        reason="Judge unavailable, keyword fallback: " + (", ".join(signals) if signals else "no clear consensus signal"),
        consensus_level=level,
        recommended_action="extend" if round_number > FALLBACK_EXTEND_AFTER_ROUND else "continue",
        key_points=features.extract_arguments(recent)[:3],
        remaining_issues=_sentences_with(recent, DISAGREEMENT_CUES + UNSOLVED_CUES),
        suggestions=suggestions,
        discussion_quality=_quality_label(features.dialogue_quality(question, responses)),
        question_match_score=min(relevance * 100, FALLBACK_MATCH_CAP),
        question_coverage=coverage,
        unaddressed_aspects=unaddressed,
        solution_completeness="unclear",
        source="fallback",
        metrics=metrics,
    )
    return normalize_verdict(verdict, round_number)


# --- judge prompt ---

def summarize_transcript(transcript: Transcript, names: dict[str, str], recent_rounds: int = RECENT_ROUNDS_VERBATIM) -> str:
    """Structural summary: round count, prose for older rounds, recent rounds verbatim."""
    persona_turns = transcript.persona_turns()
    rounds = sorted({t.round_number for t in persona_turns if t.round_number is not None})
    lines = [f"Total rounds so far: {len(rounds)}"]

    recent = rounds[-recent_rounds:]
    earlier = [r for r in rounds if r not in recent]
    if earlier:
        lines.append("")
        lines.append("Summary of earlier rounds:")
        for number in earlier:
            parts = []
            for turn in transcript.round_turns(number):
                if turn.speaker not in names:
                    continue
                conclusion = features.extract_conclusion(turn.content) or "(no clear position)"
                parts.append(f'{names[turn.speaker]} concluded: "{conclusion}"')
            lines.append(f"- Round {number}: " + "; ".join(parts))

    recent_turns: list[Turn] = [t for t in persona_turns if t.round_number in recent]
    if recent_turns:
        lines.append("")
        lines.append("Most recent rounds (verbatim):")
        lines.append(format_transcript(recent_turns, names))
    return "\n".join(lines)


class ConsensusDetector:
    """Judges whether the two personas have converged on an answer."""

    def __init__(
        self,
        judge: ModelClient,
        prompts: PromptsConfig,
        persona_a: PersonaConfig,
        persona_b: PersonaConfig,
    ) -> None:
        self._judge = judge
        self._prompts = prompts
        self._names = {"persona_a": persona_a.name, "persona_b": persona_b.name}

    def build_prompts(self, question: str, transcript: Transcript, round_number: int) -> tuple[str, str]:
        persona = self._judge.persona
        system_prompt = self._prompts.judge_system.format(name=persona.name, traits=persona.traits_text())
        user_prompt = self._prompts.judge.format(
            question=question,
            analysis=describe(analyze_question(question)),
            summary=summarize_transcript(transcript, self._names),
            round=round_number,
            response_schema=RESPONSE_SCHEMA,
        )
        return system_prompt, user_prompt

    async def detect(self, question: str, transcript: Transcript, round_number: int) -> ConsensusVerdict:
        response_a, response_b = _latest_pair(transcript)
        metrics = score_consensus_metrics(question, response_a, response_b, round_number)
        system_prompt, user_prompt = self.build_prompts(question, transcript, round_number)

        try:
            raw = await self._judge.invoke(system_prompt, user_prompt, round_number=round_number)
            parsed = parse_judge_response(raw)
        except JudgeParseError as exc:
            logger.warning("Round %d judge reply unusable, using fallback: %s", round_number, exc)
            return fallback_verdict(question, transcript, round_number, metrics)
        except ProviderError as exc:
            logger.warning("Round %d judge call failed, using fallback: %s", round_number, exc)
            return fallback_verdict(question, transcript, round_number, metrics)

        verdict = normalize_verdict(replace(parsed, metrics=metrics), round_number)
        logger.info(
            "Round %d verdict: consensus=%s confidence=%.0f action=%s match=%.0f coverage=%s",
            round_number,
            verdict.has_consensus,
            verdict.confidence,
            verdict.recommended_action,
            verdict.question_match_score,
            verdict.question_coverage,
        )
        return verdict
