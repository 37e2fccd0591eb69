"""Deterministic text features for consensus scoring and dialogue analysis.

Every function here is pure: no I/O, no randomness, and degenerate input
(empty text, no matches) yields a neutral score instead of an exception.
"""

import math
import re
from collections import Counter

_TOKEN_SPLIT = re.compile(r"\W+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+|[。！？]|\n{2,}")

OPINION_CUES = (
    "i think",
    "i believe",
    "in my view",
    "we should",
    "you should",
    "should",
    "i recommend",
    "i suggest",
    "the key is",
    "it is important",
    "the best approach",
    "the best way",
)

EVIDENCE_CUES = (
    "for example",
    "for instance",
    "according to",
    "research shows",
    "data shows",
    "studies show",
    "benchmark",
    "measured",
    "in practice",
    "e.g.",
)

EVIDENCE_SUPPORT_CUES = ("confirms", "consistent with", "supports", "agrees with", "as shown")
EVIDENCE_CONFLICT_CUES = ("contradicts", "however", "but", "on the contrary", "disproves", "not true")

# Ordered by priority: the first pattern that matches wins.
CONCLUSION_PATTERNS = (
    re.compile(r"\bin summary\b[^.!?]*[.!?]", re.IGNORECASE),
    re.compile(r"\bin conclusion\b[^.!?]*[.!?]", re.IGNORECASE),
    re.compile(r"\bto summari[sz]e\b[^.!?]*[.!?]", re.IGNORECASE),
    re.compile(r"\boverall\b[^.!?]*[.!?]", re.IGNORECASE),
    re.compile(r"\btherefore\b[^.!?]*[.!?]", re.IGNORECASE),
    re.compile(r"\bso\b,?[^.!?]*[.!?]", re.IGNORECASE),
)

DEPTH_CUES = (
    "specifically",
    "for example",
    "in other words",
    "furthermore",
    "in depth",
    "root cause",
    "taking everything into account",
    "from another angle",
    "in detail",
    "first",
    "second",
    "finally",
)

ENGAGEMENT_CUES = (
    "i agree",
    "i think",
    "you mentioned",
    "you're right",
    "you are right",
    "i'd add",
    "i would add",
    "regarding your point",
    "i see it differently",
    "let's consider",
)

_CODE_LINE = re.compile(
    r"^\s*(def |class |function\b|const |let |var |return\b|import |from \S+ import|#include|public |private )"
    r"|[;{}]\s*$",
    re.MULTILINE,
)


def tokenize(text: str) -> list[str]:
    """Lowercase, split on non-word runs, drop tokens of two characters or fewer."""
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) > 2]


def lexical_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two token sets. Two empty inputs score 0.0."""
    set_a, set_b = set(tokenize(a)), set(tokenize(b))
    union = set_a | set_b
    if not union:
        # Only short tokens on both sides: fall back to exact comparison.
        return 1.0 if a.strip() and a.strip().lower() == b.strip().lower() else 0.0
    return len(set_a & set_b) / len(union)


def cosine_similarity(a: str, b: str) -> float:
    """Cosine similarity over term-frequency vectors."""
    freq_a, freq_b = Counter(tokenize(a)), Counter(tokenize(b))
    if not freq_a or not freq_b:
        return 0.0
    dot = sum(count * freq_b[token] for token, count in freq_a.items())
    norm_a = math.sqrt(sum(c * c for c in freq_a.values()))
    norm_b = math.sqrt(sum(c * c for c in freq_b.values()))
    return dot / (norm_a * norm_b)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s and s.strip()]


def _contains_any(text: str, cues: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(cue in lowered for cue in cues)


def count_cues(text: str, cues: tuple[str, ...]) -> int:
    lowered = text.lower()
    return sum(1 for cue in cues if cue in lowered)


def extract_arguments(text: str) -> list[str]:
    """Sentences that carry an opinion marker."""
    return [s for s in split_sentences(text) if len(s) > 10 and _contains_any(s, OPINION_CUES)]


def argument_alignment(a: str, b: str) -> float:
    """Mean pairwise similarity across both sides' arguments; 0.5 if either has none."""
    args_a, args_b = extract_arguments(a), extract_arguments(b)
    if not args_a or not args_b:
        return 0.5
    scores = [lexical_similarity(x, y) for x in args_a for y in args_b]
    return sum(scores) / len(scores)


def extract_evidence(text: str) -> list[str]:
    return [s for s in split_sentences(text) if _contains_any(s, EVIDENCE_CUES)]


def _compare_evidence(ev_a: str, ev_b: str) -> float:
    combined = f"{ev_a} {ev_b}"
    if _contains_any(combined, EVIDENCE_CONFLICT_CUES):
        return 0.2
    if _contains_any(combined, EVIDENCE_SUPPORT_CUES):
        return 0.8
    return 0.5 + 0.5 * lexical_similarity(ev_a, ev_b)


def evidence_consistency(a: str, b: str) -> float:
    """How well the two sides' evidence agrees, penalised for conflicts; 0.5 if either has none."""
    ev_a, ev_b = extract_evidence(a), extract_evidence(b)
    if not ev_a or not ev_b:
        return 0.5
    scores = [_compare_evidence(x, y) for x in ev_a for y in ev_b]
    conflicts = sum(1 for s in scores if s < 0.3)
    average = sum(scores) / len(scores)
    return max(0.0, average - (conflicts / len(scores)) * 0.5)


def extract_conclusion(text: str) -> str | None:
    for pattern in CONCLUSION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    sentences = split_sentences(text)
    return sentences[-1] if sentences else None


def conclusion_convergence(a: str, b: str) -> float:
    conclusion_a, conclusion_b = extract_conclusion(a), extract_conclusion(b)
    if not conclusion_a or not conclusion_b:
        return 0.5
    return lexical_similarity(conclusion_a, conclusion_b)


def relevance_to_question(question: str, response: str) -> float:
    """Fraction of the question's tokens that appear in the response."""
    question_tokens = tokenize(question)
    if not question_tokens:
        return 0.0
    response_tokens = set(tokenize(response))
    return sum(1 for t in question_tokens if t in response_tokens) / len(question_tokens)


def response_depth(response: str) -> float:
    length_score = min(len(response) / 500, 1.0)
    cue_score = min(count_cues(response, DEPTH_CUES) / 3, 1.0)
    return length_score * 0.6 + cue_score * 0.4


def engagement_level(responses: list[str]) -> float:
    total = sum(count_cues(r, ENGAGEMENT_CUES) for r in responses)
    return min(total / 4, 1.0)


def dialogue_quality(question: str, responses: list[str]) -> float:
    """Blend of relevance (0.4), depth (0.4) and engagement (0.2)."""
    if not responses:
        return 0.0
    relevance = sum(relevance_to_question(question, r) for r in responses) / len(responses)
    depth = sum(response_depth(r) for r in responses) / len(responses)
    engagement = engagement_level(responses)
    return relevance * 0.4 + depth * 0.4 + engagement * 0.2


def contains_code(text: str) -> bool:
    """Fenced code block, or at least two code-shaped lines."""
    if "```" in text:
        return True
    return len(_CODE_LINE.findall(text)) >= 2
