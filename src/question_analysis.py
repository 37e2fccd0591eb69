"""Classify the user's question so persona and judge prompts can ask for the right kind of answer."""

import re
from dataclasses import dataclass, field

_TECH_PATTERNS = (
    re.compile(r"\b(React|Vue|Angular|Next\.js|Nuxt|Django|Flask|FastAPI)\b", re.IGNORECASE),
    re.compile(r"\b(Python|JavaScript|TypeScript|Java|Go|Rust|C\+\+)(?!\w)", re.IGNORECASE),
    re.compile(r"\b(API|REST|GraphQL|WebSocket|gRPC)\b", re.IGNORECASE),
    re.compile(r"\b(database|MySQL|PostgreSQL|MongoDB|Redis|SQL)\b", re.IGNORECASE),
    re.compile(r"\b(Docker|Kubernetes|CI/CD)(?!\w)", re.IGNORECASE),
    re.compile(r"\b(performance|optimi[sz]e|optimi[sz]ation|cache|caching|latency|memory)\b", re.IGNORECASE),
)

_SPECIFIC_KEYWORDS = ("specific", "concrete", "detailed", "step", "example", "code", "config", "parameter")
_GENERAL_KEYWORDS = ("in general", "roughly", "simple", "concept", "overview", "principle")

_CONTEXT_REQUIREMENTS = {
    "technical": ["concrete code examples", "the underlying technical mechanism", "best practices"],
    "practical": ["detailed steps", "hands-on guidance", "common pitfalls to avoid"],
    "conceptual": ["a clear explanation of the concept", "an analogy or example", "where it applies"],
    "comparative": ["a side-by-side comparison", "pros and cons", "a recommendation for choosing"],
    "troubleshooting": ["the root cause", "a concrete fix", "how to prevent it recurring"],
}

_OUTPUT_GUIDANCE = {
    "step-by-step": "Give clear, numbered steps; say what each step achieves and what can go wrong.",
    "explanation": "Explain the core idea plainly, ground it in a concrete example, and say where it applies.",
    "comparison": "Compare along explicit dimensions, state strengths and weaknesses, and recommend when to pick each.",
    "solution": "Diagnose the root cause, give a concrete fix with steps, and add prevention advice.",
    "recommendation": "Recommend for the stated situation, justify it, and note when a different choice wins.",
}


@dataclass
class QuestionAnalysis:
    question_type: str        # "technical", "conceptual", "practical", "comparative", "troubleshooting"
    specificity: str          # "high", "medium", "low"
    expected_output: str      # "step-by-step", "explanation", "comparison", "solution", "recommendation"
    key_elements: list[str] = field(default_factory=list)
    context_requirements: list[str] = field(default_factory=list)


def _question_type(lowered: str) -> str:
    if lowered.startswith("how") or " how do " in lowered or " how to " in lowered or "implement" in lowered:
        return "practical"
    if lowered.startswith(("what is", "what are", "why")) or "principle" in lowered:
        return "conceptual"
    if " vs" in lowered or "versus" in lowered or "compare" in lowered or "difference between" in lowered:
        return "comparative"
    if "error" in lowered or "not working" in lowered or "fails" in lowered or "bug" in lowered:
        return "troubleshooting"
    if "code" in lowered or "algorithm" in lowered or "api" in lowered:
        return "technical"
    return "conceptual"


def extract_key_elements(question: str) -> list[str]:
    seen: dict[str, str] = {}
    for pattern in _TECH_PATTERNS:
        for match in pattern.finditer(question):
            seen.setdefault(match.group(0).lower(), match.group(0))
    return list(seen.values())


def analyze_question(question: str) -> QuestionAnalysis:
    lowered = question.lower().strip()
    question_type = _question_type(lowered)

    specificity = "medium"
    if any(k in lowered for k in _SPECIFIC_KEYWORDS):
        specificity = "high"
    elif any(k in lowered for k in _GENERAL_KEYWORDS):
        specificity = "low"

    if "step" in lowered or question_type == "practical":
        expected = "step-by-step"
    elif question_type == "comparative":
        expected = "comparison"
    elif question_type == "troubleshooting":
        expected = "solution"
    elif "recommend" in lowered or "should i" in lowered or "should we" in lowered:
        expected = "recommendation"
    else:
        expected = "explanation"

    requirements = list(_CONTEXT_REQUIREMENTS[question_type])
    if specificity == "high" and "code" in lowered and "concrete code examples" not in requirements:
        requirements.insert(0, "concrete code examples")

    return QuestionAnalysis(
        question_type=question_type,
        specificity=specificity,
        expected_output=expected,
        key_elements=extract_key_elements(question),
        context_requirements=requirements,
    )


def describe(analysis: QuestionAnalysis) -> str:
    """Compact bullet summary used inside judge prompts."""
    return "\n".join(
        [
            f"- Type: {analysis.question_type}",
            f"- Specificity: {analysis.specificity}",
            f"- Expected output: {analysis.expected_output}",
            f"- Key elements: {', '.join(analysis.key_elements) or 'none'}",
            f"- A complete answer needs: {', '.join(analysis.context_requirements)}",
        ]
    )


def targeted_guidance(analysis: QuestionAnalysis, round_number: int) -> str:
    """Answer-shaping guidance appended to persona system prompts."""
    lines = [
        "Answer guidance:",
        f"- {_OUTPUT_GUIDANCE[analysis.expected_output]}",
        f"- Make sure the discussion covers: {', '.join(analysis.context_requirements)}.",
    ]
    if analysis.specificity == "high":
        lines.append("- The user wants specifics: include exact code, configuration or parameters, not generalities.")
    if round_number == 1:
        lines.append("- First round: address the core need directly and lay out the main approach.")
    else:
        lines.append("- Later round: fill gaps left earlier and make the solution complete and actionable.")
    lines.append("- Stay on the user's question; do not drift into related but different topics.")
    return "\n".join(lines)
