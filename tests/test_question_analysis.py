"""Tests for src/question_analysis.py."""

import pytest

from src.question_analysis import analyze_question, describe, extract_key_elements, targeted_guidance
from tests.conftest import QUESTION


@pytest.mark.parametrize(
    "question, question_type, expected_output",
    [
        (QUESTION, "practical", "step-by-step"),
        ("Redis vs Memcached for session storage", "comparative", "comparison"),
        ("What is a cache stampede?", "conceptual", "explanation"),
        ("My Redis client raises a connection error on startup", "troubleshooting", "solution"),
        ("Give me specific code for a FastAPI cache decorator", "technical", "explanation"),
    ],
)
def test_question_type_and_expected_output(question, question_type, expected_output):
    analysis = analyze_question(question)
    assert analysis.question_type == question_type
    assert analysis.expected_output == expected_output


def test_specificity_levels():
    assert analyze_question("Show a concrete example of caching").specificity == "high"
    assert analyze_question("Explain caching in general").specificity == "low"
    assert analyze_question(QUESTION).specificity == "medium"


def test_key_elements_keep_first_spelling_in_pattern_order():
    assert extract_key_elements(QUESTION) == ["Python", "API", "cache"]
    assert extract_key_elements("redis or Redis?") == ["redis"]


def test_code_requests_require_code_examples_once():
    analysis = analyze_question("Give me specific code for a FastAPI cache decorator")
    assert analysis.context_requirements.count("concrete code examples") == 1

    practical = analyze_question("How do I add a detailed cache layer, with code?")
    assert practical.context_requirements[0] == "concrete code examples"


def test_describe_lists_every_field():
    text = describe(analyze_question("What is a cache stampede?"))
    assert "- Type: conceptual" in text
    assert "- Key elements: cache" in text
    assert "A complete answer needs:" in text


def test_targeted_guidance_depends_on_round():
    analysis = analyze_question(QUESTION)
    first = targeted_guidance(analysis, 1)
    later = targeted_guidance(analysis, 3)
    assert "First round" in first
    assert "Later round" in later
    assert "numbered steps" in first
    assert "want specifics" not in first
