"""Tests for src/models.py dataclasses."""

import pytest

from src.models import (
    ConsensusMetrics,
    ModelResponse,
    SessionState,
    Transcript,
    Turn,
)
from tests.conftest import build_transcript


def test_model_response_optional_token_count():
    r = ModelResponse(
        provider="gemini",
        model="gemini-2.5-flash",
        round_number=2,
        content="Some answer.",
        latency_sec=0.9,
        token_count=None,
    )
    assert r.token_count is None


def test_turn_defaults():
    turn = Turn(speaker="persona_a", content="Hi", round_number=1)
    assert turn.streaming is False
    assert turn.verdict is None
    assert len(turn.id) == 32
    assert turn.created_at.tzinfo is not None


def test_turn_ids_are_unique():
    assert Turn("user", "a").id != Turn("user", "a").id


def test_streaming_turn_updates_then_freezes():
    turn = Turn(speaker="persona_b", content="", streaming=True)
    turn.update_stream("par")
    turn.update_stream("partial answer")
    assert turn.content == "partial answer"
    turn.freeze("final answer")
    assert turn.content == "final answer"
    assert turn.streaming is False


def test_frozen_turn_rejects_stream_updates():
    turn = Turn(speaker="persona_a", content="done")
    with pytest.raises(ValueError):
        turn.update_stream("more")


def test_transcript_helpers():
    transcript = build_transcript("Q?", [("a1", "b1"), ("a2", "b2")])
    assert [t.content for t in transcript.turns_for("persona_a")] == ["a1", "a2"]
    assert [t.content for t in transcript.round_turns(2)] == ["a2", "b2"]
    assert len(transcript.persona_turns()) == 4
    assert transcript.completed_rounds == 2


def test_transcript_defaults():
    transcript = Transcript(original_question="Q?")
    assert transcript.state is SessionState.IDLE
    assert transcript.turns == []
    assert transcript.pending is None
    assert transcript.completed_rounds == 0


def test_session_state_terminal():
    assert SessionState.COMPLETE.is_terminal
    assert SessionState.FAILED.is_terminal
    assert SessionState.CANCELLED.is_terminal
    assert not SessionState.RUNNING_ROUND.is_terminal


def test_metrics_above_threshold():
    metrics = ConsensusMetrics(0.8, 0.8, 0.8, 0.8, 0.8, overall=0.8, threshold=0.75)
    assert metrics.above_threshold
    metrics.threshold = 0.85
    assert not metrics.above_threshold
