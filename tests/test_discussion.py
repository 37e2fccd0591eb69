"""Tests for src/discussion.py — the round state machine, against scripted providers."""

import asyncio

import pytest

from src.discussion import Discussion
from src.models import SessionState
from src.providers.base import PermanentModelError, TransientModelError
from tests.conftest import CONSENSUS_REPLY, QUESTION, judge_reply


def _speakers(transcript) -> list[str]:
    return [t.speaker for t in transcript.turns]


def _discussion(make_clients, sample_prompts_config, **kwargs) -> Discussion:
    return Discussion(QUESTION, make_clients(), sample_prompts_config, **kwargs)


async def test_round_cap_terminates_with_synthesis(make_clients, sample_prompts_config):
    discussion = _discussion(make_clients, sample_prompts_config, max_rounds=3)
    transcript = await discussion.run()

    assert transcript.state is SessionState.COMPLETE
    assert transcript.is_complete is True
    assert transcript.is_processing is False
    assert _speakers(transcript) == [
        "user",
        "persona_a", "persona_b",
        "persona_a", "persona_b",
        "persona_a", "persona_b",
        "synthesis",
    ]
    assert len(transcript.verdicts) == 3
    synthesis = transcript.turns[-1]
    assert synthesis.verdict is transcript.final_verdict
    assert synthesis.verdict is transcript.verdicts[-1]


async def test_consensus_in_round_four_stops_early(make_clients, sample_prompts_config, mock_providers):
    mock_providers["delta"].replies = [CONSENSUS_REPLY] * 6
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=8).run()

    assert transcript.completed_rounds == 4
    assert [v.recommended_action for v in transcript.verdicts] == ["continue", "continue", "continue", "consensus"]
    assert transcript.final_verdict.has_consensus is True
    assert transcript.turns[-1].speaker == "synthesis"


async def test_has_consensus_without_consensus_action_keeps_going(make_clients, sample_prompts_config, mock_providers):
    mock_providers["delta"].replies = [
        judge_reply(
            hasConsensus=True,
            confidence=95,
            recommendedAction="continue",
            questionMatchScore=95,
            questionCoverage="complete",
            solutionCompleteness="complete",
        )
    ] * 5
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=5).run()

    assert transcript.state is SessionState.COMPLETE
    assert transcript.completed_rounds == 5
    assert all(not v.has_consensus for v in transcript.verdicts)


async def test_exactly_one_user_turn_first(make_clients, sample_prompts_config):
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=2).run()
    assert transcript.turns[0].speaker == "user"
    assert transcript.turns[0].content == QUESTION
    assert _speakers(transcript).count("user") == 1
    assert _speakers(transcript).count("synthesis") == 1


async def test_persona_b_sees_persona_a_turn(make_clients, sample_prompts_config, mock_providers):
    mock_providers["alpha"].replies = ["Alpha opening about TTL caching."]
    await _discussion(make_clients, sample_prompts_config, max_rounds=1).run()

    system_prompt, user_prompt = mock_providers["beta"].generate.call_args_list[0].args[:2]
    assert "Pragmatist" in system_prompt
    assert "Analyst said:\nAlpha opening about TTL caching." in user_prompt

    a_opening_prompt = mock_providers["alpha"].generate.call_args_list[0].args[1]
    assert "Open the discussion" in a_opening_prompt


async def test_later_rounds_carry_open_points_and_guidance(make_clients, sample_prompts_config, mock_providers):
    await _discussion(make_clients, sample_prompts_config, max_rounds=2).run()
    system_prompt, user_prompt = mock_providers["alpha"].generate.call_args_list[1].args[:2]
    assert "Round 2" in system_prompt
    assert "Invalidation strategy is undecided" in system_prompt
    assert "So far:" in user_prompt


async def test_provider_failure_appends_error_turn(make_clients, sample_prompts_config, mock_providers):
    mock_providers["beta"].replies = ["Round one reply.", PermanentModelError("beta", "401 unauthorized")]
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=4).run()

    assert transcript.state is SessionState.FAILED
    assert transcript.is_processing is False
    assert transcript.is_complete is False
    assert transcript.turns[-1].speaker == "error"
    assert "401 unauthorized" in transcript.turns[-1].content
    assert transcript.turns[-1].round_number == 2
    assert "synthesis" not in _speakers(transcript)
    assert "401 unauthorized" in transcript.error


async def test_exhausted_retries_fail_the_session(make_clients, sample_prompts_config, mock_providers, fake_sleep):
    mock_providers["alpha"].replies = [TransientModelError("alpha", "503")] * 3
    transcript = await _discussion(make_clients, sample_prompts_config).run()

    assert transcript.state is SessionState.FAILED
    assert fake_sleep.delays == [1.0, 2.0]
    assert _speakers(transcript) == ["user", "error"]


async def test_transient_failure_recovers(make_clients, sample_prompts_config, mock_providers, fake_sleep):
    mock_providers["alpha"].replies = [TransientModelError("alpha", "429 rate limit")]
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=1).run()

    assert transcript.state is SessionState.COMPLETE
    assert fake_sleep.delays == [1.0]


async def test_unexpected_exception_fails_the_session(make_clients, sample_prompts_config, mock_providers):
    mock_providers["gamma"].replies = [RuntimeError("boom")]
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=1).run()

    assert transcript.state is SessionState.FAILED
    assert transcript.turns[-1].speaker == "error"
    assert transcript.final_verdict is None


async def test_judge_failure_uses_fallback_and_continues(make_clients, sample_prompts_config, mock_providers):
    mock_providers["delta"].replies = ["not json at all", PermanentModelError("delta", "400")]
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=2).run()

    assert transcript.state is SessionState.COMPLETE
    assert [v.source for v in transcript.verdicts] == ["fallback", "fallback"]


async def test_cancel_while_persona_b_in_flight(make_clients, sample_prompts_config, mock_providers):
    started = asyncio.Event()

    async def hang(*args, **kwargs):
        started.set()
        await asyncio.Event().wait()

    mock_providers["beta"].generate.side_effect = hang
    discussion = _discussion(make_clients, sample_prompts_config, stream=True)
    task = asyncio.create_task(discussion.run())
    await started.wait()
    assert discussion.transcript.pending is not None
    assert discussion.transcript.pending.speaker == "persona_b"

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    transcript = discussion.transcript
    assert transcript.state is SessionState.CANCELLED
    assert transcript.is_processing is False
    assert transcript.pending is None
    assert _speakers(transcript) == ["user", "persona_a"]
    assert mock_providers["beta"].generate.call_count == 1


async def test_streaming_updates_pending_turn_then_freezes(make_clients, sample_prompts_config, mock_providers):
    mock_providers["alpha"].replies = ["one two three"]
    snapshots: list[tuple[str, str]] = []
    discussion = _discussion(
        make_clients,
        sample_prompts_config,
        max_rounds=1,
        stream=True,
        on_stream=lambda turn: snapshots.append((turn.speaker, turn.content)),
    )
    transcript = await discussion.run()

    assert snapshots[:3] == [("persona_a", "one"), ("persona_a", "one two"), ("persona_a", "one two three")]
    assert all(not t.streaming for t in transcript.turns)
    assert transcript.pending is None
    assert transcript.turns[1].content == "one two three"


async def test_callbacks_see_every_turn_and_verdict(make_clients, sample_prompts_config):
    turns, verdicts = [], []
    discussion = _discussion(
        make_clients,
        sample_prompts_config,
        max_rounds=2,
        on_turn=turns.append,
        on_verdict=verdicts.append,
    )
    transcript = await discussion.run()
    assert turns == transcript.turns
    assert verdicts == transcript.verdicts


async def test_run_twice_raises(make_clients, sample_prompts_config):
    discussion = _discussion(make_clients, sample_prompts_config, max_rounds=1)
    await discussion.run()
    with pytest.raises(RuntimeError):
        await discussion.run()


def test_rejects_bad_arguments(make_clients, sample_prompts_config):
    clients = make_clients()
    with pytest.raises(ValueError):
        Discussion(QUESTION, clients, sample_prompts_config, max_rounds=0)
    with pytest.raises(ValueError):
        Discussion("   ", clients, sample_prompts_config)
    del clients["judge"]
    with pytest.raises(ValueError):
        Discussion(QUESTION, clients, sample_prompts_config)


async def test_identical_rounds_are_served_from_cache(sample_app_config, mock_providers, make_clients):
    from src.cache import ResponseCache

    cache = ResponseCache()
    first = await Discussion(QUESTION, make_clients(cache), sample_app_config.prompts, max_rounds=1).run()
    second = await Discussion(QUESTION, make_clients(cache), sample_app_config.prompts, max_rounds=1).run()

    assert first.turns[1].content == second.turns[1].content
    assert mock_providers["alpha"].generate.call_count == 1
    assert cache.stats().hits >= 1


async def test_streamed_synthesis_turn_is_the_appended_turn(make_clients, sample_prompts_config, mock_providers):
    mock_providers["gamma"].replies = ["Use a TTL cache."]
    streamed = []
    discussion = _discussion(
        make_clients,
        sample_prompts_config,
        max_rounds=1,
        stream=True,
        on_stream=streamed.append,
    )
    transcript = await discussion.run()

    synthesis = transcript.turns[-1]
    streamed_synthesis = [t for t in streamed if t.speaker == "synthesis"]
    assert streamed_synthesis
    assert streamed_synthesis[-1].id == synthesis.id
    assert synthesis.verdict is transcript.final_verdict
    assert synthesis.content == "Use a TTL cache."
    assert synthesis.streaming is False


async def test_rounds_without_a_verdict_fail_the_session(make_clients, sample_prompts_config):
    discussion = _discussion(make_clients, sample_prompts_config, max_rounds=1)
    discussion._max_rounds = 0
    transcript = await discussion.run()

    assert transcript.state is SessionState.FAILED
    assert transcript.error == "Discussion ended without a verdict"
    assert _speakers(transcript) == ["user", "error"]


async def test_session_metrics_count_calls_and_tokens(make_clients, sample_prompts_config):
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=1).run()

    summary = transcript.metrics.summary()
    assert summary.calls == 4
    assert summary.cache_hits == 0
    assert summary.retries == 0
    assert summary.total_tokens == 40
    assert summary.avg_response_sec == pytest.approx(0.1)
    assert len(transcript.metrics.consensus_times) == 1
    assert sorted(transcript.metrics.latency_by_role()) == ["judge", "persona_a", "persona_b", "synthesis"]


async def test_session_metrics_count_retries_and_failures(
    make_clients, sample_prompts_config, mock_providers, fake_sleep,
):
    mock_providers["alpha"].replies = [TransientModelError("alpha", "503"), "Recovered."]
    mock_providers["beta"].replies = [PermanentModelError("beta", "401 unauthorized")]
    transcript = await _discussion(make_clients, sample_prompts_config, max_rounds=1).run()

    summary = transcript.metrics.summary()
    assert transcript.state is SessionState.FAILED
    assert summary.calls == 1
    assert summary.retries == 1
    assert summary.failures == 1
