"""Integration tests — real API calls, no mocks. Requires .env with keys for every persona model."""

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

from config.config_loader import load_config

load_dotenv()

_CONFIG = load_config()
_MISSING = _CONFIG.missing_models()
pytestmark = pytest.mark.integration

if _MISSING:
    pytestmark = pytest.mark.skip(
        reason=f"Missing API keys for: {', '.join(_MISSING)} "
        f"({', '.join(_CONFIG.models[m].api_key_env for m in _MISSING)})"
    )


async def test_full_discussion_pipeline(tmp_path: Path):
    """Run a real one-round discussion with the configured personas, verify no crash."""
    from src.cache import ResponseCache
    from src.cli import _build_providers
    from src.models import SessionState
    from src.output import save_to_file
    from src.session import SessionManager

    providers = _build_providers(_CONFIG)
    manager = SessionManager(_CONFIG, providers, cache=ResponseCache(), max_rounds=1)

    handle = manager.start_session(
        "Should a small team use a monorepo or separate repos for a Python microservices project?"
    )
    transcript = await handle.wait()

    assert transcript.state is SessionState.COMPLETE, transcript.error
    assert len(transcript.verdicts) == 1
    for turn in transcript.persona_turns():
        assert turn.content, f"Empty content from {turn.speaker}"
    assert transcript.turns[-1].speaker == "synthesis"
    assert transcript.turns[-1].content

    names = {role: persona.name for role, persona in _CONFIG.personas.items()}
    saved = save_to_file(transcript, names, tmp_path / "output")
    content = saved.read_text(encoding="utf-8")
    assert "AI Duet Discussion" in content
    assert len(content) > 500


@pytest.mark.skipif(not os.environ.get("OPENAI_API_KEY", "").strip(), reason="OPENAI_API_KEY not set")
async def test_openai_streaming_round_trip():
    from src.cli import _build_providers

    providers = _build_providers(_CONFIG)
    provider = providers[_CONFIG.personas["persona_a"].model]
    snapshots: list[str] = []
    response = await provider.generate(
        "You are terse.", "Name one benefit of caching in five words.", round_number=1, on_chunk=snapshots.append,
    )
    assert response.content
    assert snapshots[-1] == response.content
