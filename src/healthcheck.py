"""Provider health checks — ping each model before starting a discussion."""

import asyncio
import logging

from config.config_loader import PersonaConfig
from src.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_SYSTEM = "You are a connectivity check."
_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            provider.generate(_PING_SYSTEM, _PING_PROMPT, round_number=0),
            timeout=_TIMEOUT_SEC,
        )
        return name, True, ""
    except TimeoutError:
        logger.debug("Health check for %s timed out", name)
        return name, False, f"no reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        logger.debug("Health check for %s failed: %s", name, exc)
        return name, False, str(exc)


async def run_health_checks(
    providers: dict[str, AIProvider],
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping model key -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}


def persona_labels(personas: dict[str, PersonaConfig]) -> dict[str, str]:
    """Label each model key with the personas that depend on it, e.g. "claude (Analyst, Judge)"."""
    users: dict[str, list[str]] = {}
    for persona in personas.values():
        users.setdefault(persona.model, []).append(persona.name)
    return {model: f"{model} ({', '.join(names)})" for model, names in users.items()}
