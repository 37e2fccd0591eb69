"""Load settings.yaml into typed dataclasses. Reports which models have API keys."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

PERSONA_ROLES = ("persona_a", "persona_b", "synthesis", "judge")


@dataclass
class ModelConfig:
    name: str
    sdk: str               # "openai", "anthropic", "gemini"
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    temperature: float = 0.7


@dataclass
class PersonaConfig:
    key: str               # one of PERSONA_ROLES
    name: str
    model: str             # key into AppConfig.models
    traits: list[str] = field(default_factory=list)

    def traits_text(self) -> str:
        return ", ".join(self.traits) if self.traits else "balanced"


@dataclass
class PromptsConfig:
    persona_a_system: str
    persona_b_system: str
    synthesis_system: str
    judge_system: str
    opening: str
    continuation: str
    response: str
    synthesis: str
    judge: str


@dataclass
class DefaultsConfig:
    max_rounds: int = 4
    output_dir: Path = Path("./output")
    stream: bool = False


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay_sec: float = 1.0
    multiplier: float = 2.0
    max_delay_sec: float = 10.0


@dataclass
class CacheConfig:
    enabled: bool = True
    max_entries: int = 1000
    ttl_sec: float = 1800.0
    sweep_interval_sec: float = 60.0


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    personas: dict[str, PersonaConfig]
    prompts: PromptsConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    available_models: set[str] = field(default_factory=set)

    def missing_models(self) -> list[str]:
        """Model keys referenced by a persona but lacking an API key."""
        needed = {p.model for p in self.personas.values()}
        return sorted(needed - self.available_models)


def _load_personas(raw: dict, models: dict[str, ModelConfig]) -> dict[str, PersonaConfig]:
    personas: dict[str, PersonaConfig] = {}
    for role in PERSONA_ROLES:
        if role not in raw:
            raise ValueError(f"Missing persona definition: {role}")
        persona_raw = raw[role]
        model_key = str(persona_raw["model"])
        if model_key not in models:
            raise ValueError(f"Persona '{role}' references unknown model '{model_key}'")
        personas[role] = PersonaConfig(
            key=role,
            name=str(persona_raw["name"]),
            model=model_key,
            traits=[str(t) for t in persona_raw.get("traits", [])],
        )
    return personas


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing and ValueError when a
    persona is missing or points at an unknown model.
    Logs missing API keys but does not raise — callers check
    missing_models().
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw.get("defaults", {})
    defaults = DefaultsConfig(
        max_rounds=int(defaults_raw.get("max_rounds", 4)),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        stream=bool(defaults_raw.get("stream", False)),
    )
    if defaults.max_rounds < 1:
        raise ValueError(f"max_rounds must be >= 1, got {defaults.max_rounds}")

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_retries=int(retry_raw.get("max_retries", 3)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", 1.0)),
        multiplier=float(retry_raw.get("multiplier", 2.0)),
        max_delay_sec=float(retry_raw.get("max_delay_sec", 10.0)),
    )

    cache_raw = raw.get("cache", {})
    cache = CacheConfig(
        enabled=bool(cache_raw.get("enabled", True)),
        max_entries=int(cache_raw.get("max_entries", 1000)),
        ttl_sec=float(cache_raw.get("ttl_sec", 1800)),
        sweep_interval_sec=float(cache_raw.get("sweep_interval_sec", 60)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(**{name: str(prompts_raw[name]) for name in PromptsConfig.__dataclass_fields__})

    models: dict[str, ModelConfig] = {}
    available_models: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=model_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            temperature=float(model_raw.get("temperature", 0.7)),
        )
        models[model_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_models.add(model_name)
            logger.info("Model available: %s", model_name)
        else:
            logger.info(
                "Model skipped (no API key): %s — set %s in .env",
                model_name,
                model_raw["api_key_env"],
            )

    personas = _load_personas(raw.get("personas", {}), models)

    return AppConfig(
        defaults=defaults,
        models=models,
        personas=personas,
        prompts=prompts,
        retry=retry,
        cache=cache,
        available_models=available_models,
    )
