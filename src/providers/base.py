"""Abstract base for all AI model providers, plus the provider error taxonomy."""

from abc import ABC, abstractmethod
from collections.abc import Callable

from src.models import ModelResponse

ChunkCallback = Callable[[str], None]

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
_TRANSIENT_PATTERNS = (
    "timed out",
    "timeout",
    "connection",
    "econnreset",
    "etimedout",
    "rate limit",
    "temporarily unavailable",
    "overloaded",
)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    retryable = False

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


class TransientModelError(ProviderError):
    """Network reset, timeout, or HTTP 429/5xx. Safe to retry."""

    retryable = True


class PermanentModelError(ProviderError):
    """Auth failure, malformed request, other 4xx, or an empty body. Not retried."""


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(provider_name: str, exc: BaseException) -> ProviderError:
    """Map an SDK exception onto TransientModelError or PermanentModelError."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, TimeoutError):
        return TransientModelError(provider_name, f"Request timed out: {exc}")

    status = _status_code(exc)
    message = f"API call failed: {exc}"
    if status is not None:
        if status in TRANSIENT_STATUS_CODES:
            return TransientModelError(provider_name, message, status_code=status)
        return PermanentModelError(provider_name, message, status_code=status)

    lowered = str(exc).lower()
    if any(p in lowered for p in _TRANSIENT_PATTERNS) or "connection" in type(exc).__name__.lower():
        return TransientModelError(provider_name, message)
    return PermanentModelError(provider_name, message)


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the model key from settings (e.g. 'openai', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        round_number: int,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        """Generate a response for the given prompts.

        Args:
            system_prompt: Role-specific system prompt.
            user_prompt: The user-turn prompt text.
            round_number: The discussion round number (1-indexed, 0 for pings).
            on_chunk: When given, the provider streams and calls this with the
                accumulated text after every chunk.

        Returns:
            ModelResponse dataclass with the full content and metadata.

        Raises:
            TransientModelError: Timeouts, connection errors, HTTP 429/5xx.
            PermanentModelError: Any other failure, including an empty body.
        """
        ...
