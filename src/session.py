"""Session API: start discussions as background tasks, inspect them, cancel them."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from config.config_loader import AppConfig
from src.cache import ResponseCache
from src.discussion import Discussion, TurnCallback, VerdictCallback
from src.model_client import ModelClient, Sleeper
from src.models import SessionState, Transcript
from src.providers.base import AIProvider

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    discussion: Discussion
    task: asyncio.Task
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def transcript(self) -> Transcript:
        return self.discussion.transcript

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Transcript:
        """Wait for the discussion to settle and return its transcript.

        A cancelled session returns its transcript (state CANCELLED) rather
        than raising.
        """
        await asyncio.wait({self.task})
        if self.task.cancelled():
            # Cancelled before run() got its first step.
            if not self.transcript.state.is_terminal:
                self.transcript.state = SessionState.CANCELLED
        else:
            exc = self.task.exception()
            if exc is not None:
                raise exc
        return self.transcript


class SessionManager:
    """Runs independent discussions that share one response cache.

    Each session gets its own transcript, model clients and dialogue
    history; only the cache is shared.
    """

    def __init__(
        self,
        config: AppConfig,
        providers: dict[str, AIProvider],
        cache: ResponseCache | None = None,
        max_rounds: int | None = None,
        stream: bool | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        missing = sorted({p.model for p in config.personas.values()} - set(providers))
        if missing:
            raise ValueError(f"No provider for model(s): {', '.join(missing)}")
        self._config = config
        self._providers = providers
        self._cache = cache
        self._max_rounds = max_rounds if max_rounds is not None else config.defaults.max_rounds
        self._stream = stream if stream is not None else config.defaults.stream
        self._sleep = sleep
        self._sessions: dict[str, SessionHandle] = {}

    def _build_clients(self) -> dict[str, ModelClient]:
        return {
            role: ModelClient(
                self._providers[persona.model],
                persona,
                retry=self._config.retry,
                cache=self._cache,
                sleep=self._sleep,
            )
            for role, persona in self._config.personas.items()
        }

    def start_session(
        self,
        question: str,
        on_turn: TurnCallback | None = None,
        on_verdict: VerdictCallback | None = None,
        on_stream: TurnCallback | None = None,
    ) -> SessionHandle:
        """Schedule a new discussion on the running event loop."""
        discussion = Discussion(
            question,
            self._build_clients(),
            self._config.prompts,
            max_rounds=self._max_rounds,
            stream=self._stream,
            on_turn=on_turn,
            on_verdict=on_verdict,
            on_stream=on_stream,
        )
        task = asyncio.create_task(discussion.run())
        handle = SessionHandle(discussion=discussion, task=task)
        self._sessions[handle.id] = handle
        logger.info("Session %s started", handle.id)
        return handle

    def get_transcript(self, handle: SessionHandle | str) -> Transcript:
        return self._lookup(handle).transcript

    def cancel(self, handle: SessionHandle | str) -> bool:
        """Request cancellation. Returns False if the session already finished."""
        session = self._lookup(handle)
        if session.done():
            return False
        logger.info("Cancelling session %s", session.id)
        return session.task.cancel()

    def sessions(self) -> list[SessionHandle]:
        return list(self._sessions.values())

    def forget(self, handle: SessionHandle | str) -> None:
        """Drop a settled session. Running sessions must be cancelled and awaited first."""
        session = self._lookup(handle)
        if not session.done():
            raise ValueError(f"Session {session.id} is still running")
        del self._sessions[session.id]
        logger.debug("Session %s forgotten", session.id)

    def prune(self) -> int:
        """Forget every settled session and return how many were dropped."""
        settled = [s.id for s in self._sessions.values() if s.done()]
        for session_id in settled:
            del self._sessions[session_id]
        return len(settled)

    def _lookup(self, handle: SessionHandle | str) -> SessionHandle:
        session_id = handle if isinstance(handle, str) else handle.id
        if session_id not in self._sessions:
            raise KeyError(f"Unknown session: {session_id}")
        return self._sessions[session_id]
