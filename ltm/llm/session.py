"""
Inference Session Manager.

Owns the single loaded model and the chat session built on it. Swapping
models always tears down in reverse order of acquisition (session, then
context, then model) before anything new is loaded, so two models never
share VRAM.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional

from ..errors import SessionError, SessionLoadError
from .base import ChatTurn, ChunkCallback, GenerationOptions, InferenceEngine

logger = logging.getLogger("ltm.llm.session")

CHARS_PER_TOKEN = 4
RESPONSE_RESERVE_TOKENS = 512


class SessionState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    SWAPPING = "swapping"
    RECREATING_CONTEXT = "recreating_context"


def estimate_tokens(text: str) -> int:
    """Rough token count used for history budgeting."""
    return len(text) // CHARS_PER_TOKEN + 1


def fit_history(
    history: list[ChatTurn],
    context_size: int | None,
    reserved: int = 0,
) -> list[ChatTurn]:
    """
    Drop the oldest turns until the rest fits the context budget.

    The most recent turns are always preferred. `reserved` covers the
    system content and the new user turn.
    """
    if not context_size:
        return list(history)

    budget = context_size - RESPONSE_RESERVE_TOKENS - reserved
    kept: list[ChatTurn] = []
    used = 0
    for turn in reversed(history):
        cost = estimate_tokens(turn.content)
        if used + cost > budget:
            break
        kept.append(turn)
        used += cost

    if len(kept) < len(history):
        logger.debug(f"Trimmed {len(history) - len(kept)} old turns to fit {context_size} tokens")
    kept.reverse()
    return kept


class ChatSession:
    """A conversation bound to the loaded model and one system prompt."""

    def __init__(
        self,
        engine: InferenceEngine,
        model_id: str,
        system_prompt: str,
        context_size: int,
    ):
        self.engine = engine
        self.model_id = model_id
        self.system_prompt = system_prompt
        self.context_size = context_size
        self.history: list[ChatTurn] = []
        self.closed = False

    def build_messages(
        self,
        user_input: str,
        image: Optional[str] = None,
        system_content: Optional[str] = None,
        history: Optional[list[ChatTurn]] = None,
        context_size: Optional[int] = None,
    ) -> list[ChatTurn]:
        """
        Assemble the full message list for one generation.

        Args:
            user_input: Text of the new user turn.
            image: Raw base64 image attached to the new turn.
            system_content: Replaces the session's system prompt for this call.
            history: Replaces the session's own history for this call.
            context_size: Token budget for trimming history, capped at the
                context the session was created with.
        """
        system = self.system_prompt if system_content is None else system_content
        prior = self.history if history is None else history
        reserved = estimate_tokens(system) + estimate_tokens(user_input)
        budget = min(context_size, self.context_size) if context_size else self.context_size
        prior = fit_history(prior, budget, reserved)

        messages: list[ChatTurn] = []
        if system:
            messages.append(ChatTurn(role="system", content=system))
        messages.extend(prior)
        messages.append(ChatTurn(role="user", content=user_input, image=image))
        return messages

    async def prompt_stream(
        self,
        user_input: str,
        on_chunk: ChunkCallback,
        image: Optional[str] = None,
        system_content: Optional[str] = None,
        history: Optional[list[ChatTurn]] = None,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        """
        Generate a streamed reply and record the exchange.

        When `history` is given the caller owns the conversation; the
        session's own history is replaced by it plus this exchange.
        """
        if self.closed:
            raise SessionError("Chat session has been disposed")

        options = options or GenerationOptions()
        messages = self.build_messages(
            user_input,
            image=image,
            system_content=system_content,
            history=history,
            context_size=options.context_size,
        )
        reply = await self.engine.stream_chat(messages, on_chunk, options)

        if history is not None:
            self.history = list(history)
        self.history.append(ChatTurn(role="user", content=user_input))
        self.history.append(ChatTurn(role="assistant", content=reply))
        return reply

    def dispose(self) -> None:
        self.closed = True
        self.history = []


class SessionManager:
    """
    Holds at most one loaded model and one active chat session.

    All transitions and every generation run under one lock, so a swap
    requested while a reply is streaming waits for that reply to finish
    (or time out) before the model is torn down.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        context_size: int = 4096,
        settle_delay: float = 0.2,
    ):
        """
        Args:
            engine: Inference backend.
            context_size: Context window for new sessions.
            settle_delay: Pause after disposing a context before creating
                the next one, so the backend can release memory.
        """
        self.engine = engine
        self.context_size = context_size
        self.settle_delay = settle_delay
        self._lock = asyncio.Lock()
        self._state = SessionState.UNLOADED
        self._model_id: str | None = None
        self._system_prompt: str | None = None
        self._context_request: int | None = None
        self._session: ChatSession | None = None
        self._has_context = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loaded_model(self) -> str | None:
        return self._model_id

    @property
    def active_session(self) -> ChatSession | None:
        return self._session

    async def create_session(
        self,
        model_id: str,
        system_prompt: str = "",
        context_size: int | None = None,
    ) -> ChatSession:
        """
        Ensure a session exists for the given model and system prompt.

        Same model and prompt returns the current session untouched. Same
        model with a new prompt rebuilds only the context and session.
        A different model tears everything down and loads the new one.

        Raises:
            SessionError: No model identifier given.
            SessionLoadError: Loading or context creation failed. The
                manager is left UNLOADED and the next call retries cleanly.
        """
        if not model_id:
            raise SessionError("A model identifier is required")
        system_prompt = system_prompt or ""

        async with self._lock:
            if (
                self._state == SessionState.READY
                and self._model_id == model_id
                and self._system_prompt == system_prompt
                and self._context_request == (context_size or self.context_size)
                and self._session is not None
            ):
                logger.debug(f"Session for {model_id} already active")
                return self._session

            try:
                if self._model_id is not None and self._model_id != model_id:
                    logger.info(f"Swapping model {self._model_id} -> {model_id}")
                    self._state = SessionState.SWAPPING
                    await self._teardown()
                elif self._model_id == model_id:
                    logger.info(f"Rebuilding context for {model_id} with new system prompt")
                    self._state = SessionState.RECREATING_CONTEXT
                    await self._dispose_context()

                if self._model_id is None:
                    self._state = SessionState.LOADING
                    logger.info(f"Loading model {model_id}")
                    await self.engine.load_model(model_id)
                    self._model_id = model_id

                requested = context_size or self.context_size
                size = await self.engine.create_context(requested)
                if size != requested:
                    logger.info(f"Context for {model_id} is {size} tokens (requested {requested})")
                self._has_context = True
                self._session = ChatSession(self.engine, model_id, system_prompt, size)
                self._system_prompt = system_prompt
                self._context_request = requested
                self._state = SessionState.READY
            except Exception as e:
                logger.error(f"Failed to create session for {model_id}: {e}")
                await self._reset_after_failure()
                raise SessionLoadError(f"Failed to load {model_id}: {e}") from e

            logger.info(f"Session ready: {model_id}")
            return self._session

    async def _dispose_context(self) -> None:
        """Release session then context, then let the backend settle."""
        if self._session is not None:
            self._session.dispose()
            self._session = None
        self._system_prompt = None
        self._context_request = None
        if self._has_context:
            await self.engine.dispose_context()
            self._has_context = False
            await asyncio.sleep(self.settle_delay)

    async def _teardown(self) -> None:
        """Release session, context and model, in that order."""
        await self._dispose_context()
        if self._model_id is not None:
            await self.engine.unload_model()
            self._model_id = None

    async def _reset_after_failure(self) -> None:
        try:
            await self._teardown()
        except Exception as e:
            logger.error(f"Cleanup after failed load also failed: {e}")
            self._session = None
            self._system_prompt = None
            self._has_context = False
            self._model_id = None
        self._state = SessionState.UNLOADED

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[ChatSession]:
        """
        Hold the active session for the duration of one generation.

        Raises:
            SessionError: No session has been created.
        """
        async with self._lock:
            if self._state != SessionState.READY or self._session is None:
                raise SessionError("No active chat session. Create a session first.")
            yield self._session

    async def dispose(self) -> None:
        """Release everything; the manager can be reused afterwards."""
        async with self._lock:
            if self._model_id is None and self._session is None:
                return
            await self._teardown()
            self._state = SessionState.UNLOADED
            logger.info("Session manager disposed")
