"""
Streaming Orchestrator.

Runs one memory-augmented exchange end to end:
1. Retrieve relevant memories for the user's text
2. Compose the augmented prompt
3. Stream the reply through the active chat session
4. Distill the exchange into a memory record in the background
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from .config import request_context
from .errors import InferenceTimeoutError
from .llm.base import ChatTurn, ChunkCallback, GenerationOptions
from .llm.session import SessionManager
from .memory.memory_manager import MemoryManager
from .persona import GLOBAL_PERSONA, Persona
from .prompts import (
    GENERATION_ERROR_CHUNK,
    compose_system_content,
    compose_user_input,
    timeout_error_chunk,
)
from .text import build_exchange_record, strip_data_url

logger = logging.getLogger("ltm.orchestrator")


@dataclass
class PromptPayload:
    """One user request to the streaming pipeline."""
    text: str
    image: Optional[str] = None  # Data URL or raw base64
    history: Optional[list[ChatTurn]] = None
    persona: str = GLOBAL_PERSONA
    isolate: bool = False
    context_size: Optional[int] = None
    reasoning: bool = False
    system_prompt: Optional[str] = None

    @property
    def memory_scope(self) -> str:
        """Persona label auto-ingested memories are filed under."""
        return self.persona if self.isolate else GLOBAL_PERSONA

    @classmethod
    def for_persona(
        cls,
        text: str,
        persona: Persona,
        image: Optional[str] = None,
        history: Optional[list[ChatTurn]] = None,
    ) -> "PromptPayload":
        return cls(
            text=text,
            image=image,
            history=history,
            persona=persona.name,
            isolate=persona.isolate,
            context_size=persona.context_size,
            reasoning=persona.reasoning,
            system_prompt=persona.system_prompt,
        )


class StreamingOrchestrator:
    """Drives retrieval, generation and auto-ingestion for each request."""

    def __init__(
        self,
        memory: MemoryManager,
        sessions: SessionManager,
        retrieval_limit: int = 5,
        vision_timeout: float = 30.0,
        temperature: float = 0.7,
        auto_ingest: bool = True,
        auto_ingest_min_chars: int = 20,
        auto_ingest_tag: str = "auto-memory",
    ):
        self.memory = memory
        self.sessions = sessions
        self.retrieval_limit = retrieval_limit
        self.vision_timeout = vision_timeout
        self.temperature = temperature
        self.auto_ingest = auto_ingest
        self.auto_ingest_min_chars = auto_ingest_min_chars
        self.auto_ingest_tag = auto_ingest_tag
        self._background: set[asyncio.Task] = set()

    async def stream_response(
        self,
        payload: PromptPayload,
        on_chunk: ChunkCallback,
    ) -> Optional[str]:
        """
        Stream a memory-augmented reply.

        Args:
            payload: The user's request
            on_chunk: Receives each text fragment in order

        Returns:
            The full reply text (the concatenation of every fragment), or
            None when generation failed. In that case a single error
            fragment was sent through `on_chunk`.

        Raises:
            RetrievalError: Memory lookup failed (nothing was streamed)
            SessionError: No active chat session (nothing was streamed)
        """
        token = request_context.set(uuid.uuid4().hex[:8])
        try:
            reply = await self._run(payload, on_chunk)
        finally:
            request_context.reset(token)

        if reply is not None:
            self._schedule_auto_ingest(payload, reply)
        return reply

    async def _run(self, payload: PromptPayload, on_chunk: ChunkCallback) -> Optional[str]:
        memories = await self.memory.retrieve(
            payload.text,
            limit=self.retrieval_limit,
            persona=payload.persona,
            isolate=payload.isolate,
        )
        image = strip_data_url(payload.image) if payload.image else None
        forward = _guarded(on_chunk)
        options = GenerationOptions(
            temperature=self.temperature,
            context_size=payload.context_size,
            reasoning=payload.reasoning,
        )

        async with self.sessions.lease() as session:
            if payload.history is not None:
                base_prompt = payload.system_prompt
                if base_prompt is None:
                    base_prompt = session.system_prompt
                generation = session.prompt_stream(
                    payload.text,
                    forward,
                    image=image,
                    system_content=compose_system_content(base_prompt, memories, payload.reasoning),
                    history=payload.history,
                    options=options,
                )
            else:
                generation = session.prompt_stream(
                    compose_user_input(payload.text, memories),
                    forward,
                    image=image,
                    options=options,
                )

            logger.info(
                f"Streaming reply via {session.model_id} "
                f"({len(memories)} memories, image={'yes' if image else 'no'})"
            )
            try:
                if image:
                    try:
                        reply = await asyncio.wait_for(generation, timeout=self.vision_timeout)
                    except asyncio.TimeoutError:
                        raise InferenceTimeoutError(self.vision_timeout)
                else:
                    reply = await generation
            except InferenceTimeoutError as e:
                logger.error(str(e))
                forward(timeout_error_chunk(str(e)))
                return None
            except Exception as e:
                logger.exception(f"Generation failed: {e}")
                forward(GENERATION_ERROR_CHUNK)
                return None

        logger.info(f"Reply complete ({len(reply)} chars)")
        return reply

    def _schedule_auto_ingest(self, payload: PromptPayload, reply: str) -> Optional[asyncio.Task]:
        """Start background ingestion of the exchange, if it qualifies."""
        if not self.auto_ingest:
            return None
        if len(payload.text) < self.auto_ingest_min_chars or not reply.strip():
            return None

        record = build_exchange_record(payload.text, reply)
        if record is None:
            logger.debug("Reply has no usable sentence; skipping auto-ingest")
            return None

        task = asyncio.create_task(
            self.memory.ingest(record, [self.auto_ingest_tag], payload.memory_scope)
        )
        self._background.add(task)
        task.add_done_callback(self._on_ingest_done)
        return task

    def _on_ingest_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Auto-ingest cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Auto-ingest failed: {error}")
        else:
            logger.info(f"Auto-ingested exchange as memory {task.result()}")

    @property
    def pending_ingests(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for outstanding background ingestion."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _guarded(on_chunk: ChunkCallback) -> ChunkCallback:
    """
    Wrap a chunk consumer so its failure cannot abort generation.

    After the first failure further fragments are dropped; the engine call
    still runs to completion.
    """
    broken = False

    def forward(chunk: str) -> None:
        nonlocal broken
        if broken:
            return
        try:
            on_chunk(chunk)
        except Exception as e:
            broken = True
            logger.warning(f"Chunk consumer failed, dropping remaining output: {e}")

    return forward
