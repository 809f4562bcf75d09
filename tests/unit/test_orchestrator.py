"""
Unit tests for ltm/orchestrator.py

Tests prompt composition, streaming, error conversion, the vision timeout
and the auto-ingestion feedback loop.
"""

import logging
from unittest.mock import AsyncMock

import pytest

from ltm.errors import EmbeddingError, GenerationError, IngestError, RetrievalError, SessionError
from ltm.llm.base import ChatTurn
from ltm.llm.session import SessionState
from ltm.orchestrator import PromptPayload, StreamingOrchestrator
from ltm.persona import Persona
from ltm.prompts import GENERATION_ERROR_CHUNK, MEMORY_NOTE_HEADER, REASONING_DIRECTIVE

LONG_TEXT = "Please remember that my sister is called Ines"


async def stream(orchestrator, payload):
    chunks = []
    reply = await orchestrator.stream_response(payload, chunks.append)
    return reply, chunks


class TestStreaming:
    """Tests for StreamingOrchestrator.stream_response."""

    @pytest.mark.asyncio
    async def test_chunks_concatenate_to_reply(self, orchestrator, session_manager):
        """Test every fragment is forwarded and the reply is their concatenation."""
        await session_manager.create_session("/models/a.gguf", "You are A.")

        reply, chunks = await stream(orchestrator, PromptPayload(text="hi"))

        assert chunks == ["Hello", " there", "."]
        assert reply == "".join(chunks)

    @pytest.mark.asyncio
    async def test_no_session(self, orchestrator):
        """Test streaming without a session is an explicit failure."""
        with pytest.raises(SessionError):
            await stream(orchestrator, PromptPayload(text="hi"))

    @pytest.mark.asyncio
    async def test_retrieval_failure_propagates(self, orchestrator, session_manager, fake_engine):
        """Test a retrieval failure is raised before anything streams."""
        await session_manager.create_session("/models/a.gguf", "")
        orchestrator.memory.embedding_service.embed = AsyncMock(side_effect=EmbeddingError("offline"))

        with pytest.raises(RetrievalError):
            await stream(orchestrator, PromptPayload(text="hi"))
        assert fake_engine.requests == []

    @pytest.mark.asyncio
    async def test_generation_error_becomes_chunk(self, orchestrator, session_manager, fake_engine):
        """Test an engine failure yields partial output, one error chunk and None."""
        await session_manager.create_session("/models/a.gguf", "")
        fake_engine.stream_error = GenerationError("CUDA error")

        reply, chunks = await stream(orchestrator, PromptPayload(text=LONG_TEXT))

        assert reply is None
        assert chunks[:-1] == ["Hello", " there", "."]
        assert chunks[-1] == GENERATION_ERROR_CHUNK
        await orchestrator.drain()
        assert await orchestrator.memory.count() == 0

    @pytest.mark.asyncio
    async def test_vision_timeout(self, memory_manager, session_manager, fake_engine):
        """Test a slow image request is abandoned with a timeout chunk."""
        orchestrator = StreamingOrchestrator(memory_manager, session_manager, vision_timeout=0.05)
        await session_manager.create_session("/models/Qwen2-VL.gguf", "")
        fake_engine.delay = 0.1

        reply, chunks = await stream(
            orchestrator,
            PromptPayload(text=LONG_TEXT, image="data:image/png;base64,AAAA"),
        )

        assert reply is None
        assert len(chunks) == 1
        assert "timed out after 0.05s" in chunks[0]
        assert chunks[0] != GENERATION_ERROR_CHUNK

    @pytest.mark.asyncio
    async def test_session_usable_after_timeout(self, memory_manager, session_manager, fake_engine):
        """Test the next request after a vision timeout streams normally."""
        orchestrator = StreamingOrchestrator(memory_manager, session_manager, vision_timeout=0.05)
        session = await session_manager.create_session("/models/Qwen2-VL.gguf", "")
        fake_engine.delay = 0.1
        await stream(orchestrator, PromptPayload(text="hi", image="data:image/png;base64,AAAA"))

        fake_engine.delay = 0
        reply, chunks = await stream(orchestrator, PromptPayload(text="hi again"))

        assert reply == "Hello there."
        assert chunks == ["Hello", " there", "."]
        assert session_manager.state == SessionState.READY
        assert session_manager.active_session is session

    @pytest.mark.asyncio
    async def test_text_requests_not_timed(self, memory_manager, session_manager, fake_engine):
        """Test the timeout only applies when an image is attached."""
        orchestrator = StreamingOrchestrator(memory_manager, session_manager, vision_timeout=0.05)
        await session_manager.create_session("/models/a.gguf", "")
        fake_engine.delay = 0.03

        reply, _ = await stream(orchestrator, PromptPayload(text="hi"))

        assert reply == "Hello there."

    @pytest.mark.asyncio
    async def test_image_envelope_stripped(self, orchestrator, session_manager, fake_engine):
        """Test the data-URL prefix is removed before reaching the engine."""
        await session_manager.create_session("/models/Qwen2-VL.gguf", "")

        await stream(orchestrator, PromptPayload(text="what is this", image="data:image/jpeg;base64,/9j/4AAQ"))

        assert fake_engine.requests[0][-1].image == "/9j/4AAQ"

    @pytest.mark.asyncio
    async def test_broken_consumer_does_not_abort(self, orchestrator, session_manager):
        """Test a failing chunk consumer still lets generation finish."""
        await session_manager.create_session("/models/a.gguf", "")
        received = []

        def consumer(chunk):
            received.append(chunk)
            raise ConnectionResetError("window closed")

        reply = await orchestrator.stream_response(PromptPayload(text="hi"), consumer)

        assert reply == "Hello there."
        assert received == ["Hello"]

    @pytest.mark.asyncio
    async def test_options_forwarded(self, orchestrator, session_manager, fake_engine):
        """Test context budget and reasoning flag reach the engine."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text="hi", context_size=8192, reasoning=True))

        options = fake_engine.options[0]
        assert options.context_size == 8192
        assert options.reasoning is True


class TestPromptComposition:
    """Tests for how retrieved memories reach the model."""

    @pytest.mark.asyncio
    async def test_history_mode_puts_note_in_system(self, orchestrator, session_manager, fake_engine):
        """Test memories become a delimited note in the system content."""
        await orchestrator.memory.ingest("User likes milk", "preference")
        await session_manager.create_session("/models/a.gguf", "You are A.")
        history = [ChatTurn(role="user", content="hello"), ChatTurn(role="assistant", content="hi!")]

        await stream(orchestrator, PromptPayload(text="User likes milk?", history=history))

        messages = fake_engine.requests[0]
        system = messages[0]
        assert system.role == "system"
        assert system.content.startswith("You are A.")
        assert MEMORY_NOTE_HEADER in system.content
        assert "- [preference] User likes milk" in system.content
        assert [m.content for m in messages[1:3]] == ["hello", "hi!"]
        assert messages[-1].content == "User likes milk?"

    @pytest.mark.asyncio
    async def test_history_mode_without_memories(self, orchestrator, session_manager, fake_engine):
        """Test no note is injected when nothing clears the cutoff."""
        await session_manager.create_session("/models/a.gguf", "You are A.")

        await stream(orchestrator, PromptPayload(text="hi", history=[]))

        assert all(MEMORY_NOTE_HEADER not in m.content for m in fake_engine.requests[0])

    @pytest.mark.asyncio
    async def test_history_mode_persona_prompt_and_reasoning(self, orchestrator, session_manager, fake_engine):
        """Test the payload's persona prompt and reasoning directive are used."""
        await session_manager.create_session("/models/a.gguf", "Session prompt")

        await stream(
            orchestrator,
            PromptPayload(text="hi", history=[], system_prompt="Persona prompt", reasoning=True),
        )

        system = fake_engine.requests[0][0].content
        assert system.startswith("Persona prompt")
        assert REASONING_DIRECTIVE in system

    @pytest.mark.asyncio
    async def test_untagged_memory_labelled_general(self, orchestrator, session_manager, fake_engine):
        """Test memories without tags are listed as general."""
        await orchestrator.memory.ingest("Sky is blue today")
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text="Sky is blue today", history=[]))

        assert "- [general] Sky is blue today" in fake_engine.requests[0][0].content

    @pytest.mark.asyncio
    async def test_session_mode_prefixes_user_turn(self, orchestrator, session_manager, fake_engine):
        """Test without history the note rides in front of the user turn."""
        await orchestrator.memory.ingest("User likes milk", "preference")
        await session_manager.create_session("/models/a.gguf", "You are A.")

        await stream(orchestrator, PromptPayload(text="User likes milk?"))

        messages = fake_engine.requests[0]
        assert messages[0].content == "You are A."
        user = messages[-1].content
        assert user.startswith(MEMORY_NOTE_HEADER)
        assert user.endswith("Human: User likes milk?")

    @pytest.mark.asyncio
    async def test_session_mode_without_memories(self, orchestrator, session_manager, fake_engine):
        """Test the user turn is sent bare when nothing was retrieved."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text="hi"))

        assert fake_engine.requests[0][-1].content == "hi"

    @pytest.mark.asyncio
    async def test_isolated_persona_excludes_others(self, orchestrator, session_manager, fake_engine):
        """Test another persona's memories never reach an isolated prompt."""
        await orchestrator.memory.ingest("Bob secret code word", persona="Bob")
        await session_manager.create_session("/models/a.gguf", "")

        await stream(
            orchestrator,
            PromptPayload(text="Bob secret code word", persona="Ada", isolate=True),
        )

        assert fake_engine.requests[0][-1].content == "Bob secret code word"


class TestAutoIngest:
    """Tests for the auto-ingestion feedback loop."""

    @pytest.mark.asyncio
    async def test_exchange_is_stored(self, orchestrator, session_manager, vector_store):
        """Test a qualifying exchange becomes a Global auto-memory."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text=LONG_TEXT))
        await orchestrator.drain()

        entries = list(vector_store.entries.values())
        assert len(entries) == 1
        assert entries[0].text == f'Log - Human stated: "{LONG_TEXT}" | AI replied: "Hello there"'
        assert entries[0].tags == ["auto-memory"]
        assert entries[0].persona == "Global"

    @pytest.mark.asyncio
    async def test_isolated_persona_scope(self, orchestrator, session_manager, vector_store):
        """Test isolated personas file auto-memories under their own name."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text=LONG_TEXT, persona="Ada", isolate=True))
        await orchestrator.drain()

        assert [e.persona for e in vector_store.entries.values()] == ["Ada"]

    @pytest.mark.asyncio
    async def test_non_isolated_persona_goes_global(self, orchestrator, session_manager, vector_store):
        """Test a named persona without isolation shares into Global."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text=LONG_TEXT, persona="Ada", isolate=False))
        await orchestrator.drain()

        assert [e.persona for e in vector_store.entries.values()] == ["Global"]

    @pytest.mark.asyncio
    async def test_short_text_skipped(self, orchestrator, session_manager, vector_store):
        """Test messages under 20 characters are not remembered."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text="x" * 19))
        await orchestrator.drain()

        assert vector_store.entries == {}

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, orchestrator, session_manager, vector_store):
        """Test exactly 20 characters qualifies."""
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text="y" * 20))
        await orchestrator.drain()

        assert len(vector_store.entries) == 1

    @pytest.mark.asyncio
    async def test_emoji_only_reply_skipped(self, orchestrator, session_manager, fake_engine, vector_store):
        """Test a reply with no sentence content is not remembered."""
        await session_manager.create_session("/models/a.gguf", "")
        fake_engine.chunks = ["\U0001F600", "\U0001F44D"]

        reply, _ = await stream(orchestrator, PromptPayload(text=LONG_TEXT))
        await orchestrator.drain()

        assert reply == "\U0001F600\U0001F44D"
        assert vector_store.entries == {}

    @pytest.mark.asyncio
    async def test_empty_reply_skipped(self, orchestrator, session_manager, fake_engine, vector_store):
        """Test an empty reply is not remembered."""
        await session_manager.create_session("/models/a.gguf", "")
        fake_engine.chunks = []

        reply, chunks = await stream(orchestrator, PromptPayload(text=LONG_TEXT))
        await orchestrator.drain()

        assert reply == ""
        assert chunks == []
        assert vector_store.entries == {}

    @pytest.mark.asyncio
    async def test_disabled(self, memory_manager, session_manager, vector_store):
        """Test auto-ingestion can be switched off."""
        orchestrator = StreamingOrchestrator(memory_manager, session_manager, auto_ingest=False)
        await session_manager.create_session("/models/a.gguf", "")

        await stream(orchestrator, PromptPayload(text=LONG_TEXT))
        await orchestrator.drain()

        assert vector_store.entries == {}

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, orchestrator, session_manager, caplog):
        """Test a background ingest failure never reaches the caller."""
        await session_manager.create_session("/models/a.gguf", "")
        orchestrator.memory.ingest = AsyncMock(side_effect=IngestError("disk full"))

        with caplog.at_level(logging.ERROR, logger="ltm.orchestrator"):
            reply, _ = await stream(orchestrator, PromptPayload(text=LONG_TEXT))
            await orchestrator.drain()

        assert reply == "Hello there."
        assert "Auto-ingest failed: disk full" in caplog.text
        assert orchestrator.pending_ingests == 0

    @pytest.mark.asyncio
    async def test_recalled_on_next_turn(self, orchestrator, session_manager, fake_engine):
        """Test an auto-ingested exchange feeds a later prompt."""
        await session_manager.create_session("/models/a.gguf", "")
        await stream(orchestrator, PromptPayload(text=LONG_TEXT))
        await orchestrator.drain()

        await stream(orchestrator, PromptPayload(text=LONG_TEXT, history=[]))

        assert "- [auto-memory] Log - Human stated:" in fake_engine.requests[1][0].content
        await orchestrator.drain()


class TestPromptPayload:
    """Tests for PromptPayload helpers."""

    def test_for_persona(self):
        """Test persona settings are copied onto the payload."""
        persona = Persona(name="Ada", isolate=True, context_size=8192, reasoning=True, system_prompt="P")

        payload = PromptPayload.for_persona("hi", persona, image="AAAA")

        assert payload.persona == "Ada"
        assert payload.isolate is True
        assert payload.context_size == 8192
        assert payload.reasoning is True
        assert payload.system_prompt == "P"
        assert payload.memory_scope == "Ada"

    def test_memory_scope_global_without_isolation(self):
        """Test non-isolated payloads are scoped to Global."""
        assert PromptPayload(text="hi", persona="Ada").memory_scope == "Global"
