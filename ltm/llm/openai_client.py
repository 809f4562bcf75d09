"""
OpenAI-compatible Engine Implementation.

Streams chat completions from any server that speaks the OpenAI chat API
(llama.cpp's llama-server, vLLM, LM Studio, or OpenAI itself).
"""

import logging

from openai import AsyncOpenAI

from ..errors import GenerationError
from .base import ChatTurn, ChunkCallback, GenerationOptions, InferenceEngine

logger = logging.getLogger("ltm.llm.openai")


def _to_openai_message(turn: ChatTurn) -> dict:
    if not turn.image:
        return {"role": turn.role, "content": turn.content}
    return {
        "role": turn.role,
        "content": [
            {"type": "text", "text": turn.content},
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{turn.image}"}},
        ],
    }


class OpenAICompatEngine(InferenceEngine):
    """OpenAI chat-completions engine implementation."""

    def __init__(self, api_key: str = "", base_url: str | None = None, timeout: float = 120.0):
        """
        Initialize the engine.

        Args:
            api_key: API key. Local servers usually accept any value.
            base_url: Server root, e.g. "http://localhost:8080/v1".
                None targets api.openai.com.
            timeout: Per-request timeout in seconds.
        """
        super().__init__()
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "OpenAI-compatible"

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key or "not-needed",
                base_url=self._base_url,
                timeout=self._timeout,
            )
        return self._client

    async def load_model(self, model_id: str) -> None:
        # The server owns the weights; loading only selects the model name
        self._get_client()
        self._loaded_model = model_id
        logger.info(f"Selected model {model_id}")

    async def unload_model(self) -> None:
        self._loaded_model = None

    async def stream_chat(
        self,
        messages: list[ChatTurn],
        on_chunk: ChunkCallback,
        options: GenerationOptions | None = None,
    ) -> str:
        """
        Stream a response using the chat completions API.

        Args:
            messages: Conversation, system turn first.
            on_chunk: Receives each content delta.
            options: Sampling settings.

        Returns:
            The concatenated response text.
        """
        if not self._loaded_model:
            raise GenerationError("No model selected")

        options = options or GenerationOptions()
        client = self._get_client()

        logger.debug(f"Sending streaming request to {self._base_url or 'OpenAI'} ({self._loaded_model})")

        kwargs = {}
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens

        parts: list[str] = []
        try:
            stream = await client.chat.completions.create(
                model=self._loaded_model,
                messages=[_to_openai_message(turn) for turn in messages],  # type: ignore
                temperature=options.temperature,
                stream=True,
                **kwargs,
            )

            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    parts.append(content)
                    on_chunk(content)

        except Exception as e:
            logger.error(f"OpenAI API error: {e}")
            raise GenerationError(f"OpenAI API error: {e}") from e

        logger.debug(f"OpenAI stream finished ({len(parts)} chunks)")
        return "".join(parts)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
