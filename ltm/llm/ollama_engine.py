"""
Ollama Engine Implementation.

Talks to a local Ollama server over its native HTTP API. Responses stream
as newline-delimited JSON objects, one per generated fragment.
"""

import json
import logging

import httpx

from ..errors import GenerationError
from .base import ChatTurn, ChunkCallback, GenerationOptions, InferenceEngine

logger = logging.getLogger("ltm.llm.ollama")

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def _to_ollama_message(turn: ChatTurn) -> dict:
    message = {"role": turn.role, "content": turn.content}
    if turn.image:
        message["images"] = [turn.image]
    return message


class OllamaEngine(InferenceEngine):
    """Ollama /api/chat engine implementation."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = 120.0,
        keep_alive: str = "30m",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.keep_alive = keep_alive
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def provider_name(self) -> str:
        return "Ollama"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def load_model(self, model_id: str) -> None:
        """Ask the server to load the model into memory (empty generate request)."""
        client = self._get_client()
        response = await client.post(
            "/api/generate",
            json={"model": model_id, "keep_alive": self.keep_alive},
        )
        if response.status_code >= 400:
            raise RuntimeError(f"Ollama could not load {model_id}: HTTP {response.status_code} {response.text}")
        self._loaded_model = model_id
        logger.info(f"Ollama loaded {model_id}")

    async def unload_model(self) -> None:
        """Evict the model from server memory (keep_alive=0)."""
        if not self._loaded_model:
            return
        model_id = self._loaded_model
        self._loaded_model = None
        try:
            await self._get_client().post(
                "/api/generate",
                json={"model": model_id, "keep_alive": 0},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to unload {model_id} from Ollama: {e}")
        else:
            logger.info(f"Ollama unloaded {model_id}")

    def _build_request(self, messages: list[ChatTurn], options: GenerationOptions) -> dict:
        body = {
            "model": self._loaded_model,
            "messages": [_to_ollama_message(turn) for turn in messages],
            "stream": True,
            "keep_alive": self.keep_alive,
            "options": {"temperature": options.temperature},
        }
        if options.context_size:
            body["options"]["num_ctx"] = options.context_size
        if options.max_tokens:
            body["options"]["num_predict"] = options.max_tokens
        if options.reasoning:
            body["think"] = True
        return body

    async def stream_chat(
        self,
        messages: list[ChatTurn],
        on_chunk: ChunkCallback,
        options: GenerationOptions | None = None,
    ) -> str:
        if not self._loaded_model:
            raise GenerationError("No model loaded")

        options = options or GenerationOptions()
        body = self._build_request(messages, options)
        client = self._get_client()

        parts: list[str] = []
        try:
            async with client.stream("POST", "/api/chat", json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise GenerationError(
                        f"Ollama returned HTTP {response.status_code}: {response.text}"
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping malformed stream line: {line[:80]}")
                        continue

                    if data.get("error"):
                        raise GenerationError(f"Ollama error: {data['error']}")

                    content = data.get("message", {}).get("content", "")
                    if content:
                        parts.append(content)
                        on_chunk(content)

                    if data.get("done"):
                        break

        except httpx.HTTPError as e:
            raise GenerationError(f"Ollama request failed: {e}") from e

        return "".join(parts)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
