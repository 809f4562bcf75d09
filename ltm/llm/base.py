"""
Abstract base class for inference engines.

Defines the interface that every generation backend implements, so the
session manager and the streaming pipeline never depend on whether the
model runs in-process or behind an HTTP API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Literal, Optional

ChunkCallback = Callable[[str], None]


@dataclass
class ChatTurn:
    """One message of a conversation."""
    role: Literal["system", "user", "assistant"]
    content: str
    image: Optional[str] = None  # Raw base64, no data-URL envelope


@dataclass
class GenerationOptions:
    """Per-request sampling and budget settings."""
    temperature: float = 0.7
    max_tokens: int | None = None
    context_size: int | None = None
    reasoning: bool = False


class InferenceEngine(ABC):
    """
    Abstract base class for generation engines.

    An engine holds at most one loaded model. Callers must unload the
    current model before loading another one.
    """

    def __init__(self):
        self._loaded_model: str | None = None

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the engine backend."""
        pass

    @property
    def loaded_model(self) -> str | None:
        """Identifier of the model currently loaded, if any."""
        return self._loaded_model

    @abstractmethod
    async def load_model(self, model_id: str) -> None:
        """
        Load (or select) a model.

        Args:
            model_id: Model file path for in-process engines, model name for
                HTTP engines.
        """
        pass

    @abstractmethod
    async def unload_model(self) -> None:
        """Release the loaded model and every resource it holds."""
        pass

    async def create_context(self, context_size: int) -> int:
        """
        Prepare a fresh generation context against the loaded model.

        Returns:
            The context size actually in effect.
        """
        return context_size

    async def dispose_context(self) -> None:
        """Release the current generation context, keeping the model."""
        pass

    @abstractmethod
    async def stream_chat(
        self,
        messages: list[ChatTurn],
        on_chunk: ChunkCallback,
        options: GenerationOptions | None = None,
    ) -> str:
        """
        Stream a chat completion.

        Each text fragment is passed to `on_chunk` in the order it was
        produced. The returned text is exactly the concatenation of the
        fragments.

        Raises:
            GenerationError: The engine failed to produce a response.
        """
        pass

    async def close(self) -> None:
        """Release client resources (HTTP connections, etc.)."""
        pass
