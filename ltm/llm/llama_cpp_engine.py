"""
In-process llama.cpp engine.

Runs GGUF models through llama-cpp-python. The model occupies GPU memory
exclusively, so only one model can be loaded at a time and unloading waits
for any generation still running in a worker thread.
"""

import asyncio
import gc
import logging
import threading
from pathlib import Path
from typing import Optional

from ..errors import GenerationError
from .base import ChatTurn, ChunkCallback, GenerationOptions, InferenceEngine

logger = logging.getLogger("ltm.llm.llama_cpp")

_DONE = object()


def is_vision_model(model_path: str) -> bool:
    """Vision-language models are named with a `VL` or `Vision` marker."""
    name = Path(model_path).name
    return "VL" in name or "Vision" in name


def find_vision_projector(model_path: str) -> Optional[Path]:
    """
    Locate the multimodal projector shipped next to a vision model.

    Returns the first `*mmproj*.gguf` file in the model's directory, or
    None for text-only models.
    """
    if not is_vision_model(model_path):
        return None

    directory = Path(model_path).parent
    if not directory.is_dir():
        return None

    for candidate in sorted(directory.iterdir()):
        if "mmproj" in candidate.name.lower() and candidate.name.lower().endswith(".gguf"):
            return candidate
    return None


def _to_llama_message(turn: ChatTurn) -> dict:
    if not turn.image:
        return {"role": turn.role, "content": turn.content}
    return {
        "role": turn.role,
        "content": [
            {"type": "text", "text": turn.content},
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{turn.image}"}},
        ],
    }


class LlamaCppEngine(InferenceEngine):
    """llama-cpp-python engine implementation."""

    def __init__(
        self,
        gpu_layers: int = 32,
        vision_gpu_layers: int = 20,
        context_size: int = 4096,
        verbose: bool = False,
    ):
        """
        Initialize the engine. No model is loaded until load_model().

        Args:
            gpu_layers: Layers offloaded to the GPU for text-only models.
            vision_gpu_layers: Layers offloaded when a vision projector is
                attached (the projector takes part of the GPU budget).
            context_size: Context window allocated at load time. A session
                asking for a different size reloads the model with it.
            verbose: Pass llama.cpp's own logging through.
        """
        super().__init__()
        self.gpu_layers = gpu_layers
        self.vision_gpu_layers = vision_gpu_layers
        self.context_size = context_size
        self.verbose = verbose
        self.vision_projector: Optional[Path] = None
        self._llm = None
        # n_ctx the current Llama instance was built with
        self._n_ctx: int | None = None
        # Held by the worker thread for the whole generation
        self._generation_lock = threading.Lock()

    @property
    def provider_name(self) -> str:
        return "llama.cpp"

    def _load_sync(self, model_id: str, n_ctx: int) -> None:
        try:
            from llama_cpp import Llama
        except ImportError:
            raise RuntimeError(
                "llama-cpp-python not installed. Install with: pip install llama-cpp-python"
            )

        model_path = Path(model_id).resolve()
        projector = find_vision_projector(str(model_path))
        chat_handler = None
        if projector:
            from llama_cpp.llama_chat_format import Llava15ChatHandler
            logger.info(f"Found attached vision projector: {projector}")
            chat_handler = Llava15ChatHandler(clip_model_path=str(projector), verbose=self.verbose)

        gpu_layers = self.vision_gpu_layers if projector else self.gpu_layers
        logger.info(f"Loading model {model_path.name} (gpu_layers={gpu_layers}, n_ctx={n_ctx})")
        self._llm = Llama(
            model_path=str(model_path),
            n_gpu_layers=gpu_layers,
            n_ctx=n_ctx,
            chat_handler=chat_handler,
            verbose=self.verbose,
        )
        self._n_ctx = n_ctx
        self.vision_projector = projector

    async def load_model(self, model_id: str) -> None:
        if self._llm is not None:
            raise RuntimeError(
                f"Model {self._loaded_model} is still loaded; unload it first"
            )
        await asyncio.to_thread(self._load_sync, model_id, self.context_size)
        self._loaded_model = model_id

    def _unload_sync(self) -> None:
        # Wait for an abandoned generation to finish before freeing VRAM
        with self._generation_lock:
            if self._llm is not None:
                self._llm.close()
            self._llm = None
            self._n_ctx = None
            self.vision_projector = None
        gc.collect()

    def _reload_sync(self, model_id: str, n_ctx: int) -> None:
        self._unload_sync()
        self._load_sync(model_id, n_ctx)

    async def unload_model(self) -> None:
        if self._llm is None and self._loaded_model is None:
            return
        logger.info(f"Disposing of model {self._loaded_model} to free VRAM")
        await asyncio.to_thread(self._unload_sync)
        self._loaded_model = None

    def _reset_sync(self) -> None:
        with self._generation_lock:
            if self._llm is not None:
                self._llm.reset()

    async def create_context(self, context_size: int) -> int:
        """
        Start a fresh context of `context_size` tokens.

        llama.cpp fixes n_ctx when the model is constructed, so a different
        size reloads the model from disk.
        """
        if self._llm is None:
            raise RuntimeError("No model loaded")
        if context_size != self._n_ctx:
            logger.info(
                f"Reloading {self._loaded_model} for a {context_size}-token context "
                f"(loaded with {self._n_ctx})"
            )
            await asyncio.to_thread(self._reload_sync, self._loaded_model, context_size)
        else:
            await asyncio.to_thread(self._reset_sync)
        return self._n_ctx

    async def dispose_context(self) -> None:
        if self._llm is not None:
            await asyncio.to_thread(self._reset_sync)

    def _generate_sync(
        self,
        messages: list[dict],
        options: GenerationOptions,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        stop: threading.Event,
    ) -> None:
        """Worker thread: push fragments (or the failure) onto the loop's queue."""
        try:
            with self._generation_lock:
                if self._llm is None:
                    raise RuntimeError("Model was unloaded")
                stream = self._llm.create_chat_completion(
                    messages=messages,
                    temperature=options.temperature,
                    max_tokens=options.max_tokens,
                    stream=True,
                )
                for chunk in stream:
                    if stop.is_set():
                        break
                    delta = chunk["choices"][0].get("delta", {})
                    text = delta.get("content")
                    if text:
                        loop.call_soon_threadsafe(queue.put_nowait, text)
        except Exception as e:
            loop.call_soon_threadsafe(queue.put_nowait, e)
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, _DONE)

    async def stream_chat(
        self,
        messages: list[ChatTurn],
        on_chunk: ChunkCallback,
        options: GenerationOptions | None = None,
    ) -> str:
        if self._llm is None:
            raise GenerationError("No model loaded")

        options = options or GenerationOptions()
        if any(turn.image for turn in messages) and self.vision_projector is None:
            logger.warning(f"Image attached but {self._loaded_model} has no vision projector")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        payload = [_to_llama_message(turn) for turn in messages]

        loop.run_in_executor(None, self._generate_sync, payload, options, loop, queue, stop)

        parts: list[str] = []
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    raise GenerationError(f"llama.cpp generation failed: {item}") from item
                parts.append(item)
                on_chunk(item)
        except asyncio.CancelledError:
            # Abandoned (e.g. timeout): let the worker stop at the next token
            stop.set()
            raise

        return "".join(parts)
