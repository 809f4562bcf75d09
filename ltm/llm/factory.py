"""
Inference Engine Factory.

Creates the appropriate inference engine based on configuration.
"""

import logging
from typing import Literal

from .base import InferenceEngine
from .llama_cpp_engine import LlamaCppEngine
from .ollama_engine import DEFAULT_OLLAMA_URL, OllamaEngine
from .openai_client import OpenAICompatEngine

logger = logging.getLogger("ltm.llm.factory")


def create_inference_engine(
    engine: Literal["llama_cpp", "ollama", "openai_compat"],
    base_url: str = "",
    api_key: str = "",
    context_size: int = 4096,
    gpu_layers: int = 32,
    vision_gpu_layers: int = 20,
    request_timeout: float = 120.0,
) -> InferenceEngine:
    """
    Create an inference engine based on the specified type.

    Args:
        engine: Which backend to use ("llama_cpp", "ollama" or "openai_compat").
        base_url: Server URL for HTTP engines ("" for the engine default).
        api_key: API key for the OpenAI-compatible engine.
        context_size: Context window for the in-process engine.
        gpu_layers: GPU offload for text models (in-process engine).
        vision_gpu_layers: GPU offload for vision models (in-process engine).
        request_timeout: Per-request timeout for HTTP engines, in seconds.

    Returns:
        Configured InferenceEngine instance.

    Raises:
        ValueError: If the engine is not supported or not properly configured.
    """
    logger.info(f"Creating inference engine: {engine}")

    if engine == "llama_cpp":
        return LlamaCppEngine(
            gpu_layers=gpu_layers,
            vision_gpu_layers=vision_gpu_layers,
            context_size=context_size,
        )

    elif engine == "ollama":
        return OllamaEngine(base_url=base_url or DEFAULT_OLLAMA_URL, timeout=request_timeout)

    elif engine == "openai_compat":
        if not api_key and not base_url:
            raise ValueError("An API key or a base_url is required for the openai_compat engine")
        return OpenAICompatEngine(api_key=api_key, base_url=base_url or None, timeout=request_timeout)

    else:
        raise ValueError(f"Unsupported inference engine: {engine}")
