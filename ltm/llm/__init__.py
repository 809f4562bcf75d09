"""
Inference Engine Module.

Provides a unified streaming interface over different generation backends
(in-process llama.cpp, Ollama, OpenAI-compatible servers) and the session
manager that owns the loaded model.
"""

from .base import ChatTurn, GenerationOptions, InferenceEngine
from .llama_cpp_engine import LlamaCppEngine, find_vision_projector
from .ollama_engine import OllamaEngine
from .openai_client import OpenAICompatEngine
from .factory import create_inference_engine
from .session import ChatSession, SessionManager, SessionState

__all__ = [
    "ChatTurn",
    "GenerationOptions",
    "InferenceEngine",
    "LlamaCppEngine",
    "find_vision_projector",
    "OllamaEngine",
    "OpenAICompatEngine",
    "create_inference_engine",
    "ChatSession",
    "SessionManager",
    "SessionState",
]
