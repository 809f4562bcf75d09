"""
Exception hierarchy for the memory and inference engine.

Retrieval and ingest errors propagate to the immediate caller. Generation
errors are caught at the streaming boundary and turned into a terminal
chunk instead.
"""


class LTMError(Exception):
    """Base class for all engine errors."""
    pass


class EmbeddingError(LTMError):
    """Embedding computation failed."""
    pass


class StoreError(LTMError):
    """A table or vector index operation failed."""
    pass


class IngestError(LTMError):
    """A memory could not be stored. No partial entry is left behind."""
    pass


class RetrievalError(LTMError):
    """A similarity search could not be completed."""
    pass


class SessionError(LTMError):
    """No usable inference session."""
    pass


class SessionLoadError(SessionError):
    """Model, context or session construction failed."""
    pass


class GenerationError(LTMError):
    """The engine failed while producing a response."""
    pass


class InferenceTimeoutError(GenerationError):
    """Multimodal generation exceeded its time bound."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Vision inference timed out after {timeout:g}s. "
            "Try reducing image size or using a smaller model."
        )
