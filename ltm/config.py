"""
Configuration module for the LTM engine.

Loads application settings from config.yaml and secrets from environment variables.
"""

import logging
import os
import contextvars
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

from .persona import GLOBAL_PERSONA, Persona

# Load environment variables from .env file
load_dotenv()

# Context variable for per-exchange request ID logging
request_context = contextvars.ContextVar("request_id", default=None)


class RequestLogFilter(logging.Filter):
    """Filter to inject the streaming request ID into log records."""
    def filter(self, record):
        request_id = request_context.get()
        if request_id is not None:
            record.request_info = f" [Request {request_id}]"
        else:
            record.request_info = ""
        return True


# Default config file path (LTM_CONFIG overrides)
CONFIG_FILE = Path(
    os.getenv("LTM_CONFIG", str(Path(__file__).parent.parent / "config.yaml"))
)


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return _yaml_config.get(section, {}).get(key, default)


def _get_yaml_section(section: str, default=None):
    """Get an entire section from the YAML config."""
    return _yaml_config.get(section, default or {})


@dataclass
class OpenAIConfig:
    """OpenAI API configuration (embeddings)."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))


@dataclass
class MemoryConfig:
    """Vector memory store configuration."""
    store_type: Literal["sqlite", "chroma", "pgvector"] = field(
        default_factory=lambda: _get_yaml("memory", "store_type", "sqlite")
    )
    db_path: str = field(
        default_factory=lambda: _get_yaml("memory", "db_path", "ltm-memory.db")
    )
    chroma_path: str = field(
        default_factory=lambda: _get_yaml("memory", "chroma_path", "./memory_store")
    )
    # Secret from .env (contains credentials)
    postgres_url: str = field(default_factory=lambda: os.getenv("POSTGRES_URL", ""))
    embedding_provider: Literal["local", "openai"] = field(
        default_factory=lambda: _get_yaml("memory", "embedding_provider", "local")
    )
    # "" = provider default (all-MiniLM-L6-v2 / text-embedding-3-small)
    embedding_model: str = field(
        default_factory=lambda: _get_yaml("memory", "embedding_model", "")
    )
    embedding_dimensions: int = field(
        default_factory=lambda: _get_yaml("memory", "embedding_dimensions", 384)
    )
    # Candidates at or beyond this cosine distance are discarded
    relevance_cutoff: float = field(
        default_factory=lambda: _get_yaml("memory", "relevance_cutoff", 0.75)
    )
    # Minimum neighbours fetched before persona filtering
    isolation_overfetch: int = field(
        default_factory=lambda: _get_yaml("memory", "isolation_overfetch", 15)
    )


@dataclass
class InferenceConfig:
    """Generation engine configuration."""
    engine: Literal["llama_cpp", "ollama", "openai_compat"] = field(
        default_factory=lambda: _get_yaml("inference", "engine", "llama_cpp")
    )
    base_url: str = field(
        default_factory=lambda: _get_yaml("inference", "base_url", "")
    )
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("LTM_INFERENCE_API_KEY", ""))
    context_size: int = field(
        default_factory=lambda: _get_yaml("inference", "context_size", 4096)
    )
    gpu_layers: int = field(
        default_factory=lambda: _get_yaml("inference", "gpu_layers", 32)
    )
    vision_gpu_layers: int = field(
        default_factory=lambda: _get_yaml("inference", "vision_gpu_layers", 20)
    )
    settle_delay: float = field(
        default_factory=lambda: _get_yaml("inference", "settle_delay", 0.2)
    )
    vision_timeout: float = field(
        default_factory=lambda: _get_yaml("inference", "vision_timeout", 30.0)
    )
    request_timeout: float = field(
        default_factory=lambda: _get_yaml("inference", "request_timeout", 120.0)
    )
    temperature: float = field(
        default_factory=lambda: _get_yaml("inference", "temperature", 0.7)
    )


@dataclass
class OrchestratorConfig:
    """Streaming pipeline and auto-ingestion settings."""
    retrieval_limit: int = field(
        default_factory=lambda: _get_yaml("orchestrator", "retrieval_limit", 5)
    )
    auto_ingest: bool = field(
        default_factory=lambda: _get_yaml("orchestrator", "auto_ingest", True)
    )
    # Shorter user messages are treated as conversational filler
    auto_ingest_min_chars: int = field(
        default_factory=lambda: _get_yaml("orchestrator", "auto_ingest_min_chars", 20)
    )
    auto_ingest_tag: str = field(
        default_factory=lambda: _get_yaml("orchestrator", "auto_ingest_tag", "auto-memory")
    )


@dataclass
class AppConfig:
    """Application settings from YAML."""
    log_level: str = field(
        default_factory=lambda: _get_yaml("logging", "level", "INFO")
    )
    default_persona: str = field(
        default_factory=lambda: _get_yaml("app", "default_persona", GLOBAL_PERSONA)
    )
    default_model: str = field(
        default_factory=lambda: _get_yaml("app", "default_model", "")
    )


def _get_personas() -> dict[str, Persona]:
    """Build personas from the YAML `personas` section."""
    section = _get_yaml_section("personas")
    return {
        name: Persona.from_dict(name, data or {})
        for name, data in section.items()
    }


@dataclass
class Config:
    """Main configuration container."""
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    app: AppConfig = field(default_factory=AppConfig)
    personas: dict[str, Persona] = field(default_factory=_get_personas)

    def get_persona(self, name: str | None = None) -> Persona:
        """Look up a persona by name, falling back to an unscoped default."""
        name = name or self.app.default_persona
        if name in self.personas:
            return self.personas[name]
        return Persona(
            name=name,
            model=self.app.default_model,
            context_size=self.inference.context_size,
        )

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in root.handlers:
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(request_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(RequestLogFilter())

        return logging.getLogger("ltm")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if self.memory.store_type not in ("sqlite", "chroma", "pgvector"):
            errors.append(f"Unknown memory.store_type: {self.memory.store_type}")
        if self.memory.store_type == "pgvector" and not self.memory.postgres_url:
            errors.append("POSTGRES_URL is required when using the pgvector store")
        if self.memory.embedding_provider == "openai" and not self.openai.api_key:
            errors.append("OPENAI_API_KEY is required for openai embeddings")
        if not 0.0 < self.memory.relevance_cutoff <= 2.0:
            errors.append("memory.relevance_cutoff must be within (0, 2]")

        if self.inference.engine not in ("llama_cpp", "ollama", "openai_compat"):
            errors.append(f"Unknown inference.engine: {self.inference.engine}")
        if self.inference.engine == "openai_compat" and not self.inference.base_url:
            errors.append("inference.base_url is required for openai_compat engine")

        return errors


# Global configuration instance
config = Config()
