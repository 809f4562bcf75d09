"""
Persona settings consumed by the engine.

Personas are owned by the settings layer; the engine only reads them
when creating sessions and scoping retrieval.
"""

from dataclasses import dataclass
from typing import Any

GLOBAL_PERSONA = "Global"

DEFAULT_SYSTEM_PROMPT = """You are a local AI assistant with no default name. Adopt the identity provided in the conversation logs. Use the current persona name if one exists.
CRITICAL: Never prefix your response with your name, "Assistant:", or "Insight:". Start your response directly with dialogue or actions."""


@dataclass
class Persona:
    """A named assistant identity with its own model and memory scope."""
    name: str = GLOBAL_PERSONA
    model: str = ""
    isolate: bool = False
    context_size: int = 4096
    reasoning: bool = False
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def memory_scope(self) -> str:
        """Persona label that new memories are filed under."""
        return self.name if self.isolate else GLOBAL_PERSONA

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "Persona":
        return cls(
            name=name,
            model=data.get("model", ""),
            isolate=bool(data.get("isolate", False)),
            context_size=int(data.get("context_size", 4096)),
            reasoning=bool(data.get("reasoning", False)),
            system_prompt=data.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
        )
