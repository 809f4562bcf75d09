"""
Prompt composition for memory-augmented generation.
"""

from typing import Optional

from .memory.base import RetrievedMemory

MEMORY_NOTE_HEADER = (
    "[SYSTEM NOTE: The following are historical interaction logs retrieved from "
    "Long-Term Memory. Use them to understand context, track name changes, and "
    "recall the Human's facts.]"
)
MEMORY_NOTE_FOOTER = "[END OF LONG-TERM MEMORY]"

REASONING_DIRECTIVE = (
    "Think the problem through step by step before giving your final answer."
)
DIRECT_DIRECTIVE = (
    "Answer directly. Do not narrate your internal reasoning."
)

GENERATION_ERROR_CHUNK = (
    "\n\n*[System Error: The neural pathway collapsed. "
    "Check the logs for VRAM/Vision errors.]*"
)


def timeout_error_chunk(message: str) -> str:
    return f"\n\n*[System Error: {message}]*"


def format_memory_note(memories: list[RetrievedMemory]) -> Optional[str]:
    """Delimited historical-context note, or None when nothing was retrieved."""
    if not memories:
        return None
    lines = "\n".join(m.to_context_line() for m in memories)
    return f"{MEMORY_NOTE_HEADER}\n{lines}\n{MEMORY_NOTE_FOOTER}"


def compose_system_content(
    base_prompt: str,
    memories: list[RetrievedMemory],
    reasoning: bool = False,
) -> str:
    """System content for history mode: base prompt, directive, memory note."""
    parts = [base_prompt.strip()] if base_prompt and base_prompt.strip() else []
    parts.append(REASONING_DIRECTIVE if reasoning else DIRECT_DIRECTIVE)
    note = format_memory_note(memories)
    if note:
        parts.append(note)
    return "\n\n".join(parts)


def compose_user_input(text: str, memories: list[RetrievedMemory]) -> str:
    """User turn for session mode; the memory note rides in front of it."""
    note = format_memory_note(memories)
    if not note:
        return text
    return f"{note}\n\nHuman: {text}"
