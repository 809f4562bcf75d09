"""
LTM - Persona-aware long-term memory for local chat models.

This package sits between a chat caller and a text-generation engine:
exchanges are distilled into short memory records, embedded, and later
retrieved by semantic similarity to ground future responses.
"""

__version__ = "1.0.0"
