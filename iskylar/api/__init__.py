"""Model API layer."""

from iskylar.api.claude import ReasoningEngine

__all__ = ["ReasoningEngine"]
