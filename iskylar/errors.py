"""
Run-level exceptions.

Recoverable conditions (unknown tools, bad arguments, unreachable providers)
never show up here: they travel through the conversation as structured tool
payloads so the model can react. Only faults that end a run are exceptions.
"""

from __future__ import annotations


class IskylarError(RuntimeError):
    """Base class for run-level failures reported to the caller."""


class EngineInitError(IskylarError):
    """Raised when the reasoning engine cannot be initialized safely."""


class ModelInferenceError(IskylarError):
    """Raised when a model call fails or times out; fatal to the current run."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
