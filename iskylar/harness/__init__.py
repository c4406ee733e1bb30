"""Harness: the orchestration graph, safety interception and turn coordination."""

from iskylar.harness.graph import GraphNode, GraphResult, OrchestrationGraph
from iskylar.harness.safety import SafetyInterceptor
from iskylar.harness.turn import SessionContext, TurnCoordinator, TurnResult

__all__ = [
    "GraphNode",
    "GraphResult",
    "OrchestrationGraph",
    "SafetyInterceptor",
    "SessionContext",
    "TurnCoordinator",
    "TurnResult",
]
