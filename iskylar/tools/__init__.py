"""Tool layer: registry, built-ins, remote discovery, aggregation, execution."""

from iskylar.tools.aggregator import ToolAggregator
from iskylar.tools.builtin import register_builtin_tools
from iskylar.tools.executor import ToolExecutionResult, ToolExecutor
from iskylar.tools.mcp import CapabilityDiscovery
from iskylar.tools.registry import ToolDefinition, ToolRegistry

__all__ = [
    "CapabilityDiscovery",
    "ToolAggregator",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolRegistry",
    "register_builtin_tools",
]
