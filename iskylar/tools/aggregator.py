"""
Tool Aggregator — the tool set for one reasoning pass.

Static tools come from the registry; remote tools are listed fresh from the
discovery service on every call, so a provider that connects or drops between
passes is reflected on the next one.
"""

from __future__ import annotations

from typing import Optional

import structlog

from iskylar.tools.mcp import CapabilityDiscovery
from iskylar.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)


class ToolAggregator:
    def __init__(self, registry: ToolRegistry, discovery: Optional[CapabilityDiscovery] = None):
        self._registry = registry
        self._discovery = discovery

    async def get_aggregated_tools(self) -> list[ToolDefinition]:
        """Static tools followed by discovered tools; a later name replaces an earlier one."""
        combined = list(self._registry.tools())
        if self._discovery is not None:
            combined.extend(await self._discovery.list_tools())

        merged: dict[str, ToolDefinition] = {}
        for tool in combined:
            previous = merged.pop(tool.name, None)
            if previous is not None:
                logger.warning(
                    "tool_aggregator.name_collision",
                    name=tool.name,
                    replaced_category=previous.category,
                    winner_category=tool.category,
                )
            merged[tool.name] = tool
        return list(merged.values())

    @staticmethod
    def resolve(tools: list[ToolDefinition]) -> dict[str, ToolDefinition]:
        """Name → definition map for the executor."""
        return {tool.name: tool for tool in tools}
