"""
Tool Registry — the statically known capabilities.

Every local tool is registered here with its JSON Schema definition,
description, and execution handler. The registry serves two purposes:

1. DISCOVERY: It supplies the static half of the tool set that the
   aggregator hands to the reasoning node on every pass.

2. DISPATCH: Each definition carries the handler the executor invokes once
   the arguments have passed schema validation.

Remote tools discovered over MCP use the same ToolDefinition shape but are
never stored here; they are listed fresh on every pass by the aggregator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ToolDefinition:
    """
    A callable capability with its schema, description, and handler.

    The JSON schema is exactly what gets sent to the model in the tools
    array. The handler is the Python callable (sync or async) that runs
    when the model decides to use this tool; it receives the validated
    arguments as keyword arguments.
    """
    name: str
    description: str
    input_schema: dict[str, Any]          # JSON Schema for tool parameters
    handler: Optional[Callable] = None    # The function to call
    category: str = "general"             # "builtin", "fallback", "handoff", "mcp:<provider>"
    provider_id: Optional[str] = None     # Set for remotely discovered tools
    enabled: bool = True                  # Can be disabled without removal
    timeout: Optional[float] = None       # Per-tool timeout in seconds (None = use default)

    def to_api_format(self) -> dict[str, Any]:
        """
        Convert to the shape expected by the model's tools array:
        {"name": ..., "description": ..., "input_schema": {JSON Schema}}
        """
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """
    Central registry for statically declared tools.

    Registration order is preserved so the tool array sent to the model is
    stable from turn to turn.
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        logger.info("tool_registry.initialized")

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default.

        With ``allow_override=True`` the last registration wins.
        """
        existing = self._tools.get(tool.name)
        if existing is not None:
            if not allow_override:
                logger.warning(
                    "tool_registry.name_collision",
                    name=tool.name,
                    existing_category=existing.category,
                    new_category=tool.category,
                )
                raise ValueError(
                    f"Tool '{tool.name}' is already registered. "
                    "Use allow_override=True for an explicit replacement."
                )
            logger.info("tool_registry.replaced", name=tool.name, category=tool.category)
            # Re-insert so the replacement takes the newest position.
            del self._tools[tool.name]

        self._tools[tool.name] = tool
        logger.debug("tool_registry.registered", name=tool.name, category=tool.category)

    def unregister(self, name: str) -> bool:
        """Remove a tool from the registry."""
        if name in self._tools:
            del self._tools[name]
            logger.info("tool_registry.unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool by name."""
        return self._tools.get(name)

    def tools(self, include_disabled: bool = False) -> list[ToolDefinition]:
        """Registered definitions in registration order."""
        return [t for t in self._tools.values() if include_disabled or t.enabled]

    def get_api_tools(self, categories: Optional[list[str]] = None) -> list[dict[str, Any]]:
        """Generate the tools array for a model call from enabled tools."""
        return [
            tool.to_api_format()
            for tool in self.tools()
            if not categories or tool.category in categories
        ]

    @property
    def count(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
