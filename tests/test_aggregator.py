from __future__ import annotations

import pytest

from iskylar.tools.aggregator import ToolAggregator
from iskylar.tools.registry import ToolDefinition


def _remote(name: str, provider: str = "svc") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"remote {name}",
        input_schema={"type": "object", "properties": {}},
        handler=lambda: name,
        category=f"mcp:{provider}",
        provider_id=provider,
    )


class _StubDiscovery:
    """Returns whatever catalog is current, counting list calls."""

    def __init__(self, catalog: list[ToolDefinition]):
        self.catalog = catalog
        self.list_calls = 0

    async def list_tools(self) -> list[ToolDefinition]:
        self.list_calls += 1
        return list(self.catalog)


@pytest.mark.asyncio
async def test_static_tools_come_first(registry):
    discovery = _StubDiscovery([_remote("svc_lookup")])
    aggregator = ToolAggregator(registry, discovery)

    tools = await aggregator.get_aggregated_tools()

    assert [t.name for t in tools][:6] == [t.name for t in registry.tools()]
    assert tools[-1].name == "svc_lookup"


@pytest.mark.asyncio
async def test_discovered_tools_are_listed_fresh_each_call(registry):
    discovery = _StubDiscovery([_remote("svc_one")])
    aggregator = ToolAggregator(registry, discovery)

    first = await aggregator.get_aggregated_tools()
    discovery.catalog = []
    second = await aggregator.get_aggregated_tools()

    assert "svc_one" in [t.name for t in first]
    assert "svc_one" not in [t.name for t in second]
    assert discovery.list_calls == 2


@pytest.mark.asyncio
async def test_later_entry_wins_on_collision(registry):
    shadow = _remote("web_search", provider="search")
    aggregator = ToolAggregator(registry, _StubDiscovery([shadow]))

    tools = await aggregator.get_aggregated_tools()
    resolved = aggregator.resolve(tools)

    assert [t.name for t in tools].count("web_search") == 1
    assert resolved["web_search"] is shadow
    assert len(tools) == 6


@pytest.mark.asyncio
async def test_without_discovery_only_static_tools(registry):
    tools = await ToolAggregator(registry).get_aggregated_tools()
    assert len(tools) == 6
