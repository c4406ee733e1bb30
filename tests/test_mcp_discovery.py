from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from iskylar.config import DiscoveryConfig
from iskylar.tools.aggregator import ToolAggregator
from iskylar.tools.executor import VALIDATION_ERROR
from iskylar.tools.mcp import (
    OPAQUE_ARGUMENT_SCHEMA,
    PROVIDER_UNREACHABLE,
    REMOTE_TOOL_ERROR,
    CapabilityDiscovery,
    MCPProtocolError,
    ProviderConfig,
    _BaseTransport,
    _extract_jsonrpc_result,
    _SSETransport,
    namespaced_tool_name,
    translate_input_schema,
)

_FLIGHT_TOOL = {
    "name": "search_flights",
    "description": "Find flights",
    "inputSchema": {
        "type": "object",
        "properties": {"destination": {"type": "string"}},
        "required": ["destination"],
    },
}


class _FakeTransport(_BaseTransport):
    def __init__(self, tools=None, call_result=None, call_error=None, list_error=None):
        self.tools = tools or []
        self.call_result = call_result if call_result is not None else {"content": [{"type": "text", "text": "ok"}]}
        self.call_error = call_error
        self.list_error = list_error
        self.calls: list[tuple[str, dict | None]] = []
        self.closed = False

    async def request(self, method: str, params: dict | None = None):
        self.calls.append((method, params))
        if method == "initialize":
            return {"protocolVersion": "2024-11-05", "capabilities": {}}
        if method == "tools/list":
            if self.list_error:
                raise self.list_error
            return {"tools": self.tools}
        if method == "tools/call":
            if self.call_error:
                raise self.call_error
            return self.call_result
        raise AssertionError(f"Unexpected method: {method}")

    async def notify(self, method: str, params: dict | None = None):
        self.calls.append((method, params))

    async def close(self):
        self.closed = True


class _Factory:
    """Transport factory that hands out per-provider fakes and counts opens."""

    def __init__(self, transports: dict[str, _FakeTransport], failing: set[str] = frozenset(), delay: float = 0.0):
        self.transports = transports
        self.failing = set(failing)
        self.delay = delay
        self.opened: list[str] = []

    async def __call__(self, config: ProviderConfig) -> _BaseTransport:
        self.opened.append(config.provider_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if config.provider_id in self.failing:
            raise httpx.ConnectError("connection refused")
        return self.transports[config.provider_id]


def _config(*provider_ids: str) -> DiscoveryConfig:
    servers = [{"id": pid, "url": f"http://{pid}.test/sse"} for pid in provider_ids]
    return DiscoveryConfig(ISKYLAR_MCP_SERVERS=json.dumps(servers))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_namespaced_tool_name_sanitizes_and_truncates():
    assert namespaced_tool_name("travel-service", "search_flights") == "travel-service_search_flights"
    assert namespaced_tool_name("food service", "menu.get") == "food_service_menu_get"
    assert len(namespaced_tool_name("p" * 40, "t" * 40)) == 64


def test_extract_jsonrpc_result_raises_on_error_object():
    assert _extract_jsonrpc_result({"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}) == {"ok": True}
    with pytest.raises(MCPProtocolError, match="-32601"):
        _extract_jsonrpc_result({"error": {"code": -32601, "message": "Method not found"}})


def test_object_schema_is_carried_over():
    schema, opaque = translate_input_schema(_FLIGHT_TOOL["inputSchema"])
    assert not opaque
    assert schema["properties"] == {"destination": {"type": "string"}}
    assert schema["required"] == ["destination"]


@pytest.mark.parametrize("raw", [None, {}, {"type": "string"}, []])
def test_untranslatable_schema_falls_back_to_opaque_params(raw):
    schema, opaque = translate_input_schema(raw)
    assert opaque
    assert schema == OPAQUE_ARGUMENT_SCHEMA


def test_default_provider_trio():
    config = DiscoveryConfig(ISKYLAR_MCP_BASE_URL="http://svc.test/", ISKYLAR_MCP_SERVERS="")
    providers = config.get_provider_list()
    assert [p["id"] for p in providers] == ["travel-service", "food-service", "calendar-service"]
    assert providers[0]["url"] == "http://svc.test/api/mcp/travel"
    assert all(p["transport"] == "sse" for p in providers)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_runs_handshake():
    transport = _FakeTransport()
    discovery = CapabilityDiscovery(_config(), transport_factory=_Factory({"travel": transport}))

    assert await discovery.connect("travel", "http://travel.test/sse") is True

    methods = [m for m, _ in transport.calls]
    assert methods == ["initialize", "notifications/initialized"]
    assert discovery.is_connected("travel")


@pytest.mark.asyncio
async def test_connect_failure_is_isolated():
    factory = _Factory({"food": _FakeTransport(tools=[_FLIGHT_TOOL])}, failing={"travel"})
    discovery = CapabilityDiscovery(_config("travel", "food"), transport_factory=factory)

    connected = await discovery.connect_defaults()

    assert connected == ["food"]
    assert discovery.connected_providers == ["food"]
    assert discovery.stats["failed_attempts"] == 1


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt():
    factory = _Factory({"travel": _FakeTransport()}, delay=0.02)
    discovery = CapabilityDiscovery(_config(), transport_factory=factory)

    results = await asyncio.gather(*(
        discovery.connect("travel", "http://travel.test/sse") for _ in range(5)
    ))

    assert results == [True] * 5
    assert factory.opened == ["travel"]
    assert await discovery.connect("travel", "http://travel.test/sse") is True
    assert factory.opened == ["travel"]


@pytest.mark.asyncio
async def test_handshake_failure_closes_transport():
    class _Rejecting(_FakeTransport):
        async def request(self, method, params=None):
            raise MCPProtocolError("MCP error -32600: bad init")

    transport = _Rejecting()
    discovery = CapabilityDiscovery(_config(), transport_factory=_Factory({"travel": transport}))

    assert await discovery.connect("travel", "http://travel.test/sse") is False
    assert transport.closed
    assert not discovery.is_connected("travel")


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_tools_bootstraps_lazily_once():
    factory = _Factory({"travel": _FakeTransport(tools=[_FLIGHT_TOOL])})
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=factory)

    first = await discovery.list_tools()
    second = await discovery.list_tools()

    assert [t.name for t in first] == ["travel_search_flights"]
    assert [t.name for t in second] == ["travel_search_flights"]
    assert factory.opened == ["travel"]


@pytest.mark.asyncio
async def test_failed_bootstrap_is_not_retried_until_reset():
    factory = _Factory({"travel": _FakeTransport(tools=[_FLIGHT_TOOL])}, failing={"travel"})
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=factory)

    assert await discovery.list_tools() == []
    assert await discovery.list_tools() == []
    assert factory.opened == ["travel"]

    factory.failing.clear()
    discovery.reset()
    tools = await discovery.list_tools()

    assert [t.name for t in tools] == ["travel_search_flights"]
    assert factory.opened == ["travel", "travel"]


@pytest.mark.asyncio
async def test_manual_connection_suppresses_default_bootstrap():
    factory = _Factory({
        "manual": _FakeTransport(tools=[_FLIGHT_TOOL]),
        "travel": _FakeTransport(),
        "food": _FakeTransport(),
    })
    discovery = CapabilityDiscovery(_config("travel", "food"), transport_factory=factory)

    assert await discovery.connect("manual", "http://manual.test/sse")
    tools = await discovery.list_tools()

    assert [t.name for t in tools] == ["manual_search_flights"]
    assert factory.opened == ["manual"]
    assert discovery.connected_providers == ["manual"]


@pytest.mark.asyncio
async def test_failing_list_skips_only_that_provider():
    factory = _Factory({
        "travel": _FakeTransport(list_error=RuntimeError("stream closed")),
        "food": _FakeTransport(tools=[{"name": "order", "description": "Order food"}]),
    })
    discovery = CapabilityDiscovery(_config("travel", "food"), transport_factory=factory)

    tools = await discovery.list_tools()

    assert [t.name for t in tools] == ["food_order"]
    assert tools[0].category == "mcp:food"
    assert tools[0].provider_id == "food"


@pytest.mark.asyncio
async def test_zero_providers_gives_static_tools_only(registry, no_provider_config):
    discovery = CapabilityDiscovery(no_provider_config, transport_factory=_Factory({}))
    aggregator = ToolAggregator(registry, discovery)

    tools = await aggregator.get_aggregated_tools()

    assert len(tools) == 6
    assert [t.name for t in tools] == [t.name for t in registry.tools()]


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wrapped_tool_calls_remote_and_returns_raw_json(executor):
    transport = _FakeTransport(tools=[_FLIGHT_TOOL], call_result={"flights": ["LH400"]})
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=_Factory({"travel": transport}))
    tools = {t.name: t for t in await discovery.list_tools()}

    result = await executor.execute("c1", "travel_search_flights", {"destination": "FRA"}, tools)

    assert result.payload() == {"flights": ["LH400"]}
    assert transport.calls[-1] == (
        "tools/call",
        {"name": "search_flights", "arguments": {"destination": "FRA"}},
    )


@pytest.mark.asyncio
async def test_translated_schema_rejects_bad_arguments_before_network(executor):
    transport = _FakeTransport(tools=[_FLIGHT_TOOL])
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=_Factory({"travel": transport}))
    tools = {t.name: t for t in await discovery.list_tools()}

    result = await executor.execute("c1", "travel_search_flights", {"destination": 42}, tools)

    assert result.error_code == VALIDATION_ERROR
    assert all(method != "tools/call" for method, _ in transport.calls)


@pytest.mark.asyncio
async def test_opaque_params_are_decoded(executor):
    transport = _FakeTransport(tools=[{"name": "raw", "description": "Raw"}], call_result={"ok": 1})
    discovery = CapabilityDiscovery(_config("svc"), transport_factory=_Factory({"svc": transport}))
    tools = {t.name: t for t in await discovery.list_tools()}

    good = await executor.execute("c1", "svc_raw", {"params": '{"a": 1}'}, tools)
    bad = await executor.execute("c2", "svc_raw", {"params": "{not json"}, tools)

    assert good.payload() == {"ok": 1}
    assert transport.calls[-1] == ("tools/call", {"name": "raw", "arguments": {"a": 1}})
    assert bad.payload()["error"] == VALIDATION_ERROR


@pytest.mark.asyncio
async def test_transport_fault_disconnects_provider():
    transport = _FakeTransport(tools=[_FLIGHT_TOOL], call_error=httpx.ReadError("reset"))
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=_Factory({"travel": transport}))
    await discovery.connect("travel", "http://travel.test/sse")

    raw = await discovery.call_tool("travel", "search_flights", {"destination": "FRA"})

    assert json.loads(raw)["error"] == PROVIDER_UNREACHABLE
    assert not discovery.is_connected("travel")
    assert transport.closed

    again = await discovery.call_tool("travel", "search_flights", {"destination": "FRA"})
    assert json.loads(again)["error"] == PROVIDER_UNREACHABLE


@pytest.mark.asyncio
async def test_remote_error_keeps_provider_connected():
    transport = _FakeTransport(call_error=MCPProtocolError("MCP error -32000: sold out"))
    discovery = CapabilityDiscovery(_config("travel"), transport_factory=_Factory({"travel": transport}))
    await discovery.connect("travel", "http://travel.test/sse")

    raw = await discovery.call_tool("travel", "book", {})

    payload = json.loads(raw)
    assert payload["error"] == REMOTE_TOOL_ERROR
    assert "sold out" in payload["message"]
    assert discovery.is_connected("travel")


@pytest.mark.asyncio
async def test_shutdown_closes_every_transport():
    transports = {"a": _FakeTransport(), "b": _FakeTransport()}
    discovery = CapabilityDiscovery(_config("a", "b"), transport_factory=_Factory(transports))
    await discovery.connect_defaults()

    await discovery.shutdown()

    assert discovery.connected_providers == []
    assert all(t.closed for t in transports.values())


# ---------------------------------------------------------------------------
# SSE transport against an in-process server
# ---------------------------------------------------------------------------

def _sse_app():
    """A MockTransport handler speaking MCP over SSE."""
    outbox: asyncio.Queue = asyncio.Queue()
    posted: list[dict] = []

    async def stream():
        yield b"event: endpoint\ndata: /messages?session=abc\n\n"
        while True:
            frame = await outbox.get()
            yield f"event: message\ndata: {json.dumps(frame)}\n\n".encode()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())
        body = json.loads(request.content)
        posted.append(body)
        assert request.url.path == "/messages"
        if "id" in body:
            if body["method"] == "tools/list":
                await outbox.put({"jsonrpc": "2.0", "id": body["id"], "result": {"tools": [_FLIGHT_TOOL]}})
            elif body["method"] == "tools/call":
                await outbox.put({"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "nope"}})
            else:
                await outbox.put({"jsonrpc": "2.0", "id": body["id"], "result": {}})
        return httpx.Response(202)

    return handler, posted


@pytest.mark.asyncio
async def test_sse_transport_round_trip():
    handler, posted = _sse_app()
    config = ProviderConfig(provider_id="travel", url="http://travel.test/sse", timeout_seconds=2.0, connect_timeout_seconds=2.0)
    transport = _SSETransport(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    await transport.start()
    try:
        assert transport.post_url == "http://travel.test/messages?session=abc"
        await transport.request("initialize", {"protocolVersion": "2024-11-05"})
        await transport.notify("notifications/initialized", {})
        listed = await transport.request("tools/list", {})
        with pytest.raises(MCPProtocolError, match="nope"):
            await transport.request("tools/call", {"name": "search_flights", "arguments": {}})
    finally:
        await transport.close()

    assert listed["tools"][0]["name"] == "search_flights"
    assert [p["method"] for p in posted] == [
        "initialize",
        "notifications/initialized",
        "tools/list",
        "tools/call",
    ]
    with pytest.raises(RuntimeError):
        await transport.request("tools/list", {})
