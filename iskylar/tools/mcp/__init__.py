"""
Capability Discovery — connections to remote MCP tool servers.

This module implements a small but real MCP client:
- SSE servers: a persistent GET event stream carries responses, requests are
  POSTed to the endpoint the server announces on that stream
- streamable HTTP servers: one JSON-RPC POST per request

Each connected provider's tool catalog is wrapped as local ToolDefinitions
named ``{provider_id}_{tool_name}``. Providers fail independently: a provider
that cannot be reached is logged and left out of the connection table, and
its siblings are unaffected.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from iskylar import __version__
from iskylar.config import DiscoveryConfig
from iskylar.tools.executor import VALIDATION_ERROR, error_payload
from iskylar.tools.registry import ToolDefinition

logger = structlog.get_logger(__name__)

PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
REMOTE_TOOL_ERROR = "REMOTE_TOOL_ERROR"

_PROTOCOL_VERSION = "2024-11-05"


@dataclass
class ProviderConfig:
    """How to reach one capability provider."""

    provider_id: str
    url: str
    transport: str = "sse"  # "sse" or "streamable_http"
    api_key: Optional[str] = None
    timeout_seconds: float = 20.0
    connect_timeout_seconds: float = 10.0


@dataclass
class RemoteTool:
    """A tool advertised by a provider's tools/list."""

    name: str
    description: str
    input_schema: dict[str, Any]
    provider_id: str


@dataclass
class ProviderConnection:
    provider_id: str
    endpoint: str
    transport: "_BaseTransport"
    tool_count: int = 0
    meta: dict[str, Any] = field(default_factory=dict)


class MCPProtocolError(RuntimeError):
    """The provider answered, but with a JSON-RPC error object."""


def _sanitize_name_part(s: str) -> str:
    """Replace characters invalid in model tool names with underscores."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", s)


def namespaced_tool_name(provider_id: str, tool_name: str) -> str:
    return f"{_sanitize_name_part(provider_id)}_{_sanitize_name_part(tool_name)}"[:64]


def _extract_jsonrpc_result(response: Any) -> Any:
    """Extract result payload from a JSON-RPC response."""
    if not isinstance(response, dict):
        raise MCPProtocolError(f"Invalid JSON-RPC response type: {type(response).__name__}")

    error_obj = response.get("error")
    if error_obj is not None:
        if isinstance(error_obj, dict):
            code = error_obj.get("code", "unknown")
            message = error_obj.get("message", "Unknown MCP error")
            raise MCPProtocolError(f"MCP error {code}: {message}")
        raise MCPProtocolError(f"MCP error: {error_obj}")

    return response.get("result")


OPAQUE_ARGUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "params": {
            "type": "string",
            "description": "JSON string of arguments matching the tool's schema",
        },
    },
    "required": ["params"],
}


def translate_input_schema(schema: Any) -> tuple[dict[str, Any], bool]:
    """
    Map a provider's declared parameter schema to the local schema.

    Object schemas are carried over so arguments are validated locally before
    the network call. Anything else falls back to the single opaque
    ``params`` string. Returns ``(schema, is_opaque)``.
    """
    if isinstance(schema, dict) and (
        schema.get("type") == "object" or isinstance(schema.get("properties"), dict)
    ):
        translated = dict(schema)
        translated["type"] = "object"
        properties = translated.get("properties")
        translated["properties"] = dict(properties) if isinstance(properties, dict) else {}
        required = translated.get("required")
        translated["required"] = [r for r in required if isinstance(r, str)] if isinstance(required, list) else []
        return translated, False
    return dict(OPAQUE_ARGUMENT_SCHEMA), True


class _BaseTransport:
    async def start(self) -> None:
        return None

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        raise NotImplementedError

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class _HTTPTransport(_BaseTransport):
    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._request_id = 0
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._headers: dict[str, str] = {"Content-Type": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        self._request_id += 1
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": self._request_id, "method": method}
        if params is not None:
            payload["params"] = params
        response = await self._client.post(self._config.url, json=payload, headers=self._headers)
        response.raise_for_status()
        return _extract_jsonrpc_result(response.json())

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        response = await self._client.post(self._config.url, json=payload, headers=self._headers)
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class _SSETransport(_BaseTransport):
    """
    MCP over Server-Sent Events.

    The GET stream stays open for the life of the connection. The first
    ``endpoint`` event names the URL that requests are POSTed to; every
    ``message`` event is a JSON-RPC frame matched to a pending request id.
    """

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds, read=None),
        )
        self._headers: dict[str, str] = {}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        self._request_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._endpoint: Optional[asyncio.Future] = None
        self._response: Optional[httpx.Response] = None
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def post_url(self) -> Optional[str]:
        if self._endpoint is not None and self._endpoint.done() and not self._endpoint.exception():
            return self._endpoint.result()
        return None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._endpoint = loop.create_future()
        request = self._client.build_request(
            "GET",
            self._config.url,
            headers={"Accept": "text/event-stream", **self._headers},
        )
        self._response = await self._client.send(request, stream=True)
        self._response.raise_for_status()
        self._reader = asyncio.create_task(self._read_events())
        try:
            await asyncio.wait_for(
                asyncio.shield(self._endpoint),
                timeout=self._config.connect_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise RuntimeError(
                f"Provider '{self._config.provider_id}' sent no endpoint event within "
                f"{self._config.connect_timeout_seconds}s."
            ) from exc

    async def _read_events(self) -> None:
        assert self._response is not None
        event = "message"
        data_lines: list[str] = []
        error: Optional[BaseException] = None
        try:
            async for line in self._response.aiter_lines():
                if line == "":
                    if data_lines:
                        self._dispatch(event, "\n".join(data_lines))
                    event, data_lines = "message", []
                    continue
                if line.startswith(":"):
                    continue
                key, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if key == "event":
                    event = value
                elif key == "data":
                    data_lines.append(value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc
            logger.debug(
                "mcp_discovery.sse_stream_error",
                provider=self._config.provider_id,
                error=str(exc),
            )
        finally:
            self._fail_pending(
                error or RuntimeError(f"SSE stream for '{self._config.provider_id}' closed.")
            )

    def _dispatch(self, event: str, data: str) -> None:
        if event == "endpoint":
            if self._endpoint is not None and not self._endpoint.done():
                self._endpoint.set_result(str(httpx.URL(self._config.url).join(data.strip())))
            return
        if event != "message":
            return
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("mcp_discovery.sse_bad_frame", provider=self._config.provider_id)
            return
        if not isinstance(frame, dict):
            return
        future = self._pending.pop(frame.get("id"), None) if "id" in frame else None
        if future is None:
            logger.debug(
                "mcp_discovery.sse_unexpected_message",
                provider=self._config.provider_id,
                received_id=frame.get("id"),
                method=frame.get("method"),
            )
            return
        if not future.done():
            future.set_result(frame)

    def _fail_pending(self, exc: BaseException) -> None:
        self._closed = True
        if self._endpoint is not None and not self._endpoint.done():
            self._endpoint.set_exception(RuntimeError(str(exc)))
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RuntimeError(str(exc)))
        self._pending.clear()

    async def _post(self, payload: dict[str, Any]) -> None:
        url = self.post_url
        if url is None:
            raise RuntimeError(f"Provider '{self._config.provider_id}' has no POST endpoint.")
        response = await self._client.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json", **self._headers},
            timeout=self._config.timeout_seconds,
        )
        response.raise_for_status()

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        if self._closed:
            raise RuntimeError(f"SSE transport for '{self._config.provider_id}' is closed.")
        self._request_id += 1
        request_id = self._request_id
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._post(payload)
            frame = await asyncio.wait_for(future, timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RuntimeError(
                f"MCP request '{method}' timed out after {self._config.timeout_seconds}s "
                f"on provider '{self._config.provider_id}'."
            ) from exc
        finally:
            self._pending.pop(request_id, None)
        return _extract_jsonrpc_result(frame)

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._post(payload)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._response is not None:
            await self._response.aclose()
        await self._client.aclose()
        self._fail_pending(RuntimeError("transport closed"))


TransportFactory = Callable[[ProviderConfig], Awaitable[_BaseTransport]]


async def open_transport(config: ProviderConfig) -> _BaseTransport:
    kind = config.transport.strip().lower()
    if kind == "sse":
        transport: _BaseTransport = _SSETransport(config)
    elif kind == "streamable_http":
        transport = _HTTPTransport(config)
    else:
        raise ValueError(
            f"Unsupported MCP transport '{config.transport}' for provider '{config.provider_id}'."
        )
    try:
        await transport.start()
    except BaseException:
        await transport.close()
        raise
    return transport


class CapabilityDiscovery:
    """
    Maintains connections to capability providers and lists their tools.

    Lifecycle:
    1. connect() / connect_defaults() - open provider connections
    2. list_tools() - query every connected provider, wrap as ToolDefinitions
    3. call_tool() - proxy a call to the owning provider
    4. shutdown() - close every connection

    The connection table belongs to this instance. Concurrent connect() calls
    for the same provider share one in-flight attempt, so a provider is never
    connected twice.
    """

    def __init__(
        self,
        config: Optional[DiscoveryConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self._config = config or DiscoveryConfig()
        self._transport_factory = transport_factory or open_transport
        self._connections: dict[str, ProviderConnection] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._bootstrapped = False
        self._bootstrap_lock = asyncio.Lock()
        self._failed_attempts = 0

        logger.info(
            "mcp_discovery.initialized",
            configured_providers=len(self._config.get_provider_list()),
            auto_bootstrap=self._config.auto_bootstrap,
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(
        self,
        provider_id: str,
        endpoint: str,
        transport: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> bool:
        """Connect to a provider. Idempotent; never raises for network faults."""
        if provider_id in self._connections:
            return True

        task = self._pending.get(provider_id)
        if task is None:
            provider = ProviderConfig(
                provider_id=provider_id,
                url=endpoint,
                transport=transport or self._config.transport,
                api_key=api_key,
                timeout_seconds=self._config.request_timeout_seconds,
                connect_timeout_seconds=self._config.connect_timeout_seconds,
            )
            task = asyncio.create_task(self._establish(provider))
            self._pending[provider_id] = task
            task.add_done_callback(lambda _t, pid=provider_id: self._pending.pop(pid, None))
        else:
            logger.debug("mcp_discovery.connect_in_flight", provider=provider_id)

        return await asyncio.shield(task)

    async def _establish(self, provider: ProviderConfig) -> bool:
        logger.info(
            "mcp_discovery.connecting",
            provider=provider.provider_id,
            url=provider.url,
            transport=provider.transport,
        )
        transport: Optional[_BaseTransport] = None
        try:
            transport = await asyncio.wait_for(
                self._transport_factory(provider),
                timeout=provider.connect_timeout_seconds,
            )
            await self._handshake(provider.provider_id, transport)
        except Exception as exc:
            self._failed_attempts += 1
            logger.warning(
                "mcp_discovery.connect_failed",
                provider=provider.provider_id,
                url=provider.url,
                error=f"{type(exc).__name__}: {exc}",
            )
            if transport is not None:
                await self._close_quietly(provider.provider_id, transport)
            return False

        self._connections[provider.provider_id] = ProviderConnection(
            provider_id=provider.provider_id,
            endpoint=provider.url,
            transport=transport,
        )
        logger.info("mcp_discovery.connected", provider=provider.provider_id)
        return True

    async def _handshake(self, provider_id: str, transport: _BaseTransport) -> None:
        params = {
            "protocolVersion": _PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "iskylar", "version": __version__},
        }
        await transport.request("initialize", params)
        try:
            await transport.notify("notifications/initialized", {})
        except Exception as exc:
            # Some servers don't require this notification.
            logger.debug("mcp_discovery.initialized_notify_skipped", provider=provider_id, error=str(exc))

    async def connect_defaults(self) -> list[str]:
        """Connect every configured provider concurrently, tolerating failures."""
        providers = self._config.get_provider_list()
        results = await asyncio.gather(*(
            self.connect(
                str(p["id"]),
                str(p.get("url", "")),
                transport=p.get("transport"),
                api_key=p.get("api_key"),
            )
            for p in providers
        ))
        connected = [str(p["id"]) for p, ok in zip(providers, results) if ok]
        logger.info(
            "mcp_discovery.defaults_connected",
            configured=len(providers),
            connected=len(connected),
        )
        return connected

    async def ensure_bootstrapped(self) -> None:
        """Run connect_defaults() once, the first time tools are needed.

        Skipped while any provider is connected.
        """
        if self._bootstrapped or self._connections or not self._config.auto_bootstrap:
            return
        async with self._bootstrap_lock:
            if self._bootstrapped or self._connections:
                return
            self._bootstrapped = True
            await self.connect_defaults()

    def reset(self) -> None:
        """Allow the lazy bootstrap to run again on the next list_tools().

        Providers that are already connected are left as they are, and the
        bootstrap only runs again once none are connected.
        """
        self._bootstrapped = False

    async def disconnect(self, provider_id: str) -> bool:
        connection = self._connections.pop(provider_id, None)
        if connection is None:
            return False
        await self._close_quietly(provider_id, connection.transport)
        logger.info("mcp_discovery.disconnected", provider=provider_id)
        return True

    async def shutdown(self) -> None:
        """Gracefully disconnect from all providers."""
        for provider_id in list(self._connections):
            await self.disconnect(provider_id)

    @staticmethod
    async def _close_quietly(provider_id: str, transport: _BaseTransport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("mcp_discovery.close_failed", provider=provider_id, error=str(exc))

    # ------------------------------------------------------------------
    # Tool catalog
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[ToolDefinition]:
        """Query every connected provider and wrap their tools.

        Providers are queried concurrently. A provider whose tools/list fails
        is skipped for this call only.
        """
        await self.ensure_bootstrapped()
        connections = list(self._connections.values())
        batches = await asyncio.gather(*(self._list_provider_tools(c) for c in connections))

        tools: list[ToolDefinition] = []
        for connection, remote_tools in zip(connections, batches):
            connection.tool_count = len(remote_tools)
            tools.extend(self._wrap(remote) for remote in remote_tools)

        logger.debug("mcp_discovery.tools_listed", providers=len(connections), tool_count=len(tools))
        return tools

    async def _list_provider_tools(self, connection: ProviderConnection) -> list[RemoteTool]:
        try:
            result = await connection.transport.request("tools/list", {})
        except Exception as exc:
            logger.warning(
                "mcp_discovery.list_failed",
                provider=connection.provider_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            return []
        return self._parse_tools_list(connection.provider_id, result)

    @staticmethod
    def _parse_tools_list(provider_id: str, result: Any) -> list[RemoteTool]:
        if isinstance(result, dict):
            raw_tools = result.get("tools", [])
            tools_payload = raw_tools if isinstance(raw_tools, list) else []
        elif isinstance(result, list):
            tools_payload = result
        else:
            tools_payload = []

        parsed: list[RemoteTool] = []
        for item in tools_payload:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            description = item.get("description")
            if not isinstance(description, str) or not description.strip():
                description = f"Tool from {provider_id}"
            schema = item.get("inputSchema") or item.get("input_schema") or item.get("parameters")
            parsed.append(
                RemoteTool(
                    name=name.strip(),
                    description=description,
                    input_schema=schema if isinstance(schema, dict) else {},
                    provider_id=provider_id,
                )
            )
        return parsed

    def _wrap(self, remote: RemoteTool) -> ToolDefinition:
        schema, opaque = translate_input_schema(remote.input_schema)
        provider_id, tool_name = remote.provider_id, remote.name

        async def handler(**kwargs: Any) -> str:
            if opaque:
                try:
                    arguments = json.loads(kwargs.get("params") or "{}")
                except json.JSONDecodeError as exc:
                    return json.dumps(error_payload(VALIDATION_ERROR, f"params is not valid JSON: {exc}"))
                if not isinstance(arguments, dict):
                    return json.dumps(error_payload(VALIDATION_ERROR, "params must encode a JSON object"))
            else:
                arguments = kwargs
            return await self.call_tool(provider_id, tool_name, arguments)

        return ToolDefinition(
            name=namespaced_tool_name(provider_id, tool_name),
            description=remote.description,
            input_schema=schema,
            handler=handler,
            category=f"mcp:{provider_id}",
            provider_id=provider_id,
        )

    async def call_tool(self, provider_id: str, tool_name: str, arguments: dict[str, Any]) -> str:
        """Invoke a remote tool; the raw result comes back as a JSON string.

        Failures are returned as tagged payloads. A transport fault also
        drops the provider from the connection table.
        """
        connection = self._connections.get(provider_id)
        if connection is None:
            return json.dumps(error_payload(
                PROVIDER_UNREACHABLE,
                f"Provider '{provider_id}' is not connected.",
                provider=provider_id,
            ))

        logger.info("mcp_discovery.calling_tool", provider=provider_id, tool=tool_name)
        try:
            result = await connection.transport.request(
                "tools/call",
                {"name": tool_name, "arguments": arguments},
            )
        except MCPProtocolError as exc:
            logger.warning("mcp_discovery.remote_tool_error", provider=provider_id, tool=tool_name, error=str(exc))
            return json.dumps(error_payload(REMOTE_TOOL_ERROR, str(exc), provider=provider_id))
        except Exception as exc:
            logger.warning(
                "mcp_discovery.call_failed",
                provider=provider_id,
                tool=tool_name,
                error=f"{type(exc).__name__}: {exc}",
            )
            await self.disconnect(provider_id)
            return json.dumps(error_payload(
                PROVIDER_UNREACHABLE,
                f"Provider '{provider_id}' failed during the call.",
                provider=provider_id,
            ))
        return json.dumps(result, ensure_ascii=False, default=str)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def connected_providers(self) -> list[str]:
        return list(self._connections)

    def is_connected(self, provider_id: str) -> bool:
        return provider_id in self._connections

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "configured_providers": len(self._config.get_provider_list()),
            "connected_providers": len(self._connections),
            "failed_attempts": self._failed_attempts,
            "bootstrapped": self._bootstrapped,
        }
