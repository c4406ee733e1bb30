"""
Main — wiring and the command-line entry point.

``build_runtime()`` assembles the full stack from configuration:

    config -> engine -> registry + discovery -> aggregator -> executor
           -> graph + safety + memory -> turn coordinator

The ``iskylar`` CLI exposes two commands on top of it:
  - ``chat``: an interactive session rendered with rich
  - ``tools``: print the aggregated tool set (static + discovered)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from iskylar import __version__
from iskylar.api.claude import ReasoningEngine
from iskylar.config import IskylarConfig
from iskylar.errors import EngineInitError, ModelInferenceError
from iskylar.harness.graph import OrchestrationGraph
from iskylar.harness.safety import SafetyInterceptor
from iskylar.harness.turn import TurnCoordinator
from iskylar.memory.session_memory import JsonFileSessionMemory, SessionMemoryStore
from iskylar.personas import PERSONA_IDS
from iskylar.tools.aggregator import ToolAggregator
from iskylar.tools.builtin import register_builtin_tools
from iskylar.tools.executor import ToolExecutor
from iskylar.tools.mcp import CapabilityDiscovery
from iskylar.tools.registry import ToolRegistry
from iskylar.types import SESSION_START_SENTINEL

_SECRET_RE = re.compile(r"\b(?:sk-ant-[A-Za-z0-9_-]{8,}|tvly-[A-Za-z0-9_-]{8,})")
_SENSITIVE_KEYS = {"content", "user_input", "query", "text", "body", "message"}
_MAX_DISPLAY_LEN = 80


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that keeps secrets and user text out of logs.

    API keys are masked in every string field; conversational fields are
    truncated.
    """
    for key, val in list(event_dict.items()):
        if not isinstance(val, str):
            continue
        val = _SECRET_RE.sub("[REDACTED]", val)
        if key in _SENSITIVE_KEYS and len(val) > _MAX_DISPLAY_LEN:
            val = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
        event_dict[key] = val
    return event_dict


_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog and standard-library logging. Later calls are no-ops."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    config: IskylarConfig
    registry: ToolRegistry
    discovery: CapabilityDiscovery
    aggregator: ToolAggregator
    executor: ToolExecutor
    graph: OrchestrationGraph
    safety: SafetyInterceptor
    coordinator: TurnCoordinator

    async def shutdown(self) -> None:
        await self.discovery.shutdown()


def build_runtime(
    config: Optional[IskylarConfig] = None,
    engine: Any = None,
    memory_store: Optional[SessionMemoryStore] = None,
    discovery: Optional[CapabilityDiscovery] = None,
    speak: Any = None,
) -> Runtime:
    """Assemble every component. Raises EngineInitError without model credentials."""
    config = config or IskylarConfig()
    engine = engine or ReasoningEngine(config.model)

    registry = ToolRegistry()
    register_builtin_tools(registry, config.tools)
    discovery = discovery or CapabilityDiscovery(config.discovery)
    aggregator = ToolAggregator(registry, discovery)
    executor = ToolExecutor(
        default_timeout=config.tools.tool_default_timeout,
        max_output_length=config.tools.tool_max_output_length,
    )
    graph = OrchestrationGraph(
        engine,
        aggregator,
        executor,
        max_round_trips=config.graph.max_round_trips,
        time_budget_seconds=config.graph.run_time_budget_seconds,
    )
    safety = SafetyInterceptor(config.safety, engine)
    if memory_store is None:
        memory_store = JsonFileSessionMemory(config.memory.data_dir)
    coordinator = TurnCoordinator(
        graph,
        safety,
        memory_store=memory_store,
        speak=speak,
        recent_sessions=config.memory.recent_sessions,
    )

    logger.info("main.runtime_built", static_tools=registry.count, config=repr(config))
    return Runtime(
        config=config,
        registry=registry,
        discovery=discovery,
        aggregator=aggregator,
        executor=executor,
        graph=graph,
        safety=safety,
        coordinator=coordinator,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

console = Console()


def async_cmd(func):
    """Run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show info-level logs")
@click.version_option(__version__, prog_name="iskylar")
def cli(verbose: bool) -> None:
    """iSkylar - multi-agent companion orchestration core."""
    configure_logging(logging.INFO if verbose else logging.WARNING)


@cli.command("tools")
@click.option("--no-discovery", is_flag=True, help="List static tools only")
@async_cmd
async def tools_cmd(no_discovery: bool) -> None:
    """List the aggregated tool set."""
    config = IskylarConfig()
    registry = ToolRegistry()
    register_builtin_tools(registry, config.tools)
    discovery = None if no_discovery else CapabilityDiscovery(config.discovery)
    aggregator = ToolAggregator(registry, discovery)
    try:
        tools = await aggregator.get_aggregated_tools()
    finally:
        if discovery is not None:
            await discovery.shutdown()

    table = Table(title=f"{len(tools)} tools")
    table.add_column("Name", style="cyan")
    table.add_column("Category")
    table.add_column("Description")
    for tool in tools:
        table.add_row(tool.name, tool.category, tool.description.split(". ")[0])
    console.print(table)


@cli.command("chat")
@click.option("--user", "user_id", default="local-user", show_default=True)
@click.option("--persona", type=click.Choice(PERSONA_IDS), default="skylar", show_default=True)
@click.option("--language", default="en", show_default=True)
@async_cmd
async def chat_cmd(user_id: str, persona: str, language: str) -> None:
    """Talk to a companion in the terminal. Type /quit to leave."""
    try:
        runtime = build_runtime()
    except EngineInitError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    coordinator = runtime.coordinator
    session = await coordinator.start_session(user_id, persona, language)
    try:
        await _chat_turn(coordinator, session, SESSION_START_SENTINEL)
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold]you>[/bold] ")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            await _chat_turn(coordinator, session, line)
    finally:
        await coordinator.end_session(session)
        await runtime.shutdown()


async def _chat_turn(coordinator: TurnCoordinator, session, text: str) -> None:
    with console.status("thinking..."):
        try:
            result = await coordinator.respond(session, text)
        except ModelInferenceError as exc:
            console.print(f"[red]The model call failed:[/red] {exc}")
            return

    title = result.persona_id if not result.is_safety_response else "support"
    style = "red" if result.is_safety_response else "magenta"
    console.print(Panel(result.text, title=title, border_style=style))
    if result.target_agent_id and result.target_agent_id != result.persona_id:
        console.print(f"[dim]Handing off to {result.target_agent_id} for the next message.[/dim]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
