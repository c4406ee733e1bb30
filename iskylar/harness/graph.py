"""
The Orchestration Graph — reasoning and tool execution, alternating.

One run turns the current conversation into a final answer:

    REASONING ──(tool calls)──> EXECUTING_TOOLS ──> REASONING ...
        └──(no tool calls)──> DONE

The reasoning node fetches the aggregated tool set fresh on every pass, so a
provider that drops mid-run simply stops offering tools; a stale call to one
of them comes back as a TOOL_NOT_FOUND payload and the model carries on.

Runs are bounded. Exceeding the round-trip limit or the wall-clock budget
ends the run as "inconclusive" with a fixed fallback reply instead of
looping forever.

Handoff is just a tool here. The graph reports the target it saw in the
results and leaves acting on it to the caller.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from iskylar.personas import AgentPersona, build_system_prompt
from iskylar.tools.aggregator import ToolAggregator
from iskylar.tools.builtin import HANDOFF_TOOL_NAME
from iskylar.tools.executor import ToolExecutionResult, ToolExecutor, error_payload
from iskylar.types import ConversationState, Message

logger = structlog.get_logger(__name__)

RUN_BUDGET_EXCEEDED = "RUN_BUDGET_EXCEEDED"

INCONCLUSIVE_TEXT = (
    "I'm sorry, I wasn't able to finish working through that. "
    "Could you try asking again, maybe a little differently?"
)


class GraphNode(str, Enum):
    REASONING = "reasoning"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


class GraphResult:
    """
    Everything one run produced.

    ``messages`` holds only what this run appended; the full history lives in
    the ConversationState that was passed in.
    """

    def __init__(
        self,
        status: str,
        text: str,
        messages: tuple[Message, ...] = (),
        round_trips: int = 0,
        tool_results: Optional[list[ToolExecutionResult]] = None,
        handoff_target: Optional[str] = None,
        elapsed_seconds: float = 0.0,
    ):
        self.status = status
        self.text = text
        self.messages = messages
        self.round_trips = round_trips
        self.tool_results = tool_results or []
        self.handoff_target = handoff_target
        self.elapsed_seconds = elapsed_seconds

    @property
    def is_done(self) -> bool:
        return self.status == "done"

    @property
    def tool_names_used(self) -> list[str]:
        return [r.tool_name for r in self.tool_results]

    def __repr__(self) -> str:
        return (
            f"GraphResult(status={self.status!r}, round_trips={self.round_trips}, "
            f"handoff_target={self.handoff_target!r})"
        )


def extract_handoff_target(results: list[ToolExecutionResult]) -> Optional[str]:
    """The target of the last successful handoff_to_agent result, if any."""
    target: Optional[str] = None
    for result in results:
        if result.tool_name != HANDOFF_TOOL_NAME or not result.success:
            continue
        payload = result.payload()
        if isinstance(payload, dict) and payload.get("status") == "success":
            candidate = payload.get("targetAgentId")
            if isinstance(candidate, str) and candidate:
                target = candidate
    return target


class OrchestrationGraph:
    """
    Drives one run of the reasoning / tool-execution state machine.

    The graph holds no per-run state between calls; each run works on the
    ConversationState it is given.
    """

    def __init__(
        self,
        engine: Any,
        aggregator: ToolAggregator,
        executor: ToolExecutor,
        max_round_trips: int = 8,
        time_budget_seconds: float = 90.0,
        temperature: Optional[float] = None,
        on_tool_result: Optional[Callable[[ToolExecutionResult], Any]] = None,
    ):
        self._engine = engine
        self._aggregator = aggregator
        self._executor = executor
        self._max_round_trips = max(1, int(max_round_trips))
        self._time_budget_seconds = float(time_budget_seconds)
        self._temperature = temperature
        self._on_tool_result = on_tool_result

        self._total_runs = 0
        self._total_round_trips = 0
        self._inconclusive_runs = 0

        logger.info(
            "orchestration_graph.initialized",
            max_round_trips=self._max_round_trips,
            time_budget_seconds=self._time_budget_seconds,
        )

    async def run(
        self,
        state: ConversationState,
        persona: AgentPersona,
        language: str = "en",
        prior_summary: Optional[str] = None,
    ) -> GraphResult:
        """
        Run the graph until the model stops requesting tools or a bound is hit.

        Raises:
            ModelInferenceError: the model call failed; the run is over.
        """
        self._total_runs += 1
        start_time = time.monotonic()
        start_index = len(state)
        system_prompt = build_system_prompt(persona, language=language, prior_summary=prior_summary)

        node = GraphNode.REASONING
        round_trips = 0
        all_results: list[ToolExecutionResult] = []
        tools_by_name: dict[str, Any] = {}
        status = "done"

        logger.info(
            "orchestration_graph.starting",
            persona=persona.id,
            history=start_index,
        )

        while node is not GraphNode.DONE:
            if node is GraphNode.REASONING:
                if time.monotonic() - start_time > self._time_budget_seconds:
                    status = self._close_inconclusive(state, reason="time_budget")
                    break

                tools = await self._aggregator.get_aggregated_tools()
                tools_by_name = self._aggregator.resolve(tools)
                reply = await self._engine.think(
                    system_prompt,
                    state.messages,
                    tools=tools,
                    temperature=self._temperature,
                )
                state.append(reply, sender="reasoning")
                node = GraphNode.EXECUTING_TOOLS if reply.has_tool_calls else GraphNode.DONE
                continue

            # EXECUTING_TOOLS
            if round_trips >= self._max_round_trips:
                status = self._close_inconclusive(state, reason="max_round_trips")
                break

            calls = state.last.tool_calls
            results = await self._executor.execute_batch(calls, tools_by_name)
            state.append(
                *(Message.tool(r.tool_use_id, r.tool_name, r.to_content()) for r in results),
                sender="tools",
            )
            for result in results:
                self._notify_tool_result(result)
            all_results.extend(results)
            round_trips += 1
            self._total_round_trips += 1
            logger.debug(
                "orchestration_graph.round_trip",
                round_trip=round_trips,
                tools=[c.name for c in calls],
            )
            node = GraphNode.REASONING

        elapsed = time.monotonic() - start_time
        text = state.last.content if status == "done" and state.last is not None else INCONCLUSIVE_TEXT
        handoff_target = extract_handoff_target(all_results)

        logger.info(
            "orchestration_graph.complete",
            status=status,
            round_trips=round_trips,
            tool_calls=len(all_results),
            handoff_target=handoff_target,
            elapsed_seconds=round(elapsed, 2),
        )

        return GraphResult(
            status=status,
            text=text,
            messages=state.since(start_index),
            round_trips=round_trips,
            tool_results=all_results,
            handoff_target=handoff_target,
            elapsed_seconds=elapsed,
        )

    def _close_inconclusive(self, state: ConversationState, reason: str) -> str:
        """End the run, answering any calls left pending so the history stays well-formed."""
        self._inconclusive_runs += 1
        logger.warning("orchestration_graph.inconclusive", reason=reason, history=len(state))

        last = state.last
        if last is not None and last.has_tool_calls:
            state.append(
                *(
                    Message.tool(
                        call.id,
                        call.name,
                        json.dumps(error_payload(RUN_BUDGET_EXCEEDED, "Run stopped before this call ran.")),
                    )
                    for call in last.tool_calls
                ),
                sender="graph",
            )
        state.append(Message.assistant(INCONCLUSIVE_TEXT), sender="graph")
        return "inconclusive"

    def _notify_tool_result(self, result: ToolExecutionResult) -> None:
        if self._on_tool_result is None:
            return
        try:
            self._on_tool_result(result)
        except Exception as callback_error:
            logger.warning("orchestration_graph.callback_failed", error=str(callback_error))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_round_trips": self._total_round_trips,
            "inconclusive_runs": self._inconclusive_runs,
        }
