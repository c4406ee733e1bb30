"""
Tool Executor — the boundary between deciding and doing.

When the model requests a tool, this module handles the actual execution
against the tool set that was aggregated for the current pass.

The executor enforces:
1. RESOLUTION: The name must exist in the current aggregated set
2. VALIDATION: Arguments are checked against the schema before any call
3. TIMEOUT PROTECTION: No tool can run forever
4. ERROR HANDLING: Every failure becomes a structured payload fed back to
   the model as a tool result, never an exception out of the run
5. ORDERING: A batch runs concurrently but results come back in call order
"""

from __future__ import annotations

import asyncio
import inspect
import json
import re
import threading
import time
import traceback
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from iskylar.tools.registry import ToolDefinition
from iskylar.types import ToolCallRequest

logger = structlog.get_logger(__name__)

# Structured error codes carried in tool-result payloads.
TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
TOOL_TIMEOUT = "TOOL_TIMEOUT"
TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
TOOL_DISABLED = "TOOL_DISABLED"


def error_payload(code: str, message: str, **extra: Any) -> dict[str, Any]:
    """The tagged error shape every recoverable tool failure uses."""
    payload: dict[str, Any] = {"status": "error", "error": code, "message": message}
    payload.update(extra)
    return payload


def serialize_tool_result(result: Any) -> str:
    """Serialize tool output for the tool message content field."""
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list, tuple, int, float, bool)) or result is None:
        try:
            return json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            pass
    return str(result)


class ToolExecutionResult:
    """
    The result of executing one tool call — success or failure.

    This gets converted into the tool message appended to the conversation,
    allowing the model to see what happened and decide what to do next.
    """
    def __init__(
        self,
        tool_use_id: str,
        tool_name: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        execution_time: float = 0.0,
    ):
        self.tool_use_id = tool_use_id
        self.tool_name = tool_name
        self.success = success
        self.result = result
        self.error = error
        self.error_code = error_code
        self.execution_time = execution_time

    def to_content(self) -> str:
        if self.success:
            return serialize_tool_result(self.result)
        return serialize_tool_result(
            error_payload(self.error_code or TOOL_EXECUTION_FAILED, self.error or "", tool=self.tool_name)
        )

    def payload(self) -> Any:
        """The result as structured data, decoding JSON strings where possible."""
        if not self.success:
            return error_payload(self.error_code or TOOL_EXECUTION_FAILED, self.error or "", tool=self.tool_name)
        if isinstance(self.result, str):
            try:
                return json.loads(self.result)
            except (TypeError, ValueError):
                return self.result
        return self.result

    def __repr__(self) -> str:
        state = "ok" if self.success else self.error_code
        return f"ToolExecutionResult({self.tool_name!r}, {state})"


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_tool_input(
    schema: dict[str, Any],
    tool_input: Any,
) -> Optional[str]:
    """
    Lightweight JSON Schema validation for tool inputs.

    Checks the object shape, required fields, basic types, enumerations,
    ``minLength`` and ``format: email``. Returns an error message string on
    failure, or None if the input is valid.
    """
    if not isinstance(tool_input, dict):
        return f"Arguments must be an object, got {type(tool_input).__name__}"

    required = schema.get("required", []) or []
    properties = schema.get("properties", {}) or {}

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    if schema.get("additionalProperties") is False:
        unknown = sorted(set(tool_input) - set(properties))
        if unknown:
            return f"Unexpected parameter(s): {', '.join(unknown)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not prop_schema or not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if isinstance(expected_type, str) else None
        if py_types is not None:
            # In Python bool is a subclass of int, but JSON booleans are distinct
            if isinstance(value, bool) and expected_type in ("integer", "number"):
                return f"Parameter '{name}' expected {expected_type}, got boolean"
            if not isinstance(value, py_types):
                return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"

        allowed = prop_schema.get("enum")
        if isinstance(allowed, list) and value not in allowed:
            options = ", ".join(str(v) for v in allowed)
            return f"Parameter '{name}' must be one of: {options}"

        if isinstance(value, str):
            min_length = prop_schema.get("minLength")
            if isinstance(min_length, int) and len(value) < min_length:
                return f"Parameter '{name}' must be at least {min_length} character(s)"
            if prop_schema.get("format") == "email" and not _EMAIL_RE.match(value):
                return f"Parameter '{name}' must be a valid email address"

    return None


class ToolExecutor:
    """
    Executes tool calls with validation, timeouts, and observability.

    The executor sits between the model's tool-call requests and the
    handlers. For each call it:
    1. Resolves the tool by exact name in the supplied tool set
    2. Validates the arguments against the tool's schema
    3. Executes the handler (sync or async) under a timeout
    4. Captures results or errors as data
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        max_output_length: int = 25000,
        max_concurrent_sync: int = 8,
    ):
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._sync_slot = asyncio.Semaphore(max(1, int(max_concurrent_sync)))

        self._total_executions = 0
        self._total_successes = 0
        self._total_failures = 0

        logger.info(
            "tool_executor.initialized",
            timeout=default_timeout,
            max_output=max_output_length,
        )

    def _fail(
        self,
        call_id: str,
        tool_name: str,
        code: str,
        message: str,
        elapsed: float = 0.0,
    ) -> ToolExecutionResult:
        self._total_failures += 1
        return ToolExecutionResult(
            tool_use_id=call_id,
            tool_name=tool_name,
            success=False,
            error=message,
            error_code=code,
            execution_time=elapsed,
        )

    async def execute(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: Any,
        tools: Mapping[str, ToolDefinition],
    ) -> ToolExecutionResult:
        """
        Execute one tool call against the current tool set.

        Args:
            tool_use_id: The id of the model's tool call (for correlation)
            tool_name: Which tool to execute (exact name match)
            tool_input: The arguments the model provided
            tools: Name → definition map for this pass

        Returns:
            ToolExecutionResult with success/failure and output
        """
        start_time = time.monotonic()
        self._total_executions += 1

        logger.info(
            "tool_executor.executing",
            tool_name=tool_name,
            tool_use_id=tool_use_id,
            input_keys=list(tool_input.keys()) if isinstance(tool_input, dict) else None,
        )

        tool_def = tools.get(tool_name)
        if tool_def is None:
            logger.warning("tool_executor.tool_not_found", tool_name=tool_name)
            return self._fail(
                tool_use_id, tool_name, TOOL_NOT_FOUND,
                f"Unknown tool: {tool_name}",
            )

        if not tool_def.enabled:
            return self._fail(
                tool_use_id, tool_name, TOOL_DISABLED,
                f"Tool '{tool_name}' is currently disabled.",
            )

        handler = tool_def.handler
        if handler is None:
            return self._fail(
                tool_use_id, tool_name, TOOL_EXECUTION_FAILED,
                f"No handler registered for tool: {tool_name}",
            )

        validation_error = validate_tool_input(tool_def.input_schema, tool_input)
        if validation_error:
            logger.info(
                "tool_executor.validation_failed",
                tool_name=tool_name,
                error=validation_error,
            )
            return self._fail(tool_use_id, tool_name, VALIDATION_ERROR, validation_error)

        timeout = tool_def.timeout if tool_def.timeout is not None else self._default_timeout
        try:
            if inspect.iscoroutinefunction(handler):
                result = await asyncio.wait_for(handler(**tool_input), timeout=timeout)
            else:
                result = await self._execute_sync_handler(handler, tool_input, timeout)

            if isinstance(result, str) and len(result) > self._max_output_length:
                result = (
                    result[: self._max_output_length - 100]
                    + f"\n\n[Output truncated: {len(result)} chars total, "
                    f"showing first {self._max_output_length - 100}]"
                )

            elapsed = time.monotonic() - start_time
            self._total_successes += 1
            logger.info(
                "tool_executor.success",
                tool_name=tool_name,
                elapsed=round(elapsed, 2),
            )
            return ToolExecutionResult(
                tool_use_id=tool_use_id,
                tool_name=tool_name,
                success=True,
                result=result,
                execution_time=elapsed,
            )

        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start_time
            logger.warning("tool_executor.timeout", tool_name=tool_name, timeout=timeout)
            return self._fail(
                tool_use_id, tool_name, TOOL_TIMEOUT,
                f"Tool execution timed out after {timeout}s", elapsed,
            )

        except asyncio.CancelledError:
            raise

        except Exception as e:
            # Tools are expected to encode their own failures. Reaching this
            # branch means a tool has a bug.
            elapsed = time.monotonic() - start_time
            error_detail = f"{type(e).__name__}: {e}"
            logger.error(
                "tool_executor.uncaught_tool_fault",
                tool_name=tool_name,
                error=error_detail,
                traceback=traceback.format_exc(),
            )
            return self._fail(
                tool_use_id, tool_name, TOOL_EXECUTION_FAILED, error_detail, elapsed,
            )

    async def execute_batch(
        self,
        calls: Sequence[ToolCallRequest],
        tools: Mapping[str, ToolDefinition],
    ) -> list[ToolExecutionResult]:
        """Run one model turn's calls concurrently; results follow request order."""
        if not calls:
            return []
        return list(await asyncio.gather(*(
            self.execute(call.id, call.name, call.arguments, tools) for call in calls
        )))

    async def _execute_sync_handler(
        self,
        handler: Callable[..., Any],
        tool_input: dict[str, Any],
        timeout: float,
    ) -> Any:
        """
        Execute a synchronous handler in a dedicated daemon thread.

        A stuck thread cannot be killed, but the caller stops waiting for it
        once the timeout expires.
        """
        await asyncio.wait_for(self._sync_slot.acquire(), timeout=timeout)

        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        result_box: dict[str, Any] = {}

        def _invoke() -> None:
            try:
                result_box["result"] = handler(**tool_input)
            except Exception as exc:  # surfaced to caller
                result_box["error"] = exc
            finally:
                try:
                    loop.call_soon_threadsafe(done.set)
                except RuntimeError:  # pragma: no cover - loop closed during shutdown
                    pass

        try:
            threading.Thread(target=_invoke, daemon=True).start()
            await asyncio.wait_for(done.wait(), timeout=timeout)
        finally:
            self._sync_slot.release()

        if "error" in result_box:
            raise result_box["error"]
        return result_box.get("result")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "successes": self._total_successes,
            "failures": self._total_failures,
            "success_rate": self._total_successes / max(1, self._total_executions),
        }
