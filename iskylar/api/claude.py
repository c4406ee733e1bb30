"""
Claude API Client — the reasoning engine behind every persona.

This module wraps the Anthropic SDK. The orchestration layer speaks in
``Message`` objects; this is the only place they are translated to and from
the Messages API wire shape:

- system messages are folded into the system prompt
- assistant tool calls become ``tool_use`` blocks
- consecutive tool messages become one user turn of ``tool_result`` blocks

Any failure of the call itself is raised as ``ModelInferenceError``. The
engine holds no conversation state.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Sequence

import anthropic
import structlog

from iskylar.config import ModelConfig
from iskylar.errors import EngineInitError, ModelInferenceError
from iskylar.harness.retry import RetryConfig, is_retryable_error, with_retries
from iskylar.tools.registry import ToolDefinition
from iskylar.types import Message, ToolCallRequest

logger = structlog.get_logger(__name__)


def to_api_messages(messages: Sequence[Message]) -> tuple[list[str], list[dict[str, Any]]]:
    """Split history into extra system text and Messages API turns.

    Adjacent turns with the same role are merged so the result always
    alternates between user and assistant.
    """
    system_parts: list[str] = []
    turns: list[dict[str, Any]] = []

    def _push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": list(blocks)})

    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
        elif message.role == "user":
            _push("user", [{"type": "text", "text": message.content}])
        elif message.role == "tool":
            _push("user", [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
            }])
        else:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": dict(call.arguments),
                })
            _push("assistant", blocks)

    return system_parts, turns


def from_api_response(response: Any) -> Message:
    """Build the assistant Message from a Messages API response."""
    texts: list[str] = []
    calls: list[ToolCallRequest] = []
    for block in getattr(response, "content", None) or []:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            arguments = block.input if isinstance(block.input, dict) else {}
            calls.append(ToolCallRequest(id=block.id, name=block.name, arguments=dict(arguments)))
    return Message.assistant("\n".join(texts), calls)


class ReasoningEngine:
    """
    Wraps the Anthropic Messages API.

    - think(): one reasoning step over the history, with tools
    - complete(): a single tool-free completion (used by the safety path)
    """

    def __init__(self, config: ModelConfig, client: Optional[Any] = None):
        if client is None and not config.api_key:
            raise EngineInitError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY."
            )
        try:
            self._client = client or anthropic.AsyncAnthropic(api_key=config.api_key)
        except Exception as exc:
            raise EngineInitError(f"Failed to initialize reasoning engine: {exc}") from exc

        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperature = config.temperature
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter_range=config.retry_jitter_range,
        )

        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0

        logger.info("reasoning_engine.initialized", model=self._model)

    async def think(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Optional[Sequence[ToolDefinition]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Message:
        """
        Run one reasoning step.

        Args:
            system_prompt: Persona rules and session context.
            messages: The full conversation history.
            tools: The aggregated tool set for this pass.
            temperature: Override the configured temperature.
            max_tokens: Override the configured output limit.

        Returns:
            The assistant Message, with tool calls when the model requested any.
        """
        extra_system, turns = to_api_messages(messages)
        system = "\n\n".join([system_prompt, *extra_system]) if extra_system else system_prompt

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
            "system": system,
            "messages": turns,
        }
        if tools:
            kwargs["tools"] = [tool.to_api_format() for tool in tools]

        response = await self._create(kwargs)
        return from_api_response(response)

    async def complete(
        self,
        system_prompt: str,
        text: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        reply = await self.think(
            system_prompt,
            [Message.user(text)],
            tools=None,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return reply.content.strip()

    async def _create(self, kwargs: dict[str, Any]) -> Any:
        start_time = time.monotonic()

        async def _call() -> Any:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )

        try:
            response = await with_retries(_call, config=self._retry_config)
        except Exception as exc:
            logger.error(
                "reasoning_engine.inference_failed",
                error_type=type(exc).__name__,
                error=str(exc)[:300],
                status=getattr(exc, "status_code", None),
            )
            raise ModelInferenceError(
                f"Model call failed: {type(exc).__name__}: {exc}",
                retryable=is_retryable_error(exc),
            ) from exc

        elapsed = time.monotonic() - start_time
        usage = getattr(response, "usage", None)
        self._total_calls += 1
        self._total_input_tokens += getattr(usage, "input_tokens", 0) or 0
        self._total_output_tokens += getattr(usage, "output_tokens", 0) or 0

        logger.debug(
            "reasoning_engine.call_complete",
            elapsed_seconds=round(elapsed, 2),
            stop_reason=getattr(response, "stop_reason", None),
            tool_calls=sum(1 for b in getattr(response, "content", None) or [] if b.type == "tool_use"),
        )
        return response

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "model": self._model,
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
