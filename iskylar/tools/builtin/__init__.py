"""
Built-in Tools — the static capabilities every persona can use.

These tools ship with iSkylar and don't require a remote provider:
- send_email: simulated outbound mail
- web_search: live search through a Tavily-compatible HTTP API
- three *_fallback tools that answer when a domain service is down
- handoff_to_agent: the tool that transfers the conversation to another persona

Each description doubles as the tool description the model sees. Expected
failures are returned as tagged payloads; handlers never raise for them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from iskylar.config import ToolsConfig
from iskylar.personas import PERSONA_IDS, PERSONAS
from iskylar.tools.executor import error_payload
from iskylar.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)

SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
SEARCH_FAILED = "SEARCH_FAILED"

HANDOFF_TOOL_NAME = "handoff_to_agent"


def register_builtin_tools(registry: ToolRegistry, config: ToolsConfig | None = None) -> None:
    """Register all built-in tools with the registry."""
    config = config or ToolsConfig()
    _register_communication_tools(registry, config)
    _register_fallback_tools(registry)
    _register_handoff_tool(registry)
    logger.info("builtin_tools.registered", count=registry.count)


def _register_communication_tools(registry: ToolRegistry, config: ToolsConfig) -> None:

    def handle_send_email(recipient: str, subject: str, body: str) -> dict[str, Any]:
        # The body is never logged.
        logger.info("builtin_tools.email_sent", recipient=recipient, subject=subject)
        return {
            "status": "success",
            "provider": config.mail_provider,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "recipient": recipient,
        }

    registry.register(
        ToolDefinition(
            name="send_email",
            description=(
                "Send an email on the user's behalf. Use this when the user asks you "
                "to email someone, including themselves."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "recipient": {
                        "type": "string",
                        "format": "email",
                        "description": "The recipient's email address.",
                    },
                    "subject": {
                        "type": "string",
                        "minLength": 1,
                        "description": "Subject line.",
                    },
                    "body": {
                        "type": "string",
                        "minLength": 1,
                        "description": "Plain-text message body.",
                    },
                },
                "required": ["recipient", "subject", "body"],
                "additionalProperties": False,
            },
            handler=handle_send_email,
            category="builtin",
        )
    )

    async def handle_web_search(query: str) -> dict[str, Any]:
        if not config.tavily_api_key:
            return error_payload(SEARCH_FAILED, "Web search is not configured (missing API key).")

        request_body = {
            "api_key": config.tavily_api_key,
            "query": query,
            "search_depth": "basic",
            "include_answer": True,
            "max_results": config.search_max_results,
        }
        try:
            async with httpx.AsyncClient(timeout=config.tool_default_timeout) as client:
                response = await client.post(config.tavily_url, json=request_body)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("builtin_tools.search_failed", error=f"{type(exc).__name__}: {exc}")
            return error_payload(SEARCH_FAILED, "Failed to retrieve search results.")

        results = data.get("results") if isinstance(data, dict) else None
        return {
            "summary": data.get("answer") if isinstance(data, dict) else None,
            "results": [
                {
                    "title": item.get("title"),
                    "content": item.get("content"),
                    "url": item.get("url"),
                }
                for item in (results or [])
                if isinstance(item, dict)
            ],
        }

    registry.register(
        ToolDefinition(
            name="web_search",
            description=(
                "Search the web for current events, news, weather, or facts you do "
                "not know. Returns a short answer summary and the top results."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "minLength": 1,
                        "description": "The search query.",
                    },
                },
                "required": ["query"],
                "additionalProperties": False,
            },
            handler=handle_web_search,
            category="builtin",
        )
    )


_TRAVEL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "destination": {"type": "string", "description": "Where the user wants to go."},
        "dates": {"type": "string", "description": "Travel dates as the user gave them."},
        "type": {
            "type": "string",
            "enum": ["flight", "hotel", "train", "car"],
            "description": "What to book.",
        },
    },
    "required": ["destination", "dates", "type"],
    "additionalProperties": False,
}

_FOOD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "item": {"type": "string", "description": "What to order."},
        "deliveryAddress": {"type": "string", "description": "Where to deliver it."},
    },
    "required": ["item"],
    "additionalProperties": False,
}

_CALENDAR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {
            "type": "string",
            "enum": ["create", "list"],
            "description": "Create an event or list upcoming ones.",
        },
        "title": {"type": "string", "description": "Event title."},
        "time": {"type": "string", "description": "Event time as the user gave it."},
    },
    "required": ["action", "title", "time"],
    "additionalProperties": False,
}

_FALLBACKS = (
    (
        "book_travel_fallback",
        "travel booking",
        "Use ONLY when the travel service tools are unavailable. Reports that "
        "travel booking is temporarily offline.",
        _TRAVEL_SCHEMA,
    ),
    (
        "order_food_fallback",
        "food ordering",
        "Use ONLY when the food service tools are unavailable. Reports that "
        "food ordering is temporarily offline.",
        _FOOD_SCHEMA,
    ),
    (
        "manage_calendar_fallback",
        "calendar management",
        "Use ONLY when the calendar service tools are unavailable. Reports that "
        "calendar management is temporarily offline.",
        _CALENDAR_SCHEMA,
    ),
)


def _make_fallback_handler(service: str):
    def handler(**_: Any) -> dict[str, Any]:
        return error_payload(
            SERVICE_UNAVAILABLE,
            f"The {service} service is currently unavailable. Please try again later.",
        )
    return handler


def _register_fallback_tools(registry: ToolRegistry) -> None:
    for name, service, description, schema in _FALLBACKS:
        registry.register(
            ToolDefinition(
                name=name,
                description=description,
                input_schema=schema,
                handler=_make_fallback_handler(service),
                category="fallback",
            )
        )


def _register_handoff_tool(registry: ToolRegistry) -> None:

    def handle_handoff(targetAgentId: str, reason: str) -> dict[str, Any]:
        persona = PERSONAS[targetAgentId]
        logger.info("builtin_tools.handoff_requested", target=targetAgentId)
        return {
            "status": "success",
            "targetAgentId": targetAgentId,
            "message": f"Handing off to {persona.name} because: {reason}",
        }

    registry.register(
        ToolDefinition(
            name=HANDOFF_TOOL_NAME,
            description=(
                "Transfer the conversation to another companion when the user asks "
                "for them by name or their needs fit that companion better. The "
                "switch takes effect on the user's next message."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "targetAgentId": {
                        "type": "string",
                        "enum": list(PERSONA_IDS),
                        "description": "Id of the companion to hand off to.",
                    },
                    "reason": {
                        "type": "string",
                        "description": "Why the handoff is happening.",
                    },
                },
                "required": ["targetAgentId", "reason"],
                "additionalProperties": False,
            },
            handler=handle_handoff,
            category="handoff",
        )
    )
