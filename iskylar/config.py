# iskylar/config.py
"""
Configuration for the iSkylar orchestration core.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Components never read
the environment themselves; they receive the sub-config they need.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above iskylar/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_SETTINGS = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts a bare string, a comma-separated string, a JSON array (parsed by
    pydantic-settings before this runs), or an existing list.
    """
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class ModelConfig(BaseSettings):
    """Configuration for the language model connection."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="ISKYLAR_MODEL")
    max_tokens: int = Field(1024, alias="ISKYLAR_MAX_TOKENS")
    temperature: float = Field(0.9, alias="ISKYLAR_TEMPERATURE")
    request_timeout_seconds: float = Field(60.0, alias="ISKYLAR_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(0, alias="ISKYLAR_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="ISKYLAR_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="ISKYLAR_RETRY_MAX_DELAY")
    retry_jitter_range: float = Field(0.25, alias="ISKYLAR_RETRY_JITTER_RANGE")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ModelConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.temperature = max(0.0, min(1.0, float(self.temperature)))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class DiscoveryConfig(BaseSettings):
    """Configuration for remote capability providers (MCP tool servers)."""

    base_url: str = Field("http://localhost:3000", alias="ISKYLAR_MCP_BASE_URL")
    # JSON list of {"id": ..., "url": ..., "transport": ...}; empty => built-in defaults.
    servers: str = Field("", alias="ISKYLAR_MCP_SERVERS")
    transport: str = Field("sse", alias="ISKYLAR_MCP_TRANSPORT")
    connect_timeout_seconds: float = Field(10.0, alias="ISKYLAR_MCP_CONNECT_TIMEOUT")
    request_timeout_seconds: float = Field(20.0, alias="ISKYLAR_MCP_REQUEST_TIMEOUT")
    auto_bootstrap: bool = Field(True, alias="ISKYLAR_MCP_AUTO_BOOTSTRAP")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "DiscoveryConfig":
        self.base_url = self.base_url.strip().rstrip("/")
        self.transport = self.transport.strip().lower() or "sse"
        self.connect_timeout_seconds = max(0.5, float(self.connect_timeout_seconds))
        self.request_timeout_seconds = max(0.5, float(self.request_timeout_seconds))
        return self

    def default_providers(self) -> list[dict[str, Any]]:
        return [
            {"id": "travel-service", "url": f"{self.base_url}/api/mcp/travel"},
            {"id": "food-service", "url": f"{self.base_url}/api/mcp/food"},
            {"id": "calendar-service", "url": f"{self.base_url}/api/mcp/calendar"},
        ]

    def get_provider_list(self) -> list[dict[str, Any]]:
        """Parse provider configurations, falling back to the default trio."""
        if not self.servers.strip():
            providers = self.default_providers()
        else:
            try:
                parsed = json.loads(self.servers)
            except json.JSONDecodeError as exc:
                logger.warning("config.mcp_servers_unparseable", error=str(exc))
                return []
            if not isinstance(parsed, list):
                return []
            providers = [item for item in parsed if isinstance(item, dict) and item.get("id")]
        for provider in providers:
            provider.setdefault("transport", self.transport)
        return providers


class ToolsConfig(BaseSettings):
    """Configuration for the static tool set."""

    tavily_api_key: Optional[str] = Field(None, alias="TAVILY_API_KEY")
    tavily_url: str = Field("https://api.tavily.com/search", alias="ISKYLAR_TAVILY_URL")
    search_max_results: int = Field(3, alias="ISKYLAR_SEARCH_MAX_RESULTS")
    mail_provider: str = Field("System Mailer", alias="ISKYLAR_MAIL_PROVIDER")
    tool_default_timeout: float = Field(30.0, alias="ISKYLAR_TOOL_DEFAULT_TIMEOUT")
    tool_max_output_length: int = Field(25000, alias="ISKYLAR_TOOL_MAX_OUTPUT_LENGTH")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "ToolsConfig":
        self.search_max_results = max(1, int(self.search_max_results))
        self.tool_default_timeout = max(1.0, float(self.tool_default_timeout))
        self.tool_max_output_length = max(100, int(self.tool_max_output_length))
        return self


_DEFAULT_CRISIS_PHRASES = [
    "suicide",
    "suicidal",
    "kill myself",
    "end it all",
    "want to die",
    "hurt myself",
    "self-harm",
    "no reason to live",
    "hopeless",
    "end my life",
    "better off dead",
]


class SafetyConfig(BaseSettings):
    """Configuration for the crisis safety interceptor."""

    enabled: bool = Field(True, alias="ISKYLAR_SAFETY_ENABLED")
    crisis_phrases: StrList = Field(
        default_factory=lambda: list(_DEFAULT_CRISIS_PHRASES),
        alias="ISKYLAR_CRISIS_PHRASES",
    )
    response_temperature: float = Field(0.6, alias="ISKYLAR_SAFETY_TEMPERATURE")
    response_max_tokens: int = Field(150, alias="ISKYLAR_SAFETY_MAX_TOKENS")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "SafetyConfig":
        self.crisis_phrases = [p.lower() for p in self.crisis_phrases]
        self.response_temperature = max(0.0, min(1.0, float(self.response_temperature)))
        self.response_max_tokens = max(16, int(self.response_max_tokens))
        return self


class GraphConfig(BaseSettings):
    """Bounds for one orchestration run."""

    max_round_trips: int = Field(8, alias="ISKYLAR_MAX_ROUND_TRIPS")
    run_time_budget_seconds: float = Field(90.0, alias="ISKYLAR_RUN_TIME_BUDGET")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "GraphConfig":
        self.max_round_trips = max(1, int(self.max_round_trips))
        self.run_time_budget_seconds = max(1.0, float(self.run_time_budget_seconds))
        return self


class MemoryConfig(BaseSettings):
    """Configuration for the default session-memory adapter."""

    data_dir: Path = Field(Path("./iskylar_data"), alias="ISKYLAR_DATA_DIR")
    recent_sessions: int = Field(3, alias="ISKYLAR_RECENT_SESSIONS")

    model_config = _SETTINGS

    @model_validator(mode="after")
    def normalize_limits(self) -> "MemoryConfig":
        self.recent_sessions = max(1, int(self.recent_sessions))
        return self


class IskylarConfig:
    """
    Master configuration that composes all subsystem configs.

    This is the single source of truth. Every component receives its config
    from here. No global state, no hidden settings.
    """

    def __init__(self):
        self.model = ModelConfig()
        self.discovery = DiscoveryConfig()
        self.tools = ToolsConfig()
        self.safety = SafetyConfig()
        self.graph = GraphConfig()
        self.memory = MemoryConfig()

        if not self.memory.data_dir.is_absolute():
            self.memory.data_dir = (_PROJECT_ROOT / self.memory.data_dir).resolve()

    def __repr__(self) -> str:
        return (
            f"IskylarConfig(model={self.model.model}, "
            f"providers={len(self.discovery.get_provider_list())}, "
            f"max_round_trips={self.graph.max_round_trips})"
        )
