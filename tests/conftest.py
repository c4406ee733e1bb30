"""
Shared fixtures for the iSkylar test suite.

Configs are built with explicit values so a developer's environment or .env
file cannot change test outcomes.
"""

from __future__ import annotations

import pytest

from iskylar.config import DiscoveryConfig, SafetyConfig, ToolsConfig
from iskylar.tools.builtin import register_builtin_tools
from iskylar.tools.executor import ToolExecutor
from iskylar.tools.registry import ToolRegistry


@pytest.fixture()
def tools_config() -> ToolsConfig:
    return ToolsConfig(TAVILY_API_KEY="", ISKYLAR_MAIL_PROVIDER="System Mailer")


@pytest.fixture()
def registry(tools_config: ToolsConfig) -> ToolRegistry:
    """A registry holding exactly the built-in static tool set."""
    reg = ToolRegistry()
    register_builtin_tools(reg, tools_config)
    return reg


@pytest.fixture()
def executor() -> ToolExecutor:
    return ToolExecutor(default_timeout=5.0, max_output_length=5000)


@pytest.fixture()
def no_provider_config() -> DiscoveryConfig:
    """Discovery config with an empty provider list."""
    return DiscoveryConfig(ISKYLAR_MCP_SERVERS="[]", ISKYLAR_MCP_AUTO_BOOTSTRAP=True)


@pytest.fixture()
def safety_config() -> SafetyConfig:
    return SafetyConfig(ISKYLAR_SAFETY_ENABLED=True)
