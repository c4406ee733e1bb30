"""
iSkylar — Multi-Agent Companion Orchestration Core

This package contains the tool-orchestration core behind the iSkylar companion:
a graph-based controller that turns one user utterance into a sequence of model
calls and tool invocations, with a concurrent safety interceptor that can take
over the response.

Architecture layers (bottom to top):
    1. Tool registry (static capabilities + handoff)
    2. Capability discovery (remote MCP tool servers)
    3. Tool aggregator (one merged tool set per reasoning pass)
    4. Safety interceptor (crisis detection, fail-open)
    5. Orchestration graph (reasoning <-> tool execution)
    6. Turn coordinator (safety race, personas, handoff, session memory)
"""

__version__ = "0.1.0"
__author__ = "iSkylar Team"
