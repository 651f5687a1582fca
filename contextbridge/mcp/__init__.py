"""
MCP client plumbing for ContextBridge.

The transport speaks newline-delimited JSON-RPC to one provider process,
the registry caches its tool catalog and the executor correlates each
tool call with its response by invocation id.
"""

from contextbridge.mcp.executor import ToolExecutor
from contextbridge.mcp.registry import DiscoveryError, ToolRegistry
from contextbridge.mcp.schema import (
    ContentBlock,
    EvidenceEntry,
    Failure,
    InvocationOutcome,
    InvocationRequest,
    Success,
    ToolDescriptor,
)
from contextbridge.mcp.transport import (
    Connection,
    ConnectionLost,
    ProviderProcess,
    RPCError,
    SpawnError,
    TransportError,
    close_channel,
    open_channel,
)

__all__ = [
    "Connection",
    "ConnectionLost",
    "ContentBlock",
    "DiscoveryError",
    "EvidenceEntry",
    "Failure",
    "InvocationOutcome",
    "InvocationRequest",
    "ProviderProcess",
    "RPCError",
    "SpawnError",
    "Success",
    "ToolDescriptor",
    "ToolExecutor",
    "ToolRegistry",
    "TransportError",
    "close_channel",
    "open_channel",
]
