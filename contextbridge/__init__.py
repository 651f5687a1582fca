"""
ContextBridge - Fold MCP tool results into an LLM prompt.

Spawns a tool provider as a subprocess, discovers its tools over stdio
JSON-RPC, invokes a plan of tool calls and hands the successful results
to a reasoning backend as system context.

Architecture:
- mcp/        transport, tool registry, invocation correlation
- core/       context aggregation and the session lifecycle
- providers/  reasoning backends (Anthropic, OpenAI, Ollama, OpenRouter)
- validation/ configuration and tool argument validation
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from contextbridge.core.context import ContextAggregator
from contextbridge.core.session import Session, SessionResult, SessionState

__all__ = [
    "ContextAggregator",
    "Session",
    "SessionResult",
    "SessionState",
    "__version__",
]
