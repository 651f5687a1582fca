"""Shared fixtures: in-memory provider process and scripted provider launcher."""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from contextbridge.mcp.registry import ToolRegistry
from contextbridge.mcp.schema import ToolDescriptor
from contextbridge.mcp.transport import Connection
from contextbridge.providers.base import Provider, ProviderResponse
from contextbridge.validation.config import Config, ServerConfig

FAKE_PROVIDER = Path(__file__).parent / "fixtures" / "fake_provider.py"


class RecordingStdin:
    """Stands in for the provider's stdin and records every frame written."""

    def __init__(self):
        self.frames: List[Dict[str, Any]] = []

    def write(self, data: bytes) -> None:
        self.frames.append(json.loads(data.decode("utf-8")))

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return False


class InMemoryProcess:
    """A provider process that never runs; tests inject its responses."""

    def __init__(self):
        self.stdin = RecordingStdin()
        self.stdout = None
        self.stderr = None
        self.returncode: Optional[int] = None
        self.pid = 4242

    @property
    def is_running(self) -> bool:
        return self.returncode is None

    async def shutdown(self, grace: float = 5.0) -> Optional[int]:
        if self.returncode is None:
            self.returncode = 0
        return self.returncode


async def deliver(connection: Connection, request_id: Any, result: Any = None, error: Optional[Dict] = None) -> None:
    """Feed one response frame to the connection as if read from stdout."""
    message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        message["error"] = error
    else:
        message["result"] = result
    await connection._dispatch(json.dumps(message).encode("utf-8"))


def text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


CALCULATE = ToolDescriptor(
    name="calculate",
    description="Perform a simple calculation",
    inputSchema={
        "type": "object",
        "properties": {"expression": {"type": "string"}},
        "required": ["expression"],
    },
)

GET_WEATHER = ToolDescriptor(
    name="get-weather",
    description="Get the current weather for a location",
    inputSchema={
        "type": "object",
        "properties": {"location": {"type": "string"}},
        "required": ["location"],
    },
)


def make_registry(*tools: ToolDescriptor) -> ToolRegistry:
    registry = ToolRegistry()
    registry._catalog = {tool.name: tool for tool in tools}
    return registry


class EchoProvider(Provider):
    """Reasoning backend that records its inputs and answers locally."""

    requires_api_key = False

    def __init__(self, model: str = "echo-1", config: Optional[Config] = None, fail: bool = False):
        super().__init__(model, config or Config())
        self.fail = fail
        self.calls: List[Dict[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "echo"

    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        self.calls.append({"system": system_prompt, "query": user_query})
        if self.fail:
            raise ConnectionError("backend unreachable")
        return ProviderResponse(content=f"answer to: {user_query}", model=self.model, provider="echo")


def fake_server(mode: str = "normal") -> ServerConfig:
    return ServerConfig(command=sys.executable, args=[str(FAKE_PROVIDER), mode])


@pytest.fixture
def connection():
    """Connection over an in-memory process."""
    return Connection(InMemoryProcess())


@pytest.fixture
def registry():
    return make_registry(CALCULATE, GET_WEATHER)
