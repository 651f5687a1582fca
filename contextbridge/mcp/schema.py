"""Data models for tool descriptors, invocation requests, outcomes and evidence."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ToolDescriptor(BaseModel):
    """A tool as advertised by the provider's ``tools/list`` response."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    def prompt_line(self) -> str:
        """One-line representation for listings."""
        first_line = self.description.split("\n")[0][:100] if self.description else ""
        return f"- {self.name}: {first_line}" if first_line else f"- {self.name}"

    def full_schema_text(self) -> str:
        """Full parameter listing as text."""
        lines = [f"Tool: {self.name}", f"  {self.description}", "  Parameters:"]
        properties = self.input_schema.get("properties") or {}
        required = set(self.input_schema.get("required") or [])
        if not properties:
            lines.append("    (none)")
        for pname, pinfo in properties.items():
            req = " (required)" if pname in required else ""
            ptype = pinfo.get("type", "any") if isinstance(pinfo, dict) else "any"
            pdesc = pinfo.get("description", "") if isinstance(pinfo, dict) else ""
            lines.append(f"    - {pname}: {ptype}{req} — {pdesc}")
        return "\n".join(lines)


class InvocationRequest(BaseModel):
    """One tool call. ``invocation_id`` doubles as the JSON-RPC request id."""

    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    invocation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class ContentBlock(BaseModel):
    """A content block from a ``tools/call`` result (text, image, resource...)."""

    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None

    def render(self) -> str:
        if self.text is not None:
            return self.text
        return f"[{self.type} content]"


class Success(BaseModel):
    kind: Literal["success"] = "success"
    content: List[ContentBlock] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    @property
    def text(self) -> str:
        """Content blocks joined into a single string."""
        return "\n".join(block.render() for block in self.content)


class Failure(BaseModel):
    kind: Literal["failure"] = "failure"
    message: str
    details: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False


InvocationOutcome = Union[Success, Failure]


class EvidenceEntry(BaseModel):
    """A successful tool result folded into the prompt context."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    rendered_result: str = ""
