"""Tool registry - discovers and caches the provider's tool catalog."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from contextbridge.mcp.schema import ToolDescriptor
from contextbridge.mcp.transport import Connection, TransportError

logger = logging.getLogger(__name__)

MAX_PAGES = 100


class DiscoveryError(Exception):
    """Raised when the tool catalog cannot be fetched or is malformed."""


class ToolRegistry:
    """
    Holds the tool catalog of one provider.

    ``discover()`` fetches the full catalog and swaps it in as a whole;
    readers only ever see the previous catalog or the new one. There is
    no subscription to catalog changes, call ``discover()`` again to refresh.
    """

    def __init__(self) -> None:
        self._catalog: Mapping[str, ToolDescriptor] = MappingProxyType({})

    # ── Discovery ─────────────────────────────────────────────────────────

    async def discover(self, connection: Connection, timeout: Optional[float] = None) -> List[ToolDescriptor]:
        """Fetch ``tools/list`` (following pagination) and replace the catalog."""
        raw_tools: List[Any] = []
        cursor: Optional[str] = None

        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else None
            try:
                result = await connection.request("tools/list", params, timeout=timeout)
            except asyncio.TimeoutError:
                raise DiscoveryError("Timed out waiting for the tool catalog")
            except TransportError as exc:
                raise DiscoveryError(f"Tool catalog exchange failed: {exc}") from exc

            page = result.get("tools", [])
            if not isinstance(page, list):
                raise DiscoveryError("Malformed tool catalog: 'tools' is not a list")
            raw_tools.extend(page)

            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            raise DiscoveryError(f"Tool catalog did not end after {MAX_PAGES} pages")

        catalog = self._parse(raw_tools)
        self._catalog = MappingProxyType(catalog)

        logger.info("Discovered %d tool(s): %s", len(catalog), ", ".join(catalog) or "(none)")
        return list(catalog.values())

    @staticmethod
    def _parse(raw_tools: List[Any]) -> Dict[str, ToolDescriptor]:
        catalog: Dict[str, ToolDescriptor] = {}
        for raw in raw_tools:
            try:
                tool = ToolDescriptor.model_validate(raw)
            except ValidationError as exc:
                raise DiscoveryError(f"Malformed tool descriptor: {exc}") from exc

            if tool.input_schema and tool.input_schema.get("type", "object") != "object":
                raise DiscoveryError(f"Tool {tool.name!r} has a non-object input schema")
            if tool.name in catalog:
                raise DiscoveryError(f"Duplicate tool name in catalog: {tool.name!r}")
            catalog[tool.name] = tool
        return catalog

    # ── Tool Lookup ───────────────────────────────────────────────────────

    def lookup(self, name: str) -> Optional[ToolDescriptor]:
        return self._catalog.get(name)

    def list_tools(self) -> List[ToolDescriptor]:
        return list(self._catalog.values())

    def __len__(self) -> int:
        return len(self._catalog)

    def __contains__(self, name: object) -> bool:
        return name in self._catalog

    # ── Prompt Building ───────────────────────────────────────────────────

    def build_prompt_fragment(self) -> str:
        """
        Short tool list, one line per tool::

            Available tools:
            - get-weather: Get the current weather for a location
            - calculate: Perform a simple calculation
        """
        tools = self.list_tools()
        if not tools:
            return ""

        lines = ["Available tools:"]
        lines.extend(tool.prompt_line() for tool in tools)
        return "\n".join(lines)

    def full_schema_text(self, name: str) -> str:
        tool = self.lookup(name)
        if not tool:
            return f"Tool not found: {name}"
        return tool.full_schema_text()
