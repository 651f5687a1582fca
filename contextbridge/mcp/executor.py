"""Tool executor - correlates tool calls with their responses over one connection."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from contextbridge.mcp.registry import ToolRegistry
from contextbridge.mcp.schema import ContentBlock, Failure, InvocationOutcome, InvocationRequest, Success
from contextbridge.mcp.transport import Connection, ConnectionLost, RPCError
from contextbridge.validation.arguments import Invalid, validate_arguments

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
INVALID_ARGUMENTS = "invalid arguments"
SESSION_CLOSED = "session closed"
DUPLICATE_ID = "duplicate invocation id"


class ToolExecutor:
    """
    Sends ``tools/call`` requests and resolves each to exactly one outcome.

    Every invocation id is used at most once in the executor's lifetime.
    Per-call problems (bad arguments, timeouts, provider-reported errors,
    a dropped connection) come back as :class:`Failure` values; ``invoke``
    itself never raises for them.
    """

    def __init__(self, registry: ToolRegistry, timeout: float = 30.0):
        self._registry = registry
        self.timeout = timeout
        self._issued: Set[str] = set()
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._connections: Dict[str, Connection] = {}

    @property
    def in_flight(self) -> List[str]:
        return list(self._in_flight)

    def new_request(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> InvocationRequest:
        return InvocationRequest(tool_name=tool_name, arguments=dict(arguments or {}))

    # ── Execution ─────────────────────────────────────────────────────────

    async def invoke(
        self,
        connection: Connection,
        request: InvocationRequest,
        timeout: Optional[float] = None,
    ) -> InvocationOutcome:
        """Send one request and wait for its outcome."""
        invocation_id = request.invocation_id
        if invocation_id in self._issued:
            logger.warning("Refusing to reuse invocation id %s", invocation_id)
            return Failure(message=DUPLICATE_ID)
        self._issued.add(invocation_id)

        tool = self._registry.lookup(request.tool_name)
        if tool is None:
            return Failure(message=f"unknown tool: {request.tool_name}")

        validation = validate_arguments(tool.input_schema, request.arguments)
        if isinstance(validation, Invalid):
            logger.warning(
                "Invalid arguments for %s: %s", request.tool_name, "; ".join(validation.errors)
            )
            return Failure(message=INVALID_ARGUMENTS, details=validation.errors)

        if not connection.is_usable:
            return Failure(message=SESSION_CLOSED)

        logger.info("Calling %s [%s] with %s", request.tool_name, invocation_id, request.arguments)
        t0 = time.perf_counter()
        try:
            future = await connection.send_request(
                "tools/call",
                {"name": request.tool_name, "arguments": request.arguments},
                request_id=invocation_id,
            )
        except ConnectionLost:
            return Failure(message=SESSION_CLOSED)

        self._in_flight[invocation_id] = future
        self._connections[invocation_id] = connection
        wait = self.timeout if timeout is None else timeout
        try:
            result = await asyncio.wait_for(future, wait)
        except asyncio.TimeoutError:
            connection.abandon(invocation_id)
            logger.warning("%s [%s] timed out after %.1fs", request.tool_name, invocation_id, wait)
            return Failure(message=TIMEOUT)
        except ConnectionLost:
            return Failure(message=SESSION_CLOSED)
        except RPCError as exc:
            logger.warning("%s [%s] failed: %s", request.tool_name, invocation_id, exc)
            return Failure(message=f"provider error: {exc.message}")
        except asyncio.CancelledError:
            connection.abandon(invocation_id)
            raise
        finally:
            self._in_flight.pop(invocation_id, None)
            self._connections.pop(invocation_id, None)

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        outcome = self._to_outcome(result)
        logger.info(
            "%s [%s] %s in %dms",
            request.tool_name,
            invocation_id,
            "succeeded" if outcome.ok else "reported an error",
            elapsed_ms,
        )
        return outcome

    @staticmethod
    def _to_outcome(result: Any) -> InvocationOutcome:
        if not isinstance(result, dict):
            return Failure(message="malformed tool result")

        raw_content = result.get("content", [])
        if not isinstance(raw_content, list):
            return Failure(message="malformed tool result")

        try:
            content = [ContentBlock.model_validate(part) for part in raw_content]
        except ValidationError:
            return Failure(message="malformed tool result")

        if result.get("isError"):
            text = "\n".join(block.render() for block in content)
            return Failure(message=text or "tool reported an error")
        return Success(content=content)

    # ── Cancellation ──────────────────────────────────────────────────────

    def cancel_all(self, reason: str = SESSION_CLOSED) -> int:
        """Wake every in-flight invocation with ``Failure(session closed)``."""
        woken = 0
        for invocation_id in list(self._in_flight):
            connection = self._connections.get(invocation_id)
            if connection is not None:
                woken += connection.fail_pending(ConnectionLost(reason), [invocation_id])
        if woken:
            logger.warning("Cancelled %d in-flight invocation(s): %s", woken, reason)
        return woken
