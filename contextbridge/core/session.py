"""
ContextBridge Session - Tool-orchestration session lifecycle.

A session spawns one tool provider, discovers its tools, invokes a plan of
tool calls, folds the results into a system prompt, sends one query to the
reasoning backend and tears everything down again, on every path.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from contextbridge.core.context import ContextAggregator
from contextbridge.mcp.executor import SESSION_CLOSED, ToolExecutor
from contextbridge.mcp.registry import DiscoveryError, ToolRegistry
from contextbridge.mcp.schema import EvidenceEntry, Failure, InvocationOutcome, ToolDescriptor
from contextbridge.mcp.transport import (
    Connection,
    ConnectionLost,
    ProviderProcess,
    SpawnError,
    close_channel,
    open_channel,
)
from contextbridge.providers.base import BackendError, Provider, ProviderResponse
from contextbridge.validation.config import ServerConfig, SessionConfig, ToolPlan

logger = logging.getLogger(__name__)

SESSION_ERRORS = (SpawnError, DiscoveryError, ConnectionLost, BackendError)


class SessionState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    DISCOVERING = "discovering"
    READY = "ready"
    INVOKING = "invoking"
    AGGREGATING = "aggregating"
    QUERYING = "querying"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.SPAWNING, SessionState.CLOSING},
    SessionState.SPAWNING: {SessionState.DISCOVERING},
    SessionState.DISCOVERING: {SessionState.READY},
    SessionState.READY: {SessionState.INVOKING, SessionState.CLOSING},
    SessionState.INVOKING: {SessionState.AGGREGATING},
    SessionState.AGGREGATING: {SessionState.QUERYING, SessionState.CLOSING},
    SessionState.QUERYING: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.CLOSED},
}

# states a session may be closed from without being marked failed
_CLOSABLE = {
    SessionState.IDLE,
    SessionState.READY,
    SessionState.AGGREGATING,
}


@dataclass
class SessionResult:
    """What a caller gets back from :meth:`Session.run`."""

    state: SessionState
    response: Optional[ProviderResponse] = None
    error: Optional[BaseException] = None
    evidence: Tuple[EvidenceEntry, ...] = ()
    outcomes: List[Tuple[ToolPlan, InvocationOutcome]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    @property
    def error_label(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


class Session:
    """
    Drives one query against one tool provider.

    The session exclusively owns the provider process and the connection
    layered on it; the registry, executor and aggregator only receive the
    connection as a read-only capability.

    Example:
        >>> async with Session(server, provider) as session:
        ...     await session.invoke([ToolPlan(tool="calculate", arguments={"expression": "1 + 1"})])
        ...     response = await session.query("What is 1 + 1?")
    """

    def __init__(
        self,
        server: ServerConfig,
        provider: Optional[Provider] = None,
        settings: Optional[SessionConfig] = None,
    ):
        self.server = server
        self.provider = provider
        self.settings = settings or SessionConfig()

        self.registry = ToolRegistry()
        self.executor = ToolExecutor(self.registry, timeout=self.settings.invocation_timeout)
        self.aggregator = ContextAggregator(max_result_chars=self.settings.max_result_chars)

        self.history: List[SessionState] = [SessionState.IDLE]
        self.error: Optional[BaseException] = None
        self.outcomes: List[Tuple[ToolPlan, InvocationOutcome]] = []

        self._state = SessionState.IDLE
        self._process: Optional[ProviderProcess] = None
        self._connection: Optional[Connection] = None
        self._cleaned_up = False
        self._deadline_passed = False
        self._answered = False

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def process(self) -> Optional[ProviderProcess]:
        return self._process

    def _transition(self, new: SessionState) -> None:
        old = self._state
        if new is SessionState.FAILED:
            if old is SessionState.FAILED:
                return
            if old is SessionState.CLOSED:
                raise RuntimeError("Cannot fail a closed session")
        elif new not in _TRANSITIONS.get(old, set()):
            raise RuntimeError(f"Illegal session transition {old.value} -> {new.value}")

        logger.debug("Session %s -> %s", old.value, new.value)
        self._state = new
        self.history.append(new)

    def _fail(self, error: BaseException) -> None:
        if self.error is None:
            self.error = error
        logger.error("Session failed while %s: %s: %s", self._state.value, type(error).__name__, error)
        self._transition(SessionState.FAILED)

    def _check_connection(self) -> None:
        """Fail the session if the provider went away."""
        connection = self._connection
        if connection is not None and connection.is_usable:
            return
        error = (connection and connection.lost_error) or ConnectionLost("Tool provider process is not running")
        self._fail(error)
        raise error

    def _on_connection_lost(self, error: ConnectionLost) -> None:
        logger.warning("Tool provider went away during %s", self._state.value)
        self.executor.cancel_all()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def open(self) -> List[ToolDescriptor]:
        """Spawn the provider, complete the handshake and discover its tools."""
        self._transition(SessionState.SPAWNING)
        self._process = ProviderProcess(self.server.command, self.server.args, self.server.env)
        try:
            self._connection = await open_channel(
                self._process,
                handshake_timeout=self.settings.handshake_timeout,
                close_grace=self.settings.close_grace,
            )
        except SpawnError as exc:
            self._fail(exc)
            raise
        self._connection.on_lost(self._on_connection_lost)

        self._transition(SessionState.DISCOVERING)
        try:
            tools = await self.registry.discover(self._connection, timeout=self.settings.handshake_timeout)
        except DiscoveryError as exc:
            self._fail(exc)
            raise

        self._transition(SessionState.READY)
        return tools

    async def invoke(self, plans: Iterable[ToolPlan]) -> List[Tuple[ToolPlan, InvocationOutcome]]:
        """
        Invoke every planned tool the provider offers.

        Outcomes are recorded in completion order. Per-call failures stay
        local; only a lost connection fails the session.
        """
        self._check_connection()
        self._transition(SessionState.INVOKING)

        selected = []
        for plan in plans:
            if plan.tool in self.registry:
                selected.append(plan)
            else:
                logger.info("Provider does not offer %s, skipping", plan.tool)

        self._deadline_passed = False
        deadline = None
        if self.settings.deadline:
            deadline = asyncio.get_running_loop().call_later(self.settings.deadline, self._deadline_exceeded)

        try:
            if self.settings.concurrent:
                await asyncio.gather(*(self._invoke_one(plan) for plan in selected))
            else:
                for plan in selected:
                    await self._invoke_one(plan)
        finally:
            if deadline is not None:
                deadline.cancel()

        self._check_connection()
        self._transition(SessionState.AGGREGATING)
        return list(self.outcomes)

    async def _invoke_one(self, plan: ToolPlan) -> InvocationOutcome:
        request = self.executor.new_request(plan.tool, plan.arguments)
        if self._deadline_passed:
            outcome: InvocationOutcome = Failure(message=SESSION_CLOSED)
        else:
            outcome = await self.executor.invoke(self._connection, request)
        self.outcomes.append((plan, outcome))
        self.aggregator.record(outcome, plan.tool, request.arguments)
        return outcome

    def _deadline_exceeded(self) -> None:
        logger.warning("Session deadline of %.1fs exceeded", self.settings.deadline)
        self._deadline_passed = True
        self.executor.cancel_all()

    async def query(self, user_query: str) -> ProviderResponse:
        """Send the aggregated context and ``user_query`` to the reasoning backend."""
        if self.provider is None:
            raise RuntimeError("Session has no reasoning backend")

        system_prompt = self.aggregator.build_system_prompt()
        self._transition(SessionState.QUERYING)
        logger.info(
            "Querying %s with %d evidence entr%s",
            self.provider.provider_name,
            len(self.aggregator),
            "y" if len(self.aggregator) == 1 else "ies",
        )
        try:
            response = await asyncio.to_thread(self.provider.complete, system_prompt, user_query)
        except BackendError as exc:
            self._fail(exc)
            raise
        self._answered = True
        return response

    async def close(self) -> None:
        """
        Tear down the connection and process. Runs on every path, once.

        A failed session stays ``FAILED``; anything else ends ``CLOSED``.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        answered = self._state is SessionState.QUERYING and self._answered
        if self._state not in _CLOSABLE and self._state is not SessionState.FAILED and not answered:
            self._fail(self.error or RuntimeError(f"Session interrupted while {self._state.value}"))

        failed = self._state is SessionState.FAILED
        if not failed:
            self._transition(SessionState.CLOSING)

        self.executor.cancel_all()
        try:
            await close_channel(self._connection, grace=self.settings.close_grace)
        finally:
            if not failed:
                self._transition(SessionState.CLOSED)
            logger.info("Session finished in state %s", self._state.value)

    async def run(self, user_query: str, plans: Iterable[ToolPlan]) -> SessionResult:
        """
        Full pipeline: open, invoke, query, close.

        Session errors are reported in the result, never raised; cleanup
        always runs.
        """
        response = None
        try:
            await self.open()
            await self.invoke(plans)
            response = await self.query(user_query)
        except SESSION_ERRORS:
            logger.debug("Session aborted", exc_info=True)
        finally:
            await self.close()

        return SessionResult(
            state=self._state,
            response=response,
            error=self.error,
            evidence=self.aggregator.evidence,
            outcomes=list(self.outcomes),
        )

    async def __aenter__(self) -> "Session":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
