"""End-to-end session tests against the scripted tool provider."""

import asyncio
import time

import pytest

from contextbridge.core.context import NO_EVIDENCE_PROMPT
from contextbridge.core.session import Session, SessionState
from contextbridge.mcp.registry import DiscoveryError
from contextbridge.mcp.schema import Failure
from contextbridge.mcp.transport import ConnectionLost, SpawnError
from contextbridge.providers.base import BackendError
from contextbridge.validation.config import SessionConfig, ToolPlan
from tests.conftest import EchoProvider, fake_server

S = SessionState

CALCULATE = ToolPlan(tool="calculate", arguments={"expression": "15 + 25"})


class SlowProvider(EchoProvider):
    def _complete(self, system_prompt, user_query, **kwargs):
        time.sleep(0.3)
        return super()._complete(system_prompt, user_query, **kwargs)


def settings(**overrides) -> SessionConfig:
    values = {"handshake_timeout": 10, "close_grace": 2}
    values.update(overrides)
    return SessionConfig(**values)


class TestRun:
    """Full pipeline runs."""

    @pytest.mark.asyncio
    async def test_calculate_query(self):
        provider = EchoProvider()
        session = Session(fake_server(), provider, settings())

        result = await session.run("What's 15 + 25?", [CALCULATE])

        assert result.ok
        assert result.state is S.CLOSED
        assert session.history == [
            S.IDLE, S.SPAWNING, S.DISCOVERING, S.READY, S.INVOKING,
            S.AGGREGATING, S.QUERYING, S.CLOSING, S.CLOSED,
        ]
        assert result.response.content == "answer to: What's 15 + 25?"
        assert len(result.evidence) == 1
        assert "The result of 15 + 25 is 40" in provider.calls[0]["system"]
        assert provider.calls[0]["query"] == "What's 15 + 25?"
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_absent_tools_are_skipped(self):
        provider = EchoProvider()
        session = Session(fake_server(), provider, settings())
        plans = [ToolPlan(tool="get-weather", arguments={"location": "New York"}), CALCULATE]

        result = await session.run("Weather and sums?", plans)

        assert result.state is S.CLOSED
        assert [plan.tool for plan, _ in result.outcomes] == ["calculate"]

    @pytest.mark.asyncio
    async def test_tool_failure_stays_local(self):
        provider = EchoProvider()
        session = Session(fake_server(), provider, settings())

        result = await session.run("q", [ToolPlan(tool="fail"), CALCULATE])

        assert result.ok
        assert result.outcomes[0][1] == Failure(message="tool exploded")
        assert [e.tool_name for e in result.evidence] == ["calculate"]
        assert "tool exploded" not in provider.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_empty_catalog(self):
        provider = EchoProvider()
        session = Session(fake_server("no-tools"), provider, settings())

        result = await session.run("anything?", [CALCULATE])

        assert result.ok
        assert result.outcomes == []
        assert provider.calls[0]["system"] == NO_EVIDENCE_PROMPT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "concurrent, expected",
        [(True, ["fast", "slow"]), (False, ["slow", "fast"])],
    )
    async def test_evidence_follows_completion_order(self, concurrent, expected):
        session = Session(fake_server(), EchoProvider(), settings(concurrent=concurrent))
        plans = [
            ToolPlan(tool="echo", arguments={"text": "slow", "delay": 0.5}),
            ToolPlan(tool="echo", arguments={"text": "fast"}),
        ]

        result = await session.run("q", plans)

        assert [e.rendered_result for e in result.evidence] == expected

    @pytest.mark.asyncio
    async def test_invocation_timeout(self):
        session = Session(fake_server(), EchoProvider(), settings(invocation_timeout=0.3))

        result = await session.run("q", [ToolPlan(tool="never"), CALCULATE])

        assert result.ok
        assert result.outcomes[0][1] == Failure(message="timeout")
        assert len(result.evidence) == 1

    @pytest.mark.asyncio
    async def test_deadline_cancels_in_flight(self):
        session = Session(fake_server(), EchoProvider(), settings(deadline=0.5, concurrent=True))
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await session.run("q", [ToolPlan(tool="never"), CALCULATE])

        assert loop.time() - started < 5
        assert result.state is S.CLOSED
        outcomes = {plan.tool: outcome for plan, outcome in result.outcomes}
        assert outcomes["never"] == Failure(message="session closed")
        assert outcomes["calculate"].ok

    @pytest.mark.asyncio
    async def test_deadline_stops_remaining_sequential_calls(self):
        session = Session(fake_server(), EchoProvider(), settings(deadline=0.5, invocation_timeout=10))
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await session.run("q", [ToolPlan(tool="never")] * 3)

        assert loop.time() - started < 5
        assert result.state is S.CLOSED
        assert [outcome for _, outcome in result.outcomes] == [Failure(message="session closed")] * 3


class TestFailures:
    """Every failure path ends FAILED with the process stopped."""

    @pytest.mark.asyncio
    async def test_provider_exits_before_handshake(self):
        session = Session(fake_server("exit-before-init"), EchoProvider(), settings())

        result = await session.run("q", [CALCULATE])

        assert result.state is S.FAILED
        assert isinstance(result.error, SpawnError)
        assert "boom" in result.error.stderr
        assert session.history == [S.IDLE, S.SPAWNING, S.FAILED]
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_malformed_catalog(self):
        provider = EchoProvider()
        session = Session(fake_server("bad-catalog"), provider, settings())

        result = await session.run("q", [CALCULATE])

        assert result.state is S.FAILED
        assert isinstance(result.error, DiscoveryError)
        assert provider.calls == []
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_catalog_never_arrives(self):
        session = Session(fake_server("hang-on-list"), EchoProvider(), settings(handshake_timeout=0.5))

        result = await session.run("q", [CALCULATE])

        assert result.state is S.FAILED
        assert isinstance(result.error, DiscoveryError)
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_provider_crash_after_discovery(self):
        provider = EchoProvider()
        session = Session(fake_server("crash-after-list"), provider, settings())

        result = await session.run("q", [CALCULATE])

        assert result.state is S.FAILED
        assert isinstance(result.error, ConnectionLost)
        assert result.response is None
        assert provider.calls == []
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_backend_failure(self):
        provider = EchoProvider(fail=True)
        session = Session(fake_server(), provider, settings())

        result = await session.run("q", [CALCULATE])

        assert result.state is S.FAILED
        assert isinstance(result.error, BackendError)
        assert "backend unreachable" in result.error_label
        assert len(result.evidence) == 1
        assert session.history[-2:] == [S.QUERYING, S.FAILED]
        assert not session.process.is_running


class TestLifecycle:
    """State machine and context manager behavior."""

    @pytest.mark.asyncio
    async def test_context_manager(self):
        async with Session(fake_server(), settings=settings()) as session:
            assert session.state is S.READY
            assert "calculate" in session.registry
            process = session.process

        assert session.state is S.CLOSED
        assert not process.is_running

    @pytest.mark.asyncio
    async def test_context_manager_spawn_failure(self):
        session = Session(fake_server("exit-before-init"), settings=settings())

        with pytest.raises(SpawnError):
            async with session:
                pass

        assert session.state is S.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_query_closes_as_failed(self):
        session = Session(fake_server(), SlowProvider(), settings())
        await session.open()
        await session.invoke([CALCULATE])

        task = asyncio.ensure_future(session.query("q"))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await session.close()

        assert session.state is S.FAILED
        assert isinstance(session.error, RuntimeError)
        assert S.CLOSED not in session.history
        assert not session.process.is_running

    @pytest.mark.asyncio
    async def test_close_from_idle(self):
        session = Session(fake_server())

        await session.close()
        await session.close()

        assert session.history == [S.IDLE, S.CLOSING, S.CLOSED]

    @pytest.mark.asyncio
    async def test_illegal_transition(self):
        session = Session(fake_server(), EchoProvider())

        with pytest.raises(RuntimeError):
            await session.query("too early")

        assert session.state is S.IDLE

    @pytest.mark.asyncio
    async def test_query_needs_backend(self):
        async with Session(fake_server(), settings=settings()) as session:
            await session.invoke([CALCULATE])
            with pytest.raises(RuntimeError):
                await session.query("q")

    @pytest.mark.asyncio
    async def test_invoke_before_open_fails(self):
        session = Session(fake_server())

        with pytest.raises(ConnectionLost):
            await session.invoke([CALCULATE])

        assert session.state is S.FAILED

    @pytest.mark.asyncio
    async def test_closed_session_cannot_fail(self):
        session = Session(fake_server())
        await session.close()

        with pytest.raises(RuntimeError):
            session._fail(RuntimeError("late"))
