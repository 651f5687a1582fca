"""Tests for the stdio transport."""

import asyncio
import sys

import pytest

from contextbridge.mcp.transport import (
    ABANDONED_LIMIT,
    Connection,
    ConnectionLost,
    ProviderProcess,
    RPCError,
    SpawnError,
    close_channel,
    open_channel,
)
from tests.conftest import FAKE_PROVIDER, InMemoryProcess, deliver


def fake_process(mode: str = "normal") -> ProviderProcess:
    return ProviderProcess(sys.executable, [str(FAKE_PROVIDER), mode])


class TestDemultiplexing:
    """Response routing on the reader side, without a subprocess."""

    @pytest.mark.asyncio
    async def test_response_wakes_matching_waiter(self, connection):
        first = await connection.send_request("tools/call", {"name": "a"}, request_id="a1")
        second = await connection.send_request("tools/call", {"name": "b"}, request_id="b1")

        await deliver(connection, "b1", {"value": 2})

        assert second.done() and second.result() == {"value": 2}
        assert not first.done()

        await deliver(connection, "a1", {"value": 1})
        assert first.result() == {"value": 1}

    @pytest.mark.asyncio
    async def test_frames_written_as_json_rpc(self, connection):
        await connection.send_request("tools/list", request_id=7)
        await connection.notify("notifications/initialized")

        frames = connection.process.stdin.frames
        assert frames[0] == {"jsonrpc": "2.0", "id": 7, "method": "tools/list"}
        assert frames[1] == {"jsonrpc": "2.0", "method": "notifications/initialized"}

    @pytest.mark.asyncio
    async def test_error_response_raises_rpc_error(self, connection):
        future = await connection.send_request("tools/call", request_id="x")
        await deliver(connection, "x", error={"code": -32602, "message": "bad params"})

        with pytest.raises(RPCError) as info:
            future.result()
        assert info.value.code == -32602
        assert info.value.message == "bad params"

    @pytest.mark.asyncio
    async def test_unknown_id_is_discarded(self, connection):
        future = await connection.send_request("tools/call", request_id="known")
        await deliver(connection, "stranger", {"value": 1})
        assert not future.done()

    @pytest.mark.asyncio
    async def test_abandoned_request_discards_late_response(self, connection):
        future = await connection.send_request("tools/call", request_id="late")
        connection.abandon("late")
        assert future.cancelled()

        await deliver(connection, "late", {"value": "too late"})

        # the id can be registered again without the stale frame leaking in
        again = connection.register("late")
        assert not again.done()

    @pytest.mark.asyncio
    async def test_abandoned_ids_are_bounded(self, connection):
        for i in range(ABANDONED_LIMIT + 50):
            await connection.send_request("tools/call", request_id=i)
            connection.abandon(i)

        assert len(connection._abandoned) == ABANDONED_LIMIT
        assert 0 not in connection._abandoned
        assert ABANDONED_LIMIT + 49 in connection._abandoned

    @pytest.mark.asyncio
    async def test_close_forgets_abandoned_ids(self, connection):
        await connection.send_request("tools/call", request_id="gone")
        connection.abandon("gone")

        await connection.close(grace=0.1)

        assert len(connection._abandoned) == 0

    @pytest.mark.asyncio
    async def test_duplicate_pending_id_rejected(self, connection):
        await connection.send_request("tools/call", request_id="dup")
        with pytest.raises(ValueError):
            connection.register("dup")

    @pytest.mark.asyncio
    async def test_fail_pending_wakes_everyone_once(self, connection):
        futures = [await connection.send_request("tools/call", request_id=i) for i in range(3)]

        woken = connection.fail_pending(ConnectionLost("session closed"))

        assert woken == 3
        for future in futures:
            with pytest.raises(ConnectionLost):
                future.result()
        assert connection.fail_pending(ConnectionLost("again")) == 0

    @pytest.mark.asyncio
    async def test_non_json_and_notifications_ignored(self, connection):
        future = await connection.send_request("tools/list", request_id=1)

        await connection._dispatch(b"this is not json\n")
        await connection._dispatch(b'{"jsonrpc": "2.0", "method": "notifications/progress"}\n')

        assert not future.done()

    @pytest.mark.asyncio
    async def test_server_request_is_rejected(self, connection):
        await connection._dispatch(b'{"jsonrpc": "2.0", "id": 99, "method": "sampling/createMessage"}\n')

        reply = connection.process.stdin.frames[-1]
        assert reply["id"] == 99
        assert reply["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_send_after_process_exit_raises(self):
        process = InMemoryProcess()
        connection = Connection(process)
        process.returncode = 1

        assert not connection.is_usable
        with pytest.raises(ConnectionLost):
            await connection.send_request("tools/list")
        assert connection._pending == {}

    @pytest.mark.asyncio
    async def test_unencodable_params_leave_nothing_pending(self, connection):
        with pytest.raises(TypeError):
            await connection.send_request("tools/call", {"when": {1, 2}}, request_id="bad")

        assert connection._pending == {}
        assert connection.process.stdin.frames == []

    @pytest.mark.asyncio
    async def test_request_timeout_abandons(self, connection):
        with pytest.raises(asyncio.TimeoutError):
            await connection.request("tools/list", timeout=0.05)
        assert connection._pending == {}


class TestSubprocessLifecycle:
    """Spawn, handshake and shutdown against the scripted provider."""

    @pytest.mark.asyncio
    async def test_handshake_and_close(self):
        process = fake_process()
        connection = await open_channel(process, handshake_timeout=10)
        try:
            assert connection.is_usable
            assert connection.server_info["name"] == "fake-provider"
            assert connection.protocol_version == "2024-11-05"

            result = await connection.request("tools/list", timeout=10)
            assert [t["name"] for t in result["tools"]][:2] == ["calculate", "echo"]
        finally:
            await close_channel(connection, grace=2)

        assert not connection.is_usable
        assert not process.is_running

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        process = fake_process()
        connection = await open_channel(process, handshake_timeout=10)

        first = await close_channel(connection, grace=2)
        second = await close_channel(connection, grace=2)

        assert first == second
        assert not process.is_running

    @pytest.mark.asyncio
    async def test_exit_before_handshake_is_spawn_error(self):
        process = fake_process("exit-before-init")

        with pytest.raises(SpawnError) as info:
            await open_channel(process, handshake_timeout=10, close_grace=2)

        assert "boom" in info.value.stderr
        assert not process.is_running

    @pytest.mark.asyncio
    async def test_missing_command_is_spawn_error(self):
        process = ProviderProcess("/nonexistent/provider-binary")

        with pytest.raises(SpawnError):
            await open_channel(process, handshake_timeout=1)
        assert not process.is_running

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX exec")
    async def test_unrunnable_file_is_spawn_error(self, tmp_path):
        provider = tmp_path / "provider"
        provider.write_bytes(b"\x00\x01\x02 not a program\n")
        provider.chmod(0o755)
        process = ProviderProcess(str(provider))

        with pytest.raises(SpawnError) as info:
            await open_channel(process, handshake_timeout=1)

        assert isinstance(info.value.__cause__, OSError)
        assert not process.is_running

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="needs cat")
    async def test_handshake_timeout_is_spawn_error(self):
        # cat is no MCP server, the handshake cannot succeed
        process = ProviderProcess("cat")

        with pytest.raises(SpawnError):
            await open_channel(process, handshake_timeout=0.3, close_grace=1)
        assert not process.is_running

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_stubborn_process_is_killed(self):
        process = fake_process("stubborn")
        connection = await open_channel(process, handshake_timeout=10)
        await asyncio.sleep(0.2)  # let it install the SIGTERM handler

        returncode = await close_channel(connection, grace=0.3)

        assert not process.is_running
        assert returncode is not None and returncode < 0

    @pytest.mark.asyncio
    async def test_provider_exit_marks_connection_lost(self):
        process = fake_process("crash-after-list")
        connection = await open_channel(process, handshake_timeout=10)
        lost = []
        connection.on_lost(lost.append)
        try:
            await connection.request("tools/list", timeout=10)
            await asyncio.wait_for(process._process.wait(), 10)
            for _ in range(100):
                if connection.lost_error is not None:
                    break
                await asyncio.sleep(0.02)

            assert isinstance(connection.lost_error, ConnectionLost)
            assert len(lost) == 1
            assert not connection.is_usable
        finally:
            await close_channel(connection, grace=1)

    @pytest.mark.asyncio
    async def test_stderr_is_not_protocol_data(self):
        process = fake_process()
        connection = await open_channel(process, handshake_timeout=10)
        try:
            for _ in range(100):
                if "initialized" in connection.stderr_tail:
                    break
                await asyncio.sleep(0.02)
            assert "initialized" in connection.stderr_tail
            assert connection.is_usable
        finally:
            await close_channel(connection, grace=2)


def test_spawn_error_includes_stderr_in_message():
    error = SpawnError("failed", stderr="Traceback: nope")
    assert "Traceback: nope" in str(error)
    assert str(SpawnError("plain")) == "plain"
