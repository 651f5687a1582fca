"""MCP server communication via an asyncio stdio subprocess transport."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)
provider_logger = logging.getLogger("contextbridge.provider")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "contextbridge", "version": "0.1.0"}

STDERR_TAIL_LINES = 50
STREAM_LIMIT = 4 * 1024 * 1024  # max bytes per protocol line
ABANDONED_LIMIT = 1024  # late-response ids remembered per connection


class TransportError(Exception):
    """Base class for transport failures."""


class SpawnError(TransportError):
    """Raised when the provider process cannot be started or never completes the handshake."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        message = super().__str__()
        if self.stderr:
            return f"{message}\n--- provider stderr ---\n{self.stderr}"
        return message


class ConnectionLost(TransportError):
    """Raised when the provider exits or the channel closes while in use."""


class RPCError(TransportError):
    """A JSON-RPC error response from the provider."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class ProviderProcess:
    """
    Owned handle on the tool-provider subprocess.

    Only spawns and stops the process; protocol traffic goes through the
    :class:`Connection` layered on top of it.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self._process: Optional[asyncio.subprocess.Process] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def spawn(self) -> None:
        """Start the subprocess with piped stdin/stdout/stderr."""
        if self.is_running:
            return

        merged_env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise SpawnError(f"Tool provider command could not be started: {self.command} ({exc})") from exc

        logger.info("Spawned tool provider pid=%s: %s", self._process.pid, self.describe())

    async def shutdown(self, grace: float = 5.0) -> Optional[int]:
        """
        Stop the subprocess: close stdin, wait ``grace`` seconds, then
        terminate, then kill. Returns the exit code.
        """
        proc = self._process
        if proc is None:
            return None

        if proc.returncode is None:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning("Tool provider pid=%s ignored stdin close, terminating", proc.pid)
                self._signal(proc.terminate)
                try:
                    await asyncio.wait_for(proc.wait(), grace)
                except asyncio.TimeoutError:
                    logger.warning("Tool provider pid=%s ignored SIGTERM, killing", proc.pid)
                    self._signal(proc.kill)
                    await proc.wait()

        return proc.returncode

    @staticmethod
    def _signal(send: Callable[[], None]) -> None:
        try:
            send()
        except ProcessLookupError:
            pass  # exited between the check and the signal

    # ── Introspection ─────────────────────────────────────────────────────

    def describe(self) -> str:
        return " ".join([self.command] + self.args)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self._process.stdin if self._process else None

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self._process.stdout if self._process else None

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self._process.stderr if self._process else None


class Connection:
    """
    Newline-delimited JSON-RPC channel over a :class:`ProviderProcess`.

    Exactly one reader task consumes stdout and resolves the future registered
    for each response id. stderr is pumped to the ``contextbridge.provider``
    logger and never parsed.
    """

    def __init__(self, process: ProviderProcess):
        self.process = process
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None

        self._pending: Dict[Any, asyncio.Future] = {}
        self._abandoned: "OrderedDict[Any, bool]" = OrderedDict()
        self._next_id = 0
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._lost: Optional[ConnectionLost] = None
        self._lost_callbacks: List[Callable[[ConnectionLost], None]] = []
        self._closed = False

    def start(self) -> None:
        """Start the stdout reader and stderr pump tasks."""
        if self._reader_task is None:
            self._reader_task = asyncio.ensure_future(self._read_loop())
        if self._stderr_task is None:
            self._stderr_task = asyncio.ensure_future(self._pump_stderr())

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def is_usable(self) -> bool:
        return not self._closed and self._lost is None and self.process.is_running

    @property
    def lost_error(self) -> Optional[ConnectionLost]:
        return self._lost

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def on_lost(self, callback: Callable[[ConnectionLost], None]) -> None:
        """Register a callback fired once when the provider goes away unexpectedly."""
        self._lost_callbacks.append(callback)

    # ── Requests ──────────────────────────────────────────────────────────

    def next_request_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def register(self, request_id: Any) -> asyncio.Future:
        """Create the waiter that the reader resolves when ``request_id`` is answered."""
        if request_id in self._pending:
            raise ValueError(f"Request id already pending: {request_id!r}")
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return future

    def abandon(self, request_id: Any) -> None:
        """Forget a waiter; a response arriving later for it is discarded."""
        future = self._pending.pop(request_id, None)
        if future is not None:
            self._remember_abandoned(request_id)
            if not future.done():
                future.cancel()

    def _remember_abandoned(self, request_id: Any) -> None:
        self._abandoned[request_id] = True
        self._abandoned.move_to_end(request_id)
        while len(self._abandoned) > ABANDONED_LIMIT:
            self._abandoned.popitem(last=False)

    async def send(self, message: Dict[str, Any]) -> None:
        """Write one JSON-RPC frame."""
        if not self.is_usable:
            raise ConnectionLost(str(self._lost) if self._lost else "Connection to tool provider is closed")

        line = json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n"
        try:
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            lost = ConnectionLost(f"Tool provider closed its input: {exc}")
            self._mark_lost(lost)
            raise lost from exc

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        request_id: Any = None,
    ) -> asyncio.Future:
        """Register a waiter, send the request and return the waiter."""
        if request_id is None:
            request_id = self.next_request_id()

        future = self.register(request_id)
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self.send(message)
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        return future

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a request and wait for its result.

        Raises ``RPCError`` for error responses, ``ConnectionLost`` when the
        provider goes away and ``asyncio.TimeoutError`` after ``timeout``.
        """
        request_id = self.next_request_id()
        future = await self.send_request(method, params, request_id)
        try:
            result = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self.abandon(request_id)
            raise
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.send(message)

    def fail_pending(self, error: ConnectionLost, request_ids: Optional[List[Any]] = None) -> int:
        """Wake waiters with ``error``; all of them unless ``request_ids`` is given."""
        if request_ids is None:
            request_ids = list(self._pending)

        woken = 0
        for request_id in request_ids:
            future = self._pending.pop(request_id, None)
            if future is None:
                continue
            if self._lost is None and not self._closed:
                self._remember_abandoned(request_id)
            if not future.done():
                future.set_exception(ConnectionLost(str(error)))
                woken += 1
        return woken

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(
        self,
        timeout: Optional[float] = None,
        client_info: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": client_info or CLIENT_INFO,
            },
            timeout=timeout,
        )
        self.protocol_version = result.get("protocolVersion")
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}
        await self.notify("notifications/initialized")

        logger.info(
            "Connected to %s %s (protocol %s)",
            self.server_info.get("name", "tool provider"),
            self.server_info.get("version", ""),
            self.protocol_version,
        )
        return result

    # ── Reader ────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        stdout = self.process.stdout
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                await self._dispatch(raw)
        except ValueError as exc:
            logger.error("Tool provider sent an oversized frame: %s", exc)

        message = "Tool provider closed the connection"
        if self.process.returncode is not None:
            message += f" (exit code {self.process.returncode})"
        self._mark_lost(ConnectionLost(message))

    async def _dispatch(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return

        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON output from tool provider: %s", line[:200])
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object frame from tool provider: %s", line[:200])
            return

        if "method" in message:
            if "id" in message:
                await self._reject_server_request(message)
            else:
                logger.debug("Notification from tool provider: %s", message["method"])
            return

        if "id" not in message:
            logger.warning("Ignoring frame without id: %s", line[:200])
            return

        request_id = message["id"]
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            if self._abandoned.pop(request_id, False):
                logger.info("Discarding late response for abandoned request %r", request_id)
            else:
                logger.warning("Discarding response for unknown request id %r", request_id)
            return

        if "error" in message:
            err = message.get("error") or {}
            future.set_exception(
                RPCError(err.get("code"), err.get("message", "unknown error"), err.get("data"))
            )
        else:
            future.set_result(message.get("result"))

    async def _reject_server_request(self, message: Dict[str, Any]) -> None:
        logger.debug("Rejecting server request %s", message.get("method"))
        try:
            await self.send({
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {message.get('method')}"},
            })
        except ConnectionLost:
            pass  # reader notices EOF next

    async def _pump_stderr(self) -> None:
        stderr = self.process.stderr
        try:
            while True:
                raw = await stderr.readline()
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._stderr_tail.append(text)
                    provider_logger.info("%s", text)
        except ValueError as exc:
            logger.warning("Dropping oversized stderr line from tool provider: %s", exc)

    def _mark_lost(self, error: ConnectionLost) -> None:
        if self._lost is not None or self._closed:
            return
        self._lost = error
        logger.error("%s", error)
        self.fail_pending(error)
        self._abandoned.clear()
        for callback in self._lost_callbacks:
            callback(error)

    # ── Cleanup ───────────────────────────────────────────────────────────

    async def close(self, grace: float = 5.0) -> Optional[int]:
        """
        Idempotent shutdown: wake all waiters, stop the reader, stop the
        process and drain stderr. Returns the process exit code.
        """
        if self._closed:
            return self.process.returncode
        self._closed = True

        self.fail_pending(ConnectionLost("session closed"))
        self._abandoned.clear()

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)

        returncode = await self.process.shutdown(grace)

        if self._stderr_task is not None and not self._stderr_task.done():
            try:
                await asyncio.wait_for(self._stderr_task, grace)
            except asyncio.TimeoutError:
                logger.debug("stderr pump did not finish after process exit")

        logger.info("Tool provider pid=%s exited with code %s", self.process.pid, returncode)
        return returncode


async def open_channel(
    process: ProviderProcess,
    handshake_timeout: float = 10.0,
    client_info: Optional[Dict[str, str]] = None,
    close_grace: float = 5.0,
) -> Connection:
    """
    Spawn ``process``, connect to it and complete the MCP handshake.

    Never returns a half-open connection: on any failure the process is
    stopped and ``SpawnError`` is raised with the captured stderr.
    """
    await process.spawn()
    connection = Connection(process)
    connection.start()

    try:
        await connection.initialize(timeout=handshake_timeout, client_info=client_info)
    except asyncio.TimeoutError:
        await connection.close(close_grace)
        raise SpawnError(
            f"Tool provider did not complete the handshake within {handshake_timeout:.1f}s",
            stderr=connection.stderr_tail,
        )
    except (ConnectionLost, RPCError) as exc:
        await connection.close(close_grace)
        raise SpawnError(
            f"Tool provider failed during the handshake: {exc}",
            stderr=connection.stderr_tail,
        ) from exc
    except BaseException:
        await connection.close(close_grace)
        raise

    return connection


async def close_channel(connection: Optional[Connection], grace: float = 5.0) -> Optional[int]:
    """Close a connection and stop its process. Safe to call more than once."""
    if connection is None:
        return None
    return await connection.close(grace)
