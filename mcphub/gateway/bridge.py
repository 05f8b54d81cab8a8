"""Stdio bridge to a child process speaking line-delimited JSON-RPC."""

import asyncio
import json
import logging
import os
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mcphub.gateway.config import BridgeSpec
from mcphub.gateway.constants import (
    BRIDGE_READ_CHUNK,
    BRIDGE_TERMINATE_TIMEOUT,
    CLIENT_INFO,
    DEFAULT_BRIDGE_TIMEOUT,
    METHOD_NOT_FOUND,
    PROTOCOL_VERSION,
)
from mcphub.gateway.errors import BridgeCallError, BridgeTimeoutError, BridgeUnavailableError
from mcphub.gateway.toolset import ToolContext, ToolEntry, ToolSet

_bridge_log = logging.getLogger("mcphub.gateway.bridge")


class BridgeState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class PendingCall:
    """An outstanding request waiting for the reply with the same id."""

    id: int
    method: str
    future: "asyncio.Future[dict[str, Any]]"
    issued_at: float


class StdioBridge:
    """Owns one child process and correlates its replies by request id.

    Requests may be answered in any order. Each pending call is settled at
    most once: whoever pops it from the pending map (reply, timeout,
    cancellation or teardown) is the only side allowed to resolve it.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        request_timeout: float | None = DEFAULT_BRIDGE_TIMEOUT,
    ) -> None:
        """Initialize the bridge without spawning the child.

        Args:
            name: Bridge name used in logs and errors
            command: Executable to launch
            args: Command-line arguments for the child
            env: Variables merged over the hub's own environment
            cwd: Working directory for the child
            request_timeout: Default seconds to wait for a reply (None waits forever)
        """
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self.request_timeout = request_timeout
        self.state = BridgeState.NOT_STARTED
        self.server_info: dict[str, Any] = {}
        self.declared_tools: list[dict[str, Any]] | None = None

        self._process: Any = None
        self._buffer = b""
        self._pending: dict[int, PendingCall] = {}
        self._pending_lock = threading.Lock()
        self._next_id = 0
        self._write_lock = asyncio.Lock()
        self._start_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._reply_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_spec(
        cls, spec: BridgeSpec, request_timeout: float | None = DEFAULT_BRIDGE_TIMEOUT
    ) -> "StdioBridge":
        return cls(
            name=spec.name,
            command=spec.command,
            args=spec.args,
            env=spec.env,
            cwd=spec.cwd,
            request_timeout=(
                spec.request_timeout if spec.request_timeout is not None else request_timeout
            ),
        )

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the child and complete the handshake.

        Idempotent. Concurrent callers share a single start attempt and all
        observe its outcome.
        """
        if self.state is BridgeState.READY:
            return
        if self.state is BridgeState.CLOSED:
            raise BridgeUnavailableError(f"Bridge '{self.name}' is closed")
        if self._start_task is None:
            self._start_task = asyncio.create_task(self._start())
        await asyncio.shield(self._start_task)
        if self.state is not BridgeState.READY:
            raise BridgeUnavailableError(f"Bridge '{self.name}' is {self.state.value}")

    async def _start(self) -> None:
        self.state = BridgeState.STARTING
        _bridge_log.info(
            "bridge_starting bridge=%s command=%s args=%s", self.name, self.command, self.args
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.cwd,
            )
        except OSError as e:
            self.state = BridgeState.FAILED
            _bridge_log.error("bridge_spawn_failed bridge=%s error=%s", self.name, e)
            raise BridgeUnavailableError(f"Failed to start bridge '{self.name}': {e}") from e

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            reply = await self._call(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                self.request_timeout,
            )
            if reply.get("error"):
                raise _call_error(reply["error"])
            self.server_info = reply.get("result") or {}
            await self.notify("notifications/initialized")
        except Exception as e:
            self.state = BridgeState.FAILED
            _bridge_log.error("bridge_handshake_failed bridge=%s error=%s", self.name, e)
            self._fail_pending(f"Bridge '{self.name}' failed during handshake")
            await self._stop_process()
            raise BridgeUnavailableError(f"Bridge '{self.name}' handshake failed: {e}") from e

        if self.state is BridgeState.STARTING:
            self.state = BridgeState.READY
            _bridge_log.info(
                "bridge_ready bridge=%s server=%s",
                self.name,
                self.server_info.get("serverInfo", {}).get("name", "(unknown)"),
            )

    async def shutdown(self) -> None:
        """Stop the child and fail every outstanding call. Idempotent."""
        if self.state is BridgeState.CLOSED:
            return
        self.state = BridgeState.CLOSED
        self.declared_tools = None
        self._fail_pending(f"Bridge '{self.name}' was shut down")
        await self._stop_process()
        _bridge_log.info("bridge_closed bridge=%s", self.name)

    async def _stop_process(self) -> None:
        process = self._process
        if process is not None and getattr(process, "returncode", 0) is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), BRIDGE_TERMINATE_TIMEOUT)
            except asyncio.TimeoutError:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), BRIDGE_TERMINATE_TIMEOUT)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reader_task, self._stderr_task, *self._reply_tasks)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        """Send a request and wait for the reply envelope carrying the same id.

        Raises:
            BridgeUnavailableError: bridge failed, closed, or torn down mid-call
            BridgeTimeoutError: no reply within ``timeout`` (or the bridge default)
        """
        if self.state is not BridgeState.READY:
            await self.start()
        return await self._call(
            method, params, timeout if timeout is not None else self.request_timeout
        )

    async def _call(
        self, method: str, params: dict[str, Any] | None, timeout: float | None
    ) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        with self._pending_lock:
            self._next_id += 1
            request_id = self._next_id
            future: asyncio.Future[dict[str, Any]] = loop.create_future()
            self._pending[request_id] = PendingCall(request_id, method, future, time.monotonic())

        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
        try:
            await self._write(message)
            if timeout is None:
                return await future
            # Await the future itself so cancelling the caller cancels it.
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError:
            _bridge_log.warning(
                "bridge_timeout bridge=%s method=%s id=%s timeout=%s",
                self.name,
                method,
                request_id,
                timeout,
            )
            raise BridgeTimeoutError(
                f"Bridge '{self.name}' did not answer {method} (id={request_id}) within {timeout:g}s"
            ) from None
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise BridgeUnavailableError(f"Bridge '{self.name}' has no running process")
        data = (json.dumps(message) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise BridgeUnavailableError(
                    f"Bridge '{self.name}' stdin is closed: {e}"
                ) from e

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Consume a chunk of child stdout, dispatching every complete line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            text = line.strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except (json.JSONDecodeError, UnicodeDecodeError):
                _bridge_log.debug("bridge_output bridge=%s line=%r", self.name, text[:200])
                continue
            if isinstance(message, dict):
                self._dispatch(message)
            else:
                _bridge_log.debug("bridge_non_object bridge=%s line=%r", self.name, text[:200])

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" in message:
            method = message["method"]
            if message.get("id") is not None:
                self._answer_unsupported(message["id"], method)
            else:
                _bridge_log.debug("bridge_notification bridge=%s method=%s", self.name, method)
            return

        request_id = message.get("id")
        call = None
        if isinstance(request_id, int) and not isinstance(request_id, bool):
            with self._pending_lock:
                call = self._pending.pop(request_id, None)
        if call is None:
            if isinstance(request_id, int) and 0 < request_id <= self._next_id:
                _bridge_log.debug("bridge_stale_reply bridge=%s id=%s", self.name, request_id)
            else:
                _bridge_log.warning("bridge_unexpected_reply bridge=%s id=%r", self.name, request_id)
            return
        if not call.future.done():
            call.future.set_result(message)

    def _answer_unsupported(self, request_id: Any, method: str) -> None:
        _bridge_log.info(
            "bridge_child_request bridge=%s method=%s id=%r", self.name, method, request_id
        )
        reply = {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
        }
        task = asyncio.get_running_loop().create_task(self._write_quietly(reply))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _write_quietly(self, message: dict[str, Any]) -> None:
        try:
            await self._write(message)
        except BridgeUnavailableError as e:
            _bridge_log.debug("bridge_reply_dropped bridge=%s error=%s", self.name, e)

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(BRIDGE_READ_CHUNK)
            if not chunk:
                break
            self.feed(chunk)
        self._on_exit()

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        partial = b""
        while True:
            chunk = await stderr.read(BRIDGE_READ_CHUNK)
            if not chunk:
                break
            *lines, partial = (partial + chunk).split(b"\n")
            if len(partial) > BRIDGE_READ_CHUNK:
                lines.append(partial)
                partial = b""
            for line in lines:
                self._log_stderr(line)
        if partial:
            self._log_stderr(partial)

    def _log_stderr(self, line: bytes) -> None:
        text = line.decode(errors="replace").rstrip()
        if text:
            _bridge_log.debug("bridge_stderr bridge=%s line=%s", self.name, text[:500])

    def _on_exit(self) -> None:
        if self.state is BridgeState.CLOSED:
            return
        self.state = BridgeState.FAILED
        self.declared_tools = None
        _bridge_log.warning(
            "bridge_exited bridge=%s returncode=%s pending=%s",
            self.name,
            getattr(self._process, "returncode", None),
            self.pending_count,
        )
        self._fail_pending(f"Bridge '{self.name}' process exited")

    def _fail_pending(self, reason: str) -> None:
        with self._pending_lock:
            calls = list(self._pending.values())
            self._pending.clear()
        for call in calls:
            if not call.future.done():
                call.future.set_exception(BridgeUnavailableError(reason))

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[dict[str, Any]]:
        """Discover the child's tools once; later calls return the cached list."""
        if self.declared_tools is not None:
            return self.declared_tools
        reply = await self.request("tools/list", {})
        if reply.get("error"):
            raise _call_error(reply["error"])
        tools = (reply.get("result") or {}).get("tools", [])
        self.declared_tools = [tool for tool in tools if isinstance(tool, dict) and tool.get("name")]
        _bridge_log.info("bridge_tools bridge=%s count=%s", self.name, len(self.declared_tools))
        return self.declared_tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke a declared tool; a JSON-RPC error reply raises :class:`BridgeCallError`."""
        reply = await self.request("tools/call", {"name": name, "arguments": arguments})
        if reply.get("error"):
            raise _call_error(reply["error"])
        return reply.get("result") or {}

    async def as_tool_set(
        self, resolve: Callable[[], Awaitable["StdioBridge"]] | None = None
    ) -> ToolSet:
        """Build one proxy tool per declared tool.

        ``resolve`` returns the bridge to call at invoke time, so a restarted
        bridge replaces this one transparently. Without it calls go to ``self``.
        """
        tools = ToolSet()
        for declared in await self.list_tools():
            tools.add(
                ToolEntry(
                    name=declared["name"],
                    description=declared.get("description", ""),
                    input_schema=declared.get("inputSchema") or {"type": "object", "properties": {}},
                    invoke=self._proxy(declared["name"], resolve),
                    source=self.name,
                )
            )
        return tools

    def _proxy(
        self, tool_name: str, resolve: Callable[[], Awaitable["StdioBridge"]] | None
    ) -> Callable[[dict[str, Any], ToolContext], Awaitable[Any]]:
        async def invoke(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
            bridge = await resolve() if resolve is not None else self
            return await bridge.call_tool(tool_name, arguments)

        return invoke


def _call_error(error: Any) -> BridgeCallError:
    if isinstance(error, dict):
        return BridgeCallError(str(error.get("message", error)), error.get("code"))
    return BridgeCallError(str(error))
