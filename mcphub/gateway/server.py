"""MCP Hub gateway: JSON-RPC dispatch, streamable HTTP app and stdio runner.

The gateway exposes two kinds of tools behind one MCP endpoint per client
session:

- Backlog tools that run the ``backlog`` CLI in the session's working directory
- Proxy tools for every tool declared by a configured stdio child process
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server

from mcphub.gateway.bridge_pool import BridgePool
from mcphub.gateway.command import CommandAdapter
from mcphub.gateway.config import HubConfig, cors_origin_rules
from mcphub.gateway.constants import (
    BACKLOG_SEGMENT,
    HUB_SEGMENT,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    SERVER_NAME,
    SERVER_VERSION,
    SESSION_ERROR,
    SESSION_HEADER,
    SESSION_NOT_FOUND,
    SESSION_SWEEP_INTERVAL,
)
from mcphub.gateway.errors import (
    BridgeError,
    ConfigError,
    HubError,
    SessionNotFoundError,
    SessionStateError,
)
from mcphub.gateway.paths import PathResolver
from mcphub.gateway.resources import list_workflow_resources, read_workflow_resource
from mcphub.gateway.session import Session, SessionRegistry, SessionState
from mcphub.gateway.session_state import SessionStateStore
from mcphub.gateway.tools.backlog_tools import BacklogTools
from mcphub.gateway.toolset import ToolContext, ToolSet

_gateway_log = logging.getLogger("mcphub.gateway")

RpcHandler = Callable[[Any, dict[str, Any], Session], Awaitable[dict[str, Any]]]


class HubGateway:
    """Session-aware MCP gateway over backlog tools and stdio bridges."""

    def __init__(
        self,
        config: HubConfig | None = None,
        adapter: CommandAdapter | None = None,
        pool: BridgePool | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Hub configuration (defaults to :meth:`HubConfig.from_env`)
            adapter: Command adapter for backlog tools
            pool: Bridge pool for child tool providers
        """
        self.config = config or HubConfig.from_env()
        self.resolver = PathResolver(self.config.host_root, self.config.container_root)
        self.state_store = SessionStateStore(self.resolver, self.config.default_project_path)
        self.adapter = adapter or CommandAdapter(
            self.config.backlog_program,
            {
                "read": self.config.read_timeout,
                "write": self.config.write_timeout,
                "init": self.config.init_timeout,
            },
        )
        self.backlog_tools = BacklogTools(self.adapter, self.state_store)
        self.pool = pool or BridgePool(
            self.config.bridges,
            policy=self.config.bridge_policy,
            request_timeout=self.config.bridge_request_timeout,
        )
        self.registry = SessionRegistry(
            self.state_store,
            self.build_endpoint,
            pool=self.pool,
            idle_timeout=self.config.session_idle_timeout,
        )
        self._rpc_handlers: dict[str, RpcHandler] = {
            "ping": self._rpc_ping,
            "tools/list": self._rpc_tools_list,
            "tools/call": self._rpc_tools_call,
            "resources/list": self._rpc_resources_list,
            "resources/read": self._rpc_resources_read,
        }

    @property
    def segments(self) -> list[str]:
        """Enabled tool segments; the merged ``hub`` segment is always available."""
        return self.config.segments

    def has_segment(self, segment: str) -> bool:
        return segment == HUB_SEGMENT or segment in self.segments

    # ------------------------------------------------------------------
    # Endpoint construction
    # ------------------------------------------------------------------

    async def build_endpoint(self, session: Session) -> ToolSet:
        """Build the tool table a new session sees.

        A segment session gets that segment's tools. A ``hub`` session gets
        every enabled segment merged; a bridge that cannot start is skipped
        there instead of failing the handshake.
        """
        if session.segment == HUB_SEGMENT:
            tools = ToolSet()
            for segment in self.segments:
                try:
                    tools.merge(await self._segment_tools(session, segment))
                except BridgeError as e:
                    _gateway_log.warning(
                        "segment_unavailable session_id=%s segment=%s error=%s",
                        session.session_id,
                        segment,
                        e,
                    )
            return tools
        if session.segment not in self.segments:
            raise SessionNotFoundError(session.session_id)
        return await self._segment_tools(session, session.segment)

    async def _segment_tools(self, session: Session, segment: str) -> ToolSet:
        if segment == BACKLOG_SEGMENT:
            return self.backlog_tools.tool_set()

        spec = self.pool.spec(segment)
        if spec.scope == "session":
            bridge = self.pool.create_session_bridge(segment)
            session.owned_bridges.append(bridge)
            return await bridge.as_tool_set()

        bridge = await self.pool.acquire(segment)
        session.shared_bridges.append(segment)

        async def resolve() -> Any:
            return await self.pool.get(segment)

        return await bridge.as_tool_set(resolve)

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------

    async def handle_message(
        self,
        session_id: str | None,
        body: Any,
        segment: str = HUB_SEGMENT,
        initial_path: str | None = None,
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Handle one JSON-RPC message for ``session_id`` on ``segment``.

        Returns the reply (``None`` for notifications) and the session id the
        reply belongs to.

        Raises:
            SessionStateError: missing session id, or a second handshake on a live session
            SessionNotFoundError: unknown, closed or inactive session id
            BridgeError: the bridge behind a segment session could not start
        """
        if not isinstance(body, dict):
            return _rpc_error(None, INVALID_REQUEST, "Invalid request payload"), session_id
        if body.get("jsonrpc") != "2.0":
            return _rpc_error(body.get("id"), INVALID_REQUEST, "Invalid MCP protocol message"), session_id

        method = body.get("method")
        request_id = body.get("id")
        if not isinstance(method, str) or method == "":
            return _rpc_error(request_id, INVALID_REQUEST, "Invalid Request: missing method"), session_id

        if method == "initialize":
            return await self._initialize(session_id, request_id, segment, initial_path)

        if not session_id:
            raise SessionStateError("Bad Request: Session ID required for non-initialize requests")
        session = self.registry.get_active(session_id, segment)

        if "id" not in body:
            _gateway_log.debug("notification session_id=%s method=%s", session_id, method)
            return None, session_id

        handler = self._rpc_handlers.get(method)
        if handler is None:
            return _rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}"), session_id

        params = body.get("params")
        params_dict: dict[str, Any] = params if isinstance(params, dict) else {}
        return await self._run_tracked(session, request_id, handler(request_id, params_dict, session)), session_id

    async def _initialize(
        self, session_id: str | None, request_id: Any, segment: str, initial_path: str | None
    ) -> tuple[dict[str, Any], str]:
        existing = self.registry.get(session_id)
        if existing is not None and existing.state is not SessionState.CLOSED:
            raise SessionStateError(f"Session {session_id} is already initialized")
        if not self.has_segment(segment):
            raise SessionNotFoundError(session_id)

        session = await self.registry.open(segment, initial_path)
        capabilities: dict[str, Any] = {"tools": {"listChanged": False}}
        if self.serves_resources(session):
            capabilities["resources"] = {"subscribe": False, "listChanged": False}
        result = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": capabilities,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }
        return {"jsonrpc": "2.0", "id": request_id, "result": result}, session.session_id

    async def _run_tracked(
        self, session: Session, request_id: Any, call: Awaitable[dict[str, Any]]
    ) -> dict[str, Any]:
        """Run a request as an in-flight task that closing the session cancels."""

        async def runner() -> dict[str, Any]:
            async with self.registry.track(session):
                return await call

        task = asyncio.create_task(runner())
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            return _rpc_error(request_id, SESSION_ERROR, "Session closed while the request was in flight")
        return task.result()

    async def _rpc_ping(self, request_id: Any, params: dict[str, Any], session: Session) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": {}}

    async def _rpc_tools_list(
        self, request_id: Any, params: dict[str, Any], session: Session
    ) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": {"tools": session.endpoint.to_payload()}}

    async def _rpc_tools_call(
        self, request_id: Any, params: dict[str, Any], session: Session
    ) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            return _rpc_error(request_id, INVALID_PARAMS, "Missing required param: name")
        arguments = params.get("arguments")
        result = await self.call_tool(session, name, arguments if isinstance(arguments, dict) else {})
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def _rpc_resources_list(
        self, request_id: Any, params: dict[str, Any], session: Session
    ) -> dict[str, Any]:
        resources = list_workflow_resources() if self.serves_resources(session) else []
        return {"jsonrpc": "2.0", "id": request_id, "result": {"resources": resources}}

    async def _rpc_resources_read(
        self, request_id: Any, params: dict[str, Any], session: Session
    ) -> dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            return _rpc_error(request_id, INVALID_PARAMS, "Missing required param: uri")
        if not self.serves_resources(session):
            return _rpc_error(request_id, INVALID_PARAMS, f"Resource not found: {uri}")
        try:
            payload = read_workflow_resource(uri)
        except ValueError as e:
            return _rpc_error(request_id, INVALID_PARAMS, str(e))
        return {"jsonrpc": "2.0", "id": request_id, "result": payload}

    def serves_resources(self, session: Session) -> bool:
        return BACKLOG_SEGMENT in self.segments and session.segment in (HUB_SEGMENT, BACKLOG_SEGMENT)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def call_tool(self, session: Session, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke a tool on the session's endpoint and return a ``CallToolResult`` dict.

        Tool failures never escape: they become results with ``isError`` set.
        """
        _gateway_log.info(
            "tool_call tool=%s session_id=%s",
            name,
            session.session_id,
            extra={"tool": name, "session_id": session.session_id},
        )
        entry = session.endpoint.get(name)
        if entry is None:
            return _error_response(
                code="UNKNOWN_TOOL",
                message=f"Unknown tool: {name}",
                tool=name,
                extra={"available_tools": session.endpoint.names()[:10]},
            )
        try:
            result = await entry.invoke(arguments, ToolContext(session.session_id, session.segment))
        except Exception as e:
            return _handle_tool_exception(name, session.session_id, e)
        return _serialize_tool_result(result)

    # ------------------------------------------------------------------
    # Lifecycle and reporting
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        await self.pool.start_eager()

    async def shutdown(self) -> None:
        await self.registry.close_all()
        await self.pool.shutdown_all()

    def health(self) -> dict[str, Any]:
        sessions = self.registry.counts_by_segment()
        bridges = self.pool.status()
        report: dict[str, Any] = {}
        for segment in self.segments:
            if segment == BACKLOG_SEGMENT:
                tool_count = len(self.backlog_tools.tool_set())
                entry: dict[str, Any] = {}
            else:
                bridge = self.pool.bridge(segment)
                declared = bridge.declared_tools if bridge is not None else None
                tool_count = len(declared) if declared is not None else 0
                entry = dict(bridges.get(segment, {}))
            entry.update(
                {
                    "enabled": True,
                    "activeSessions": sessions.get(segment, 0),
                    "tools": tool_count,
                    "url": f"/{segment}/mcp",
                }
            )
            report[segment] = entry
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "status": "ok",
            "activeSessions": len(self.registry),
            "hubSessions": sessions.get(HUB_SEGMENT, 0),
            "segments": report,
        }


def _rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _error_response(
    *,
    code: str,
    message: str,
    tool: str,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "success": False,
        "error": message,
        "error_code": code,
        "tool": tool,
    }
    if extra:
        payload.update(extra)
    return _call_tool_result(payload, is_error=True)


def _call_tool_result(payload: Any, is_error: bool) -> dict[str, Any]:
    text = json.dumps(payload, ensure_ascii=False)
    result = types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


def _serialize_tool_result(result: Any) -> dict[str, Any]:
    """Wrap a tool's return value as a ``CallToolResult`` dict.

    Results that already carry a ``content`` list (bridged tools) pass through
    unchanged. A dict with an ``error`` key is flagged ``isError``.
    """
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return result
    is_error = isinstance(result, dict) and "error" in result
    return _call_tool_result(result, is_error=is_error)


def _handle_tool_exception(name: str, session_id: str, error: Exception) -> dict[str, Any]:
    if isinstance(error, KeyError):
        return _error_response(
            code="MISSING_ARGUMENT",
            message=f"Missing required argument: {error}",
            tool=name,
        )

    if isinstance(error, HubError):
        _gateway_log.warning(
            "tool_error tool=%s session_id=%s code=%s error=%s",
            name,
            session_id,
            error.code,
            error.message,
            extra={"tool": name, "session_id": session_id, "error": error.message},
        )
        extra: dict[str, Any] = {}
        remote_code = getattr(error, "remote_code", None)
        if remote_code is not None:
            extra["remote_code"] = remote_code
        return _error_response(code=error.code, message=error.message, tool=name, extra=extra)

    if isinstance(error, ValueError):
        return _error_response(
            code="INVALID_ARGUMENT",
            message=f"Invalid argument: {error}",
            tool=name,
        )

    _gateway_log.warning(
        "tool_error tool=%s session_id=%s error=%s",
        name,
        session_id,
        str(error),
        extra={"tool": name, "session_id": session_id, "error": str(error)},
    )
    return _error_response(
        code="EXECUTION_ERROR",
        message=str(error),
        tool=name,
        extra={"error_type": type(error).__name__},
    )


# ============================================================================
# HTTP Server Mode
# ============================================================================


def create_app(gateway: HubGateway) -> FastAPI:
    """Build the FastAPI app serving ``/mcp`` and ``/{segment}/mcp``."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await gateway.startup()
        reaper = asyncio.create_task(_reap_idle_sessions(gateway))
        try:
            yield
        finally:
            reaper.cancel()
            with suppress(asyncio.CancelledError):
                await reaper
            await gateway.shutdown()

    app = FastAPI(title="MCP Hub", version=SERVER_VERSION, lifespan=lifespan)
    app.state.gateway = gateway
    # Wildcard origins such as http://localhost:* only match through the regex.
    exact_origins, origin_regex = cors_origin_rules(gateway.config.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=exact_origins,
        allow_origin_regex=origin_regex,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check with per-segment session and tool counts."""
        return gateway.health()

    @app.get("/")
    async def index() -> dict[str, Any]:
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "transport": "streamable-http",
            "endpoints": {
                "mcp": "/mcp",
                "health": "/health",
                "segments": {segment: f"/{segment}/mcp" for segment in gateway.segments},
            },
        }

    @app.post("/mcp")
    async def hub_endpoint(request: Request) -> Response:
        """MCP endpoint merging every enabled segment."""
        return await _handle_post(gateway, request, HUB_SEGMENT)

    @app.delete("/mcp")
    async def hub_close(request: Request) -> Response:
        return await _handle_delete(gateway, request, HUB_SEGMENT)

    @app.post("/{segment}/mcp")
    async def segment_endpoint(segment: str, request: Request) -> Response:
        """MCP endpoint for a single segment."""
        if not gateway.has_segment(segment):
            return JSONResponse({"error": f"Unknown segment: {segment}"}, status_code=404)
        return await _handle_post(gateway, request, segment)

    @app.delete("/{segment}/mcp")
    async def segment_close(segment: str, request: Request) -> Response:
        if not gateway.has_segment(segment):
            return JSONResponse({"error": f"Unknown segment: {segment}"}, status_code=404)
        return await _handle_delete(gateway, request, segment)

    return app


async def _handle_post(gateway: HubGateway, request: Request, segment: str) -> Response:
    session_id = request.headers.get(SESSION_HEADER)
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(_rpc_error(None, PARSE_ERROR, "Parse error"), status_code=400)

    if isinstance(body, list):
        return JSONResponse(
            _rpc_error(None, INVALID_REQUEST, "Batch requests are not supported"), status_code=400
        )

    request_id = body.get("id") if isinstance(body, dict) else None
    try:
        payload, reply_session_id = await gateway.handle_message(
            session_id, body, segment, initial_path=request.query_params.get("path")
        )
    except SessionStateError as e:
        return JSONResponse(_rpc_error(request_id, SESSION_ERROR, e.message), status_code=400)
    except SessionNotFoundError:
        return JSONResponse(
            _rpc_error(request_id, SESSION_NOT_FOUND, "Session not found"), status_code=404
        )
    except HubError as e:
        _gateway_log.warning(
            "request_failed segment=%s code=%s error=%s",
            segment,
            e.code,
            e.message,
            extra={"segment": segment, "error": e.message},
        )
        status = 503 if isinstance(e, BridgeError) else 500
        return JSONResponse(
            _rpc_error(request_id, SESSION_ERROR, e.message),
            status_code=status,
        )

    headers = {SESSION_HEADER: reply_session_id} if reply_session_id else {}
    if payload is None:
        return Response(status_code=202, headers=headers)
    return JSONResponse(payload, headers=headers)


async def _handle_delete(gateway: HubGateway, request: Request, segment: str) -> Response:
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return JSONResponse(
            _rpc_error(None, SESSION_ERROR, "Bad Request: Session ID required"), status_code=400
        )
    session = gateway.registry.get(session_id)
    if session is None or session.segment != segment:
        return JSONResponse(_rpc_error(None, SESSION_NOT_FOUND, "Session not found"), status_code=404)
    closed = await gateway.registry.close(session_id, reason="client")
    if not closed:
        return JSONResponse(_rpc_error(None, SESSION_NOT_FOUND, "Session not found"), status_code=404)
    return JSONResponse({"status": "closed", "session_id": session_id})


async def _reap_idle_sessions(gateway: HubGateway, interval: float = SESSION_SWEEP_INTERVAL) -> None:
    while True:
        await asyncio.sleep(interval)
        closed = await gateway.registry.sweep_idle()
        if closed:
            _gateway_log.info("idle_sessions_closed count=%s", len(closed))


def main_http(gateway: HubGateway, host: str, port: int) -> None:
    """Run the gateway as a streamable HTTP server."""
    app = create_app(gateway)
    print(f"Starting MCP Hub HTTP server on {host}:{port}", file=sys.stderr)
    for segment in gateway.segments:
        print(f"  segment {segment}: http://{host}:{port}/{segment}/mcp", file=sys.stderr)
    uvicorn.run(app, host=host, port=port, log_level="info")


# ============================================================================
# Stdio Server Mode
# ============================================================================


def build_stdio_server(gateway: HubGateway, session: Session) -> Server:
    """MCP SDK server bound to one hub session."""
    server: Server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return [
            types.Tool(name=entry.name, description=entry.description, inputSchema=entry.input_schema)
            for entry in session.endpoint
        ]

    @server.call_tool(validate_input=False)
    async def handle_call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        async with gateway.registry.track(session):
            result = await gateway.call_tool(session, name, arguments)
        return types.CallToolResult.model_validate(result)

    if gateway.serves_resources(session):

        @server.list_resources()
        async def handle_list_resources() -> list[types.Resource]:
            return [types.Resource.model_validate(item) for item in list_workflow_resources()]

        @server.read_resource()
        async def handle_read_resource(uri: Any) -> list[ReadResourceContents]:
            payload = read_workflow_resource(str(uri))
            return [
                ReadResourceContents(content=item["text"], mime_type=item["mimeType"])
                for item in payload["contents"]
            ]

    return server


async def main_stdio(gateway: HubGateway, segment: str = HUB_SEGMENT) -> None:
    """Serve one session over this process's stdin/stdout until stdin closes."""
    await gateway.startup()
    session = await gateway.registry.open(segment)
    server = build_stdio_server(gateway, session)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await gateway.registry.close(session.session_id, reason="stdin closed")
        await gateway.shutdown()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="MCP Hub gateway")
    parser.add_argument(
        "--mode",
        choices=["stdio", "http"],
        default="http",
        help="Server mode: http (default, multi-session) or stdio (single session)",
    )
    parser.add_argument("--host", default="0.0.0.0", help="HTTP server host (http mode only)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8081")),
        help="HTTP server port (http mode only)",
    )
    parser.add_argument(
        "--segment",
        default=HUB_SEGMENT,
        help="Segment served in stdio mode (default: all segments merged)",
    )
    parser.add_argument("--bridges-config", help="JSON bridge definitions (or MCP_CONFIG_PATH)")
    parser.add_argument("--log-level", default=os.getenv("HUB_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    load_dotenv()
    environ = dict(os.environ)
    if args.bridges_config:
        environ["MCP_CONFIG_PATH"] = args.bridges_config
    try:
        config = HubConfig.from_env(environ, load_env_file=False)
    except ConfigError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        sys.exit(1)

    gateway = HubGateway(config)
    if args.mode == "stdio":
        if not gateway.has_segment(args.segment):
            print(f"ERROR: unknown segment '{args.segment}'", file=sys.stderr)
            sys.exit(1)
        asyncio.run(main_stdio(gateway, args.segment))
    else:
        main_http(gateway, args.host, args.port)


if __name__ == "__main__":
    main()
