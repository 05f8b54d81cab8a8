"""Tests for MCP hub gateway JSON-RPC dispatch."""

import asyncio
import json
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from mcp import types

from mcphub.gateway.config import BridgeSpec, HubConfig
from mcphub.gateway.errors import SessionNotFoundError, SessionStateError
from mcphub.gateway.server import HubGateway, build_stdio_server


def _rpc(method: str, params: dict[str, Any] | None = None, request_id: int | None = 1) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "params": params or {}}
    if request_id is not None:
        message["id"] = request_id
    return message


def _payload(result: dict[str, Any]) -> dict[str, Any]:
    return json.loads(result["content"][0]["text"])


async def _initialize(gateway: HubGateway, segment: str = "hub", path: str | None = None) -> str:
    reply, session_id = await gateway.handle_message(None, _rpc("initialize"), segment, path)
    assert reply is not None and "result" in reply
    assert session_id is not None
    return session_id


async def _call(gateway: HubGateway, session_id: str, name: str, arguments: dict[str, Any], segment: str = "hub") -> dict[str, Any]:
    reply, _ = await gateway.handle_message(
        session_id, _rpc("tools/call", {"name": name, "arguments": arguments}), segment
    )
    assert reply is not None
    return reply["result"]


class TestHandshake:
    def test_initialize_creates_session(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)
        reply, session_id = asyncio.run(gateway.handle_message(None, _rpc("initialize"), "backlog"))

        assert reply["result"]["protocolVersion"] == "2024-11-05"
        assert reply["result"]["serverInfo"]["name"] == "mcp-hub"
        assert "resources" in reply["result"]["capabilities"]
        assert gateway.registry.get_active(session_id, "backlog").segment == "backlog"

    def test_second_handshake_on_live_session_rejected(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> None:
            session_id = await _initialize(gateway)
            with pytest.raises(SessionStateError):
                await gateway.handle_message(session_id, _rpc("initialize"), "hub")

        asyncio.run(scenario())
        assert len(gateway.registry) == 1

    def test_initialize_with_stale_id_opens_new_session(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> tuple[str, str | None]:
            old_id = await _initialize(gateway)
            await gateway.registry.close(old_id)
            _, new_id = await gateway.handle_message(old_id, _rpc("initialize"), "hub")
            return old_id, new_id

        old_id, new_id = asyncio.run(scenario())
        assert new_id is not None and new_id != old_id

    def test_request_without_session_id(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)
        with pytest.raises(SessionStateError) as exc_info:
            asyncio.run(gateway.handle_message(None, _rpc("tools/list"), "hub"))
        assert "Session ID required" in exc_info.value.message

    def test_request_with_unknown_session_id(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)
        with pytest.raises(SessionNotFoundError):
            asyncio.run(gateway.handle_message("not-a-session", _rpc("tools/list"), "hub"))

    def test_session_bound_to_its_segment(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> None:
            session_id = await _initialize(gateway, "backlog")
            with pytest.raises(SessionNotFoundError):
                await gateway.handle_message(session_id, _rpc("tools/list"), "hub")

        asyncio.run(scenario())


class TestDispatch:
    def test_notification_has_no_reply(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> Any:
            session_id = await _initialize(gateway)
            return await gateway.handle_message(
                session_id, _rpc("notifications/initialized", request_id=None), "hub"
            )

        reply, session_id = asyncio.run(scenario())
        assert reply is None
        assert session_id is not None

    def test_unknown_method(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> Any:
            session_id = await _initialize(gateway)
            reply, _ = await gateway.handle_message(session_id, _rpc("prompts/list", request_id=4), "hub")
            return reply

        reply = asyncio.run(scenario())
        assert reply == {
            "jsonrpc": "2.0",
            "id": 4,
            "error": {"code": -32601, "message": "Method not found: prompts/list"},
        }

    def test_invalid_envelope(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)
        reply, _ = asyncio.run(gateway.handle_message(None, {"method": "initialize", "id": 1}, "hub"))
        assert reply["error"]["code"] == -32600

    def test_ping(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> Any:
            session_id = await _initialize(gateway)
            reply, _ = await gateway.handle_message(session_id, _rpc("ping", request_id=9), "hub")
            return reply

        assert asyncio.run(scenario()) == {"jsonrpc": "2.0", "id": 9, "result": {}}

    def test_workflow_resources(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> tuple[Any, Any, Any]:
            session_id = await _initialize(gateway, "backlog")
            listed, _ = await gateway.handle_message(session_id, _rpc("resources/list"), "backlog")
            read, _ = await gateway.handle_message(
                session_id, _rpc("resources/read", {"uri": "backlog://workflow/overview"}), "backlog"
            )
            missing, _ = await gateway.handle_message(
                session_id, _rpc("resources/read", {"uri": "backlog://nope"}), "backlog"
            )
            return listed, read, missing

        listed, read, missing = asyncio.run(scenario())
        assert len(listed["result"]["resources"]) == 4
        assert read["result"]["contents"][0]["text"].startswith("# Backlog Workflow Overview")
        assert missing["error"]["code"] == -32602


class TestToolCalls:
    def test_backlog_scenario_with_sticky_path(self, hub_config: HubConfig, tmp_path: Path) -> None:
        project = tmp_path / "proj"
        project.mkdir()
        gateway = HubGateway(hub_config)

        async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
            session_id = await _initialize(gateway, "backlog")
            init = await _call(gateway, session_id, "init-project", {"path": str(project)}, "backlog")
            listed = await _call(gateway, session_id, "list-tasks", {}, "backlog")
            return init, listed

        init, listed = asyncio.run(scenario())
        assert init["isError"] is False
        assert _payload(init)["success"] is True
        assert _payload(listed) == {"tasks": "tasks list --plain\n"}

    def test_uninitialized_project_is_error_result(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> dict[str, Any]:
            session_id = await _initialize(gateway)
            return await _call(gateway, session_id, "list-tasks", {})

        result = asyncio.run(scenario())
        assert result["isError"] is True
        assert "init-project" in _payload(result)["error"]

    def test_unknown_tool(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> dict[str, Any]:
            session_id = await _initialize(gateway)
            return await _call(gateway, session_id, "does-not-exist", {})

        result = asyncio.run(scenario())
        assert result["isError"] is True
        assert _payload(result)["error_code"] == "UNKNOWN_TOOL"
        assert set(result) == {"content", "isError"}

    def test_missing_and_invalid_arguments(self, hub_config: HubConfig, tmp_path: Path) -> None:
        (tmp_path / "backlog").mkdir()
        gateway = HubGateway(hub_config)

        async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
            session_id = await _initialize(gateway)
            missing = await _call(gateway, session_id, "view-task", {})
            invalid = await _call(gateway, session_id, "list-tasks", {"priority": "urgent"})
            return missing, invalid

        missing, invalid = asyncio.run(scenario())
        assert _payload(missing)["error_code"] == "MISSING_ARGUMENT"
        assert _payload(invalid)["error_code"] == "INVALID_ARGUMENT"

    def test_missing_tool_name(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> Any:
            session_id = await _initialize(gateway)
            reply, _ = await gateway.handle_message(session_id, _rpc("tools/call", {}), "hub")
            return reply

        assert asyncio.run(scenario())["error"]["code"] == -32602


class TestBridgedTools:
    @pytest.fixture
    def bridged_config(
        self, hub_config: HubConfig, provider_spec: Callable[..., BridgeSpec]
    ) -> HubConfig:
        return replace(hub_config, bridges={"fake": provider_spec()}, bridge_request_timeout=10.0)

    def test_hub_segment_merges_backlog_and_bridge_tools(self, bridged_config: HubConfig) -> None:
        gateway = HubGateway(bridged_config)

        async def scenario() -> tuple[list[str], dict[str, Any], dict[str, Any]]:
            try:
                session_id = await _initialize(gateway)
                listed, _ = await gateway.handle_message(session_id, _rpc("tools/list"), "hub")
                echo = await _call(gateway, session_id, "echo", {"text": "hello"})
                failed = await _call(gateway, session_id, "fail", {})
                return [tool["name"] for tool in listed["result"]["tools"]], echo, failed
            finally:
                await gateway.shutdown()

        names, echo, failed = asyncio.run(scenario())
        assert "list-tasks" in names and "echo" in names
        assert names.index("list-tasks") < names.index("echo")
        assert echo == {"content": [{"type": "text", "text": "hello"}]}
        assert failed["isError"] is True
        assert _payload(failed)["error_code"] == "REMOTE_ERROR"
        assert _payload(failed)["remote_code"] == -32000

    def test_bridge_segment_only_sees_its_tools(self, bridged_config: HubConfig) -> None:
        gateway = HubGateway(bridged_config)

        async def scenario() -> list[str]:
            try:
                session_id = await _initialize(gateway, "fake")
                listed, _ = await gateway.handle_message(session_id, _rpc("tools/list"), "fake")
                return [tool["name"] for tool in listed["result"]["tools"]]
            finally:
                await gateway.shutdown()

        assert asyncio.run(scenario()) == ["echo", "slow_echo", "pid", "fail", "crash", "noisy"]

    def test_closing_session_cancels_in_flight_call(self, bridged_config: HubConfig) -> None:
        gateway = HubGateway(bridged_config)

        async def scenario() -> Any:
            try:
                session_id = await _initialize(gateway, "fake")
                call = asyncio.create_task(
                    gateway.handle_message(
                        session_id,
                        _rpc("tools/call", {"name": "slow_echo", "arguments": {"delay": 5}}),
                        "fake",
                    )
                )
                while not gateway.registry.get(session_id).inflight:
                    await asyncio.sleep(0.01)
                await gateway.registry.close(session_id)
                reply, _ = await asyncio.wait_for(call, 2)
                return reply
            finally:
                await gateway.shutdown()

        reply = asyncio.run(scenario())
        assert reply["error"]["code"] == -32000

    def test_shared_bridge_released_when_last_session_closes(self, bridged_config: HubConfig) -> None:
        gateway = HubGateway(bridged_config)

        async def scenario() -> tuple[int, int, Any]:
            try:
                first = await _initialize(gateway, "fake")
                second = await _initialize(gateway, "fake")
                count = gateway.pool.refcount("fake")
                await gateway.registry.close(first)
                after_one = gateway.pool.refcount("fake")
                await gateway.registry.close(second)
                return count, after_one, gateway.pool.bridge("fake")
            finally:
                await gateway.shutdown()

        count, after_one, bridge = asyncio.run(scenario())
        assert (count, after_one) == (2, 1)
        assert bridge is None

    def test_restart_after_child_crash(self, bridged_config: HubConfig) -> None:
        gateway = HubGateway(bridged_config)

        async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
            try:
                session_id = await _initialize(gateway, "fake")
                crashed = await _call(gateway, session_id, "crash", {}, "fake")
                recovered = await _call(gateway, session_id, "echo", {"text": "back"}, "fake")
                return crashed, recovered
            finally:
                await gateway.shutdown()

        crashed, recovered = asyncio.run(scenario())
        assert _payload(crashed)["error_code"] == "BRIDGE_UNAVAILABLE"
        assert recovered == {"content": [{"type": "text", "text": "back"}]}


class TestStdioServer:
    def test_registers_tool_and_resource_handlers(self, hub_config: HubConfig) -> None:
        gateway = HubGateway(hub_config)

        async def scenario() -> Any:
            session = await gateway.registry.open("backlog")
            return build_stdio_server(gateway, session)

        server = asyncio.run(scenario())
        assert types.ListToolsRequest in server.request_handlers
        assert types.CallToolRequest in server.request_handlers
        assert types.ReadResourceRequest in server.request_handlers

    def test_bridge_segment_serves_no_resources(
        self, hub_config: HubConfig, provider_spec: Callable[..., BridgeSpec]
    ) -> None:
        gateway = HubGateway(replace(hub_config, bridges={"fake": provider_spec()}))

        async def scenario() -> Any:
            try:
                session = await gateway.registry.open("fake")
                return build_stdio_server(gateway, session)
            finally:
                await gateway.shutdown()

        server = asyncio.run(scenario())
        assert types.ListToolsRequest in server.request_handlers
        assert types.ListResourcesRequest not in server.request_handlers
