"""Tests for backlog CLI invocation."""

import asyncio
import time
from pathlib import Path

import pytest

from mcphub.gateway.command import CommandAdapter, escape
from mcphub.gateway.errors import ProjectNotInitializedError


class TestEscape:
    def test_wraps_in_double_quotes(self) -> None:
        assert escape("hello world") == '"hello world"'

    def test_escapes_embedded_quotes(self) -> None:
        assert escape('say "hi"') == '"say \\"hi\\""'

    def test_other_metacharacters_pass_through(self) -> None:
        assert escape("$HOME `x`") == '"$HOME `x`"'


class TestCommandAdapter:
    def test_build_command_prefixes_program(self) -> None:
        adapter = CommandAdapter("backlog")
        assert adapter.build_command(["tasks", "list", "--plain"]) == "backlog tasks list --plain"

    def test_check_initialized_requires_marker(self, tmp_path: Path) -> None:
        adapter = CommandAdapter("backlog")
        with pytest.raises(ProjectNotInitializedError) as exc_info:
            adapter.check_initialized(str(tmp_path))
        assert "init-project" in exc_info.value.message
        assert str(tmp_path) in exc_info.value.message

        (tmp_path / "backlog").mkdir()
        adapter.check_initialized(str(tmp_path))

    def test_missing_marker_is_returned_not_raised(self, tmp_path: Path) -> None:
        adapter = CommandAdapter("backlog")
        outcome = asyncio.run(adapter.invoke(str(tmp_path), ["tasks", "list"]))
        assert outcome["error_code"] == "PROJECT_NOT_INITIALIZED"
        assert "init-project" in outcome["error"]

    def test_successful_invocation_returns_stdout(
        self, tmp_path: Path, fake_backlog_program: str
    ) -> None:
        (tmp_path / "backlog").mkdir()
        adapter = CommandAdapter(fake_backlog_program)
        outcome = asyncio.run(adapter.invoke(str(tmp_path), ["tasks", "list", "--plain"]))
        assert outcome == {"stdout": "tasks list --plain\n", "stderr": ""}

    def test_escaped_quote_survives_the_shell(self, tmp_path: Path) -> None:
        adapter = CommandAdapter("echo")
        outcome = asyncio.run(
            adapter.invoke(str(tmp_path), [escape('a "quoted" value')], requires_init=False)
        )
        assert outcome["stdout"] == 'a "quoted" value\n'

    def test_non_zero_exit_becomes_error(self, tmp_path: Path, fake_backlog_program: str) -> None:
        adapter = CommandAdapter(fake_backlog_program)
        outcome = asyncio.run(adapter.invoke(str(tmp_path), ["fail"], requires_init=False))
        assert outcome["error_code"] == "COMMAND_FAILED"
        assert "boom" in outcome["error"]
        assert "stdout" not in outcome

    def test_timeout_becomes_error(self, tmp_path: Path, fake_backlog_program: str) -> None:
        adapter = CommandAdapter(fake_backlog_program, timeouts={"read": 0.5})
        started = time.monotonic()
        outcome = asyncio.run(adapter.invoke(str(tmp_path), ["sleep", "5"], requires_init=False))
        assert outcome["error_code"] == "COMMAND_TIMEOUT"
        assert time.monotonic() - started < 4

    def test_timeout_classes(self) -> None:
        adapter = CommandAdapter("backlog", timeouts={"write": 30.0})
        assert adapter.timeouts == {"read": 10.0, "write": 30.0, "init": 25.0}

    def test_unknown_timeout_class_rejected(self, tmp_path: Path) -> None:
        adapter = CommandAdapter("backlog")
        with pytest.raises(ValueError):
            asyncio.run(adapter.invoke(str(tmp_path), [], timeout_class="forever"))

    def test_unknown_timeout_class_in_overrides(self) -> None:
        with pytest.raises(ValueError, match="forever"):
            CommandAdapter("backlog", timeouts={"read": 5.0, "forever": 1.0})

    def test_concurrent_invocations_do_not_serialize(
        self, tmp_path: Path, fake_backlog_program: str
    ) -> None:
        adapter = CommandAdapter(fake_backlog_program)

        async def run_both() -> list[dict]:
            return await asyncio.gather(
                adapter.invoke(str(tmp_path), ["sleep", "1"], requires_init=False),
                adapter.invoke(str(tmp_path), ["sleep", "1"], requires_init=False),
            )

        started = time.monotonic()
        outcomes = asyncio.run(run_both())
        assert all("error" not in outcome for outcome in outcomes)
        assert time.monotonic() - started < 1.9
