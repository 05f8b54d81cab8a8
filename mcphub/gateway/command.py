"""External command invocation for CLI-backed hub tools."""

import asyncio
import logging
import subprocess
import time
from pathlib import Path
from typing import Any

from mcphub.gateway.constants import (
    BACKLOG_MARKER_DIR,
    BACKLOG_PROGRAM,
    DEFAULT_INIT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_WRITE_TIMEOUT,
)
from mcphub.gateway.errors import ProjectNotInitializedError

_command_log = logging.getLogger("mcphub.gateway.command")

TIMEOUT_CLASSES = ("read", "write", "init")


def escape(value: str) -> str:
    """Quote a user-supplied value for the shell command line.

    Only embedded double quotes are escaped. ``$``, backticks and backslashes
    are passed through to the shell unchanged.
    """
    return '"' + str(value).replace('"', '\\"') + '"'


class CommandAdapter:
    """Runs one CLI invocation per tool call inside a project directory."""

    def __init__(
        self,
        program: str = BACKLOG_PROGRAM,
        timeouts: dict[str, float] | None = None,
        marker_dir: str = BACKLOG_MARKER_DIR,
    ) -> None:
        """Initialize the adapter.

        Args:
            program: Executable placed at the head of every command line
            timeouts: Seconds allowed per timeout class (``read``, ``write``, ``init``)
            marker_dir: Directory whose presence marks an initialized project
        """
        self.program = program
        self.timeouts = {
            "read": DEFAULT_READ_TIMEOUT,
            "write": DEFAULT_WRITE_TIMEOUT,
            "init": DEFAULT_INIT_TIMEOUT,
        }
        if timeouts:
            unknown = sorted(set(timeouts) - set(TIMEOUT_CLASSES))
            if unknown:
                raise ValueError(f"Unknown timeout class: {', '.join(unknown)}")
            self.timeouts.update(timeouts)
        self.marker_dir = marker_dir

    def build_command(self, tokens: list[str]) -> str:
        return " ".join([self.program, *tokens])

    def check_initialized(self, cwd: str) -> None:
        """Raise :class:`ProjectNotInitializedError` when ``cwd`` has no marker directory."""
        if not (Path(cwd) / self.marker_dir).exists():
            raise ProjectNotInitializedError(cwd)

    async def invoke(
        self,
        cwd: str,
        tokens: list[str],
        timeout_class: str = "read",
        requires_init: bool = True,
    ) -> dict[str, Any]:
        """Run ``program tokens...`` through the shell in ``cwd``.

        Returns ``{"stdout", "stderr"}`` on exit status 0. Every failure
        (missing project, spawn error, non-zero exit, timeout) is returned as
        ``{"error", "error_code"}`` instead of raised.
        """
        if timeout_class not in TIMEOUT_CLASSES:
            raise ValueError(f"Unknown timeout class: {timeout_class}")

        if requires_init:
            try:
                self.check_initialized(cwd)
            except ProjectNotInitializedError as e:
                return {"error": e.message, "error_code": e.code}

        command = self.build_command(tokens)
        timeout = self.timeouts[timeout_class]
        started = time.perf_counter()
        _command_log.debug("command_start cwd=%s command=%s timeout=%s", cwd, command, timeout)
        try:
            completed = await asyncio.to_thread(
                subprocess.run,
                command,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            _command_log.warning(
                "command_timeout cwd=%s command=%s timeout=%s",
                cwd,
                command,
                timeout,
                extra={"command": command, "cwd": cwd},
            )
            return {
                "error": f"Command timed out after {timeout:g}s: {command}",
                "error_code": "COMMAND_TIMEOUT",
            }
        except OSError as e:
            _command_log.warning("command_spawn_failed cwd=%s command=%s error=%s", cwd, command, e)
            return {"error": f"Command failed to start: {e}", "error_code": "COMMAND_FAILED"}

        elapsed_ms = (time.perf_counter() - started) * 1000
        if completed.stderr:
            _command_log.info(
                "command_stderr command=%s stderr=%s", command, completed.stderr.strip()
            )

        if completed.returncode != 0:
            _command_log.warning(
                "command_failed command=%s returncode=%s elapsed_ms=%.1f",
                command,
                completed.returncode,
                elapsed_ms,
                extra={"command": command, "cwd": cwd, "returncode": completed.returncode},
            )
            detail = (completed.stderr or completed.stdout).strip()
            message = f"Command failed: {command}"
            if detail:
                message += f"\n{detail}"
            return {"error": message, "error_code": "COMMAND_FAILED"}

        _command_log.debug("command_done command=%s elapsed_ms=%.1f", command, elapsed_ms)
        return {"stdout": completed.stdout, "stderr": completed.stderr}
