"""Configuration loading for the MCP Hub gateway."""

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from dotenv import load_dotenv

from mcphub.gateway.constants import (
    BACKLOG_PROGRAM,
    BACKLOG_SEGMENT,
    DEFAULT_BRIDGE_TIMEOUT,
    DEFAULT_CONTAINER_ROOT,
    DEFAULT_INIT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_SESSION_IDLE_TIMEOUT,
    DEFAULT_WRITE_TIMEOUT,
)
from mcphub.gateway.errors import ConfigError

_ENV_REF = re.compile(r"\$\{(\w+)\}")
_BRIDGE_SCOPES = ("shared", "session")
BRIDGE_POLICIES = ("refcount", "keep")


@dataclass(frozen=True)
class BridgeSpec:
    """How to launch one child tool-provider process."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    scope: str = "shared"
    eager: bool = False
    request_timeout: float | None = None


@dataclass
class HubConfig:
    """Runtime configuration consumed by the gateway core."""

    host_root: str = ""
    container_root: str = DEFAULT_CONTAINER_ROOT
    default_project_path: str = ""
    backlog_program: str = BACKLOG_PROGRAM
    backlog_enabled: bool = True
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    init_timeout: float = DEFAULT_INIT_TIMEOUT
    bridge_request_timeout: float | None = DEFAULT_BRIDGE_TIMEOUT
    session_idle_timeout: float | None = DEFAULT_SESSION_IDLE_TIMEOUT
    bridge_policy: str = "refcount"
    bridges: dict[str, BridgeSpec] = field(default_factory=dict)
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:*", "http://127.0.0.1:*", "https://localhost:*"]
    )

    def __post_init__(self) -> None:
        if not self.default_project_path:
            self.default_project_path = self.host_root or os.getcwd()
        if self.bridge_policy not in BRIDGE_POLICIES:
            raise ConfigError(
                f"Unknown bridge policy: {self.bridge_policy} (expected one of {BRIDGE_POLICIES})"
            )

    @property
    def segments(self) -> list[str]:
        """Names of the enabled tool segments, backlog first."""
        names = [BACKLOG_SEGMENT] if self.backlog_enabled else []
        names.extend(self.bridges)
        return names

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, load_env_file: bool = True
    ) -> "HubConfig":
        """Build configuration from environment variables (and a ``.env`` file)."""
        if load_env_file:
            load_dotenv()
        env = os.environ if environ is None else environ

        bridges: dict[str, BridgeSpec] = {}
        config_path = env.get("MCP_CONFIG_PATH")
        if config_path:
            bridges = load_bridge_specs(config_path, env)
        bridges = {name: spec for name, spec in bridges.items() if segment_enabled(name, env)}

        host_root = env.get("HOST_ROOT", "")
        return cls(
            host_root=host_root,
            container_root=env.get("CONTAINER_ROOT", DEFAULT_CONTAINER_ROOT),
            default_project_path=env.get("DEFAULT_PROJECT_PATH", host_root),
            backlog_program=env.get("BACKLOG_PROGRAM", BACKLOG_PROGRAM),
            backlog_enabled=segment_enabled(BACKLOG_SEGMENT, env),
            read_timeout=_env_float(env, "HUB_READ_TIMEOUT", DEFAULT_READ_TIMEOUT),
            write_timeout=_env_float(env, "HUB_WRITE_TIMEOUT", DEFAULT_WRITE_TIMEOUT),
            init_timeout=_env_float(env, "HUB_INIT_TIMEOUT", DEFAULT_INIT_TIMEOUT),
            bridge_request_timeout=_optional_timeout(
                _env_float(env, "HUB_BRIDGE_TIMEOUT", DEFAULT_BRIDGE_TIMEOUT)
            ),
            session_idle_timeout=_optional_timeout(
                _env_float(env, "HUB_SESSION_IDLE_TIMEOUT", DEFAULT_SESSION_IDLE_TIMEOUT)
            ),
            bridge_policy=env.get("HUB_BRIDGE_POLICY", "refcount"),
            bridges=bridges,
            cors_origins=_env_list(env, "HUB_CORS_ORIGINS")
            or ["http://localhost:*", "http://127.0.0.1:*", "https://localhost:*"],
        )


def segment_enabled(name: str, environ: Mapping[str, str]) -> bool:
    """A segment is enabled unless ``ENABLE_<NAME>`` is set to ``false``."""
    flag = "ENABLE_" + re.sub(r"\W", "_", name).upper()
    return environ.get(flag, "true").strip().lower() != "false"


def interpolate(value: str, environ: Mapping[str, str]) -> str:
    """Expand ``${VAR}`` references; unknown variables become empty strings."""
    return _ENV_REF.sub(lambda match: environ.get(match.group(1), ""), value)


def load_bridge_specs(path: str | Path, environ: Mapping[str, str] | None = None) -> dict[str, BridgeSpec]:
    """Load ``{"servers": {name: {...}}}`` bridge definitions from a JSON file."""
    env = os.environ if environ is None else environ
    config_file = Path(path)
    if not config_file.is_file():
        raise ConfigError(f"Config not found: {config_file}")

    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid bridge config {config_file}: {e}") from e

    servers = raw.get("servers") if isinstance(raw, dict) else None
    if not isinstance(servers, dict):
        raise ConfigError(f"Bridge config {config_file} must contain a 'servers' object")

    return {
        name: _parse_bridge_spec(name, cast(dict[str, Any], entry), env)
        for name, entry in cast(dict[str, Any], servers).items()
    }


def _parse_bridge_spec(name: str, entry: Any, environ: Mapping[str, str]) -> BridgeSpec:
    if not isinstance(entry, dict):
        raise ConfigError(f"Bridge '{name}' must be an object")

    command = entry.get("command")
    if not isinstance(command, str) or not command:
        raise ConfigError(f"Bridge '{name}' is missing 'command'")

    args = entry.get("args", [])
    if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
        raise ConfigError(f"Bridge '{name}': 'args' must be a list of strings")

    env_entry = entry.get("env", {})
    if not isinstance(env_entry, dict):
        raise ConfigError(f"Bridge '{name}': 'env' must be an object")

    scope = entry.get("scope", "shared")
    if scope not in _BRIDGE_SCOPES:
        raise ConfigError(f"Bridge '{name}': unknown scope '{scope}'")

    cwd = entry.get("cwd")
    timeout = entry.get("requestTimeout", entry.get("request_timeout"))
    return BridgeSpec(
        name=name,
        command=interpolate(command, environ),
        args=[interpolate(arg, environ) for arg in args],
        env={str(key): interpolate(str(value), environ) for key, value in env_entry.items()},
        cwd=interpolate(cwd, environ) if isinstance(cwd, str) else None,
        scope=scope,
        eager=bool(entry.get("eager", False)),
        request_timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
    )


def cors_origin_rules(origins: list[str]) -> tuple[list[str], str | None]:
    """Split CORS origins into exact matches and one regex for ``*`` wildcard patterns."""
    exact = [origin for origin in origins if "*" not in origin or origin == "*"]
    patterns = [
        "(?:" + re.escape(origin).replace(r"\*", "[^/]*") + ")"
        for origin in origins
        if "*" in origin and origin != "*"
    ]
    return exact, "|".join(patterns) or None


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    value = environ.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {value!r}") from e


def _env_list(environ: Mapping[str, str], key: str) -> list[str]:
    value = environ.get(key, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional_timeout(value: float) -> float | None:
    return value if value > 0 else None
