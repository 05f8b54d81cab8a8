"""Shared fixtures: the fake backlog CLI and the scripted tool provider."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from mcphub.gateway.config import BridgeSpec, HubConfig

TESTS_DIR = Path(__file__).resolve().parent
FAKE_PROVIDER = TESTS_DIR / "fake_tool_provider.py"
FAKE_BACKLOG = TESTS_DIR / "fixtures" / "fake_backlog.sh"


@pytest.fixture
def fake_backlog_program() -> str:
    return f"sh {FAKE_BACKLOG}"


def _provider_spec(name: str = "fake", **overrides: Any) -> BridgeSpec:
    fields: dict[str, Any] = {
        "name": name,
        "command": sys.executable,
        "args": [str(FAKE_PROVIDER)],
    }
    fields.update(overrides)
    return BridgeSpec(**fields)


@pytest.fixture
def provider_spec() -> Callable[..., BridgeSpec]:
    """Factory for specs launching the scripted tool provider."""
    return _provider_spec


@pytest.fixture
def hub_config(tmp_path: Path, fake_backlog_program: str) -> HubConfig:
    return HubConfig(
        default_project_path=str(tmp_path),
        backlog_program=fake_backlog_program,
        session_idle_timeout=None,
    )
