"""Tool table shared by CLI-backed tools and bridged child processes."""

import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

_toolset_log = logging.getLogger("mcphub.gateway.toolset")


@dataclass(frozen=True)
class ToolContext:
    """Per-call context handed to every tool invocation."""

    session_id: str
    segment: str = ""


ToolInvoke = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolEntry:
    """One callable tool: its public name, schema and invoke coroutine."""

    name: str
    description: str
    input_schema: dict[str, Any]
    invoke: ToolInvoke = field(compare=False, repr=False)
    source: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolSet:
    """Ordered tool namespace keyed by tool name.

    When two sources declare the same name the entry added first wins; the
    collision is logged and the later entry is ignored.
    """

    def __init__(self, entries: Iterable[ToolEntry] = ()) -> None:
        self._entries: dict[str, ToolEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: ToolEntry) -> bool:
        existing = self._entries.get(entry.name)
        if existing is not None:
            _toolset_log.warning(
                "tool_name_collision tool=%s kept=%s ignored=%s",
                entry.name,
                existing.source or "(unknown)",
                entry.source or "(unknown)",
            )
            return False
        self._entries[entry.name] = entry
        return True

    def merge(self, other: "ToolSet") -> "ToolSet":
        """Add every entry of ``other`` (first-wins) and return ``self``."""
        for entry in other:
            self.add(entry)
        return self

    def get(self, name: str) -> ToolEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)

    def to_payload(self) -> list[dict[str, Any]]:
        """Tool descriptors in ``tools/list`` shape."""
        return [entry.to_payload() for entry in self._entries.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[ToolEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
