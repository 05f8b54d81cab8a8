"""MCP Hub tool modules."""

from mcphub.gateway.tools.backlog_tools import BACKLOG_TOOL_SPECS, BacklogTools, build_backlog_tools

__all__ = [
    "BACKLOG_TOOL_SPECS",
    "BacklogTools",
    "build_backlog_tools",
]
