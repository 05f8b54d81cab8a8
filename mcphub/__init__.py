"""MCP Hub: session-multiplexing gateway for CLI-backed and proxied MCP tools."""

__version__ = "1.4.0"
