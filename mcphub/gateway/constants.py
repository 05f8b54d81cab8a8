"""Constants and limits for the MCP Hub gateway."""

SERVER_NAME = "mcp-hub"
SERVER_VERSION = "1.4.0"

# Protocol version announced to clients and to bridged child processes.
PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-hub-bridge", "version": SERVER_VERSION}

SESSION_HEADER = "Mcp-Session-Id"
HUB_SEGMENT = "hub"
BACKLOG_SEGMENT = "backlog"

# Command Adapter timeouts per tool-call class (seconds).
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 15.0
DEFAULT_INIT_TIMEOUT = 25.0

BACKLOG_PROGRAM = "backlog"
BACKLOG_MARKER_DIR = "backlog"
DEFAULT_CONTAINER_ROOT = "/data"

DEFAULT_BRIDGE_TIMEOUT = 120.0
BRIDGE_READ_CHUNK = 65536
BRIDGE_TERMINATE_TIMEOUT = 2.0

DEFAULT_SESSION_IDLE_TIMEOUT = 3600.0
SESSION_SWEEP_INTERVAL = 60.0

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SESSION_ERROR = -32000
SESSION_NOT_FOUND = -32001
