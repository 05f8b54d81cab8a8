"""Error types for the MCP Hub gateway."""


class HubError(Exception):
    """Base class for gateway errors carrying a stable error code."""

    code = "HUB_ERROR"

    def __init__(self, message: str) -> None:
        """Initialize hub error.

        Args:
            message: Human-readable description of the failure
        """
        super().__init__(message)
        self.message = message


class ConfigError(HubError):
    """Raised when hub configuration is missing or malformed."""

    code = "CONFIG_ERROR"


class SessionNotFoundError(HubError):
    """Raised when a request names an unknown, closed or inactive session."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str | None) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionStateError(HubError):
    """Raised when a request is invalid for the session's current state."""

    code = "SESSION_STATE"


class ProjectNotInitializedError(HubError):
    """Raised when a backlog tool runs in a directory without a backlog project."""

    code = "PROJECT_NOT_INITIALIZED"

    def __init__(self, cwd: str) -> None:
        super().__init__(f"No Backlog.md project found at {cwd}. Please run 'init-project' first.")
        self.cwd = cwd


class BridgeError(HubError):
    """Base class for stdio bridge failures."""

    code = "BRIDGE_ERROR"


class BridgeUnavailableError(BridgeError):
    """Raised when a bridge is failed, closed, or could not be started."""

    code = "BRIDGE_UNAVAILABLE"


class BridgeTimeoutError(BridgeError):
    """Raised when a bridged call gets no reply within its timeout."""

    code = "BRIDGE_TIMEOUT"


class BridgeCallError(BridgeError):
    """Raised when a child process answers a call with a JSON-RPC error."""

    code = "REMOTE_ERROR"

    def __init__(self, message: str, remote_code: int | None = None) -> None:
        super().__init__(message)
        self.remote_code = remote_code
