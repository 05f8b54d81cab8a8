"""Sticky per-session working directories for the MCP Hub gateway."""

import threading

from mcphub.gateway.paths import PathResolver


class SessionStateStore:
    """Remembers the last project path each session supplied.

    A path passed to :meth:`get_effective_path` overwrites the stored value and
    is used by every later call from the same session until overwritten again.
    Concurrent writes for one session are last-write-wins.
    """

    def __init__(self, resolver: PathResolver, default_path: str) -> None:
        """Initialize the store.

        Args:
            resolver: Translates stored host paths to container paths
            default_path: Path used for sessions that never supplied one
        """
        self.resolver = resolver
        self.default_path = default_path
        self._paths: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_effective_path(self, session_id: str, provided_path: str | None = None) -> str:
        """Return the resolved working directory, storing ``provided_path`` first."""
        with self._lock:
            if provided_path:
                self._paths[session_id] = provided_path
            path = self._paths.get(session_id) or self.default_path
        return self.resolver.resolve(path)

    def set_initial(self, session_id: str, path: str | None) -> None:
        """Seed a session's directory at handshake time without clobbering a sticky path."""
        if not path:
            return
        with self._lock:
            self._paths.setdefault(session_id, path)

    def stored_path(self, session_id: str) -> str | None:
        """Return the raw (untranslated) stored path, if any."""
        with self._lock:
            return self._paths.get(session_id)

    def forget(self, session_id: str) -> None:
        """Drop state for a closed session."""
        with self._lock:
            self._paths.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)
