"""Host-to-container path translation for the MCP Hub gateway."""

from dataclasses import dataclass


@dataclass(frozen=True)
class PathResolver:
    """Translates host-visible paths into their container-local equivalent.

    Matching is on the literal prefix only. ``..`` segments, symlinks and
    trailing slashes are not normalized, so this offers no protection against
    path traversal.
    """

    host_root: str
    container_root: str

    def resolve(self, path: str) -> str:
        """Replace a leading ``host_root`` with ``container_root``."""
        if self.host_root and path.startswith(self.host_root):
            return self.container_root + path[len(self.host_root) :]
        return path
