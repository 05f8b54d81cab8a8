"""MCP Hub Gateway - session registry, stdio bridges and transports."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcphub.gateway.server import HubGateway


def __getattr__(name: str) -> Any:
    if name == "HubGateway":
        from mcphub.gateway.server import HubGateway

        return HubGateway
    raise AttributeError(f"module 'mcphub.gateway' has no attribute '{name}'")


__all__ = ["HubGateway"]
