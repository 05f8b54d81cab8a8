"""Lifecycle management for stdio bridges shared across sessions."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from mcphub.gateway.bridge import BridgeState, StdioBridge
from mcphub.gateway.config import BridgeSpec
from mcphub.gateway.constants import DEFAULT_BRIDGE_TIMEOUT
from mcphub.gateway.errors import BridgeError, BridgeUnavailableError

_pool_log = logging.getLogger("mcphub.gateway.bridge_pool")

BridgeFactory = Callable[[BridgeSpec], StdioBridge]


class BridgePool:
    """Reference-counted owner of shared bridges.

    Every session holding a shared bridge owns one reference. Under the
    ``refcount`` policy the bridge is shut down when the last reference is
    released; under ``keep`` it runs until :meth:`shutdown_all`. Bridges
    started eagerly are pinned by the pool itself. A failed or closed bridge
    is replaced by a fresh one on next use.
    """

    def __init__(
        self,
        specs: dict[str, BridgeSpec],
        policy: str = "refcount",
        request_timeout: float | None = DEFAULT_BRIDGE_TIMEOUT,
        bridge_factory: BridgeFactory | None = None,
    ) -> None:
        self.specs = dict(specs)
        self.policy = policy
        self._factory: BridgeFactory = bridge_factory or (
            lambda spec: StdioBridge.from_spec(spec, request_timeout)
        )
        self._bridges: dict[str, StdioBridge] = {}
        self._refcounts: dict[str, int] = {}
        self._pinned: set[str] = set()
        self._lock = asyncio.Lock()

    def spec(self, name: str) -> BridgeSpec:
        spec = self.specs.get(name)
        if spec is None:
            raise BridgeUnavailableError(f"Unknown bridge: {name}")
        return spec

    def refcount(self, name: str) -> int:
        return self._refcounts.get(name, 0)

    def bridge(self, name: str) -> StdioBridge | None:
        """Current bridge instance for ``name`` without starting it."""
        return self._bridges.get(name)

    async def start_eager(self) -> None:
        """Start and pin every shared bridge marked ``eager``; failures are logged."""
        for name, spec in self.specs.items():
            if spec.scope != "shared" or not spec.eager:
                continue
            self._pinned.add(name)
            try:
                await self.acquire(name)
            except BridgeError as e:
                _pool_log.error("bridge_eager_start_failed bridge=%s error=%s", name, e)

    async def acquire(self, name: str) -> StdioBridge:
        """Take a reference on a shared bridge and return it started."""
        async with self._lock:
            bridge, stale = self._current(name)
            self._refcounts[name] = self._refcounts.get(name, 0) + 1
        await self._discard(stale)
        try:
            await bridge.start()
        except BridgeError:
            await self.release(name)
            raise
        return bridge

    async def get(self, name: str) -> StdioBridge:
        """Return the running bridge for a call, restarting a failed one."""
        async with self._lock:
            bridge, stale = self._current(name)
        await self._discard(stale)
        await bridge.start()
        return bridge

    async def release(self, name: str) -> None:
        """Drop one reference; may shut the bridge down under ``refcount``."""
        async with self._lock:
            count = self._refcounts.get(name, 0) - 1
            if count > 0:
                self._refcounts[name] = count
                return
            self._refcounts.pop(name, None)
            if self.policy != "refcount" or name in self._pinned:
                return
            bridge = self._bridges.pop(name, None)
        if bridge is not None:
            _pool_log.info("bridge_released bridge=%s", name)
            await bridge.shutdown()

    def create_session_bridge(self, name: str) -> StdioBridge:
        """Build an unshared bridge; the caller owns its shutdown."""
        spec = self.spec(name)
        return self._factory(spec)

    async def shutdown_all(self) -> None:
        async with self._lock:
            bridges = list(self._bridges.values())
            self._bridges.clear()
            self._refcounts.clear()
        for bridge in bridges:
            await bridge.shutdown()

    def status(self) -> dict[str, dict[str, Any]]:
        """Per-bridge state and reference count for health reporting."""
        report: dict[str, dict[str, Any]] = {}
        for name, spec in self.specs.items():
            bridge = self._bridges.get(name)
            report[name] = {
                "scope": spec.scope,
                "state": bridge.state.value if bridge else BridgeState.NOT_STARTED.value,
                "refcount": self._refcounts.get(name, 0),
            }
        return report

    def _current(self, name: str) -> tuple[StdioBridge, StdioBridge | None]:
        spec = self.spec(name)
        if spec.scope != "shared":
            raise BridgeUnavailableError(f"Bridge '{name}' is session-scoped")
        bridge = self._bridges.get(name)
        if bridge is not None and bridge.state not in (BridgeState.FAILED, BridgeState.CLOSED):
            return bridge, None
        if bridge is not None:
            _pool_log.info("bridge_restart bridge=%s previous_state=%s", name, bridge.state.value)
        fresh = self._factory(spec)
        self._bridges[name] = fresh
        return fresh, bridge

    @staticmethod
    async def _discard(bridge: StdioBridge | None) -> None:
        if bridge is not None:
            await bridge.shutdown()
