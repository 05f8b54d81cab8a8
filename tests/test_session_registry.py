"""Tests for the session registry."""

import asyncio
from typing import Any

import pytest

from mcphub.gateway.errors import SessionNotFoundError
from mcphub.gateway.paths import PathResolver
from mcphub.gateway.session import Session, SessionRegistry, SessionState
from mcphub.gateway.session_state import SessionStateStore
from mcphub.gateway.toolset import ToolContext, ToolEntry, ToolSet


class RecordingPool:
    def __init__(self) -> None:
        self.released: list[str] = []

    async def release(self, name: str) -> None:
        self.released.append(name)


class OwnedBridge:
    def __init__(self) -> None:
        self.closed = False

    async def shutdown(self) -> None:
        self.closed = True


async def _noop(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    return {}


async def _endpoint(session: Session) -> ToolSet:
    return ToolSet([ToolEntry("noop", "", {"type": "object"}, _noop)])


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _registry(**kwargs: Any) -> tuple[SessionRegistry, SessionStateStore]:
    store = SessionStateStore(PathResolver("", "/data"), "/default")
    return SessionRegistry(store, kwargs.pop("factory", _endpoint), **kwargs), store


class TestOpen:
    def test_open_activates_session(self) -> None:
        registry, store = _registry()
        session = asyncio.run(registry.open("backlog", "/projects/a"))
        assert session.state is SessionState.ACTIVE
        assert session.endpoint.names() == ["noop"]
        assert registry.get_active(session.session_id) is session
        assert store.get_effective_path(session.session_id) == "/projects/a"

    def test_ids_are_unique(self) -> None:
        registry, _ = _registry()

        async def scenario() -> list[Session]:
            return await asyncio.gather(*(registry.open("hub") for _ in range(20)))

        sessions = asyncio.run(scenario())
        assert len({session.session_id for session in sessions}) == 20
        assert len(registry) == 20

    def test_endpoint_failure_leaves_no_entry(self) -> None:
        pool = RecordingPool()

        async def failing(session: Session) -> ToolSet:
            session.shared_bridges.append("tools")
            raise RuntimeError("bridge exploded")

        registry, _ = _registry(factory=failing, pool=pool)
        with pytest.raises(RuntimeError):
            asyncio.run(registry.open("hub"))
        assert len(registry) == 0
        assert pool.released == ["tools"]


class TestLookup:
    def test_unknown_session(self) -> None:
        registry, _ = _registry()
        with pytest.raises(SessionNotFoundError):
            registry.get_active("missing")
        with pytest.raises(SessionNotFoundError):
            registry.get_active(None)

    def test_wrong_segment(self) -> None:
        registry, _ = _registry()
        session = asyncio.run(registry.open("backlog"))
        with pytest.raises(SessionNotFoundError):
            registry.get_active(session.session_id, "tools")
        assert registry.get_active(session.session_id, "backlog") is session


class TestClose:
    def test_close_is_idempotent_and_releases_resources(self) -> None:
        pool = RecordingPool()
        owned = OwnedBridge()

        async def with_bridges(session: Session) -> ToolSet:
            session.shared_bridges.append("shared-a")
            session.owned_bridges.append(owned)  # type: ignore[arg-type]
            return ToolSet()

        registry, store = _registry(factory=with_bridges, pool=pool)

        async def scenario() -> tuple[Session, bool, bool]:
            session = await registry.open("hub", "/projects/a")
            first = await registry.close(session.session_id)
            second = await registry.close(session.session_id)
            return session, first, second

        session, first, second = asyncio.run(scenario())
        assert (first, second) == (True, False)
        assert session.state is SessionState.CLOSED
        assert pool.released == ["shared-a"]
        assert owned.closed is True
        assert store.stored_path(session.session_id) is None
        with pytest.raises(SessionNotFoundError):
            registry.get_active(session.session_id)

    def test_close_cancels_in_flight_requests(self) -> None:
        registry, _ = _registry()

        async def scenario() -> bool:
            session = await registry.open("hub")
            started = asyncio.Event()

            async def slow_request() -> None:
                async with registry.track(session):
                    started.set()
                    await asyncio.sleep(30)

            request = asyncio.create_task(slow_request())
            await started.wait()
            await registry.close(session.session_id)
            with pytest.raises(asyncio.CancelledError):
                await request
            return not session.inflight

        assert asyncio.run(scenario()) is True

    def test_close_all(self) -> None:
        registry, _ = _registry()

        async def scenario() -> None:
            for _ in range(3):
                await registry.open("hub")
            await registry.close_all()

        asyncio.run(scenario())
        assert len(registry) == 0


class TestIdleSweep:
    def test_idle_sessions_are_closed(self) -> None:
        clock = FakeClock()
        registry, _ = _registry(idle_timeout=60.0, clock=clock)

        async def scenario() -> tuple[list[str], str, str]:
            stale = await registry.open("hub")
            clock.now += 50
            fresh = await registry.open("hub")
            clock.now += 20
            closed = await registry.sweep_idle()
            return closed, stale.session_id, fresh.session_id

        closed, stale_id, fresh_id = asyncio.run(scenario())
        assert closed == [stale_id]
        assert registry.get_active(fresh_id).session_id == fresh_id

    def test_traffic_refreshes_idle_clock(self) -> None:
        clock = FakeClock()
        registry, _ = _registry(idle_timeout=60.0, clock=clock)
        session = asyncio.run(registry.open("hub"))
        clock.now += 50
        registry.get_active(session.session_id)
        clock.now += 50
        assert asyncio.run(registry.sweep_idle()) == []

    def test_sweep_disabled_without_timeout(self) -> None:
        clock = FakeClock()
        registry, _ = _registry(clock=clock)
        asyncio.run(registry.open("hub"))
        clock.now += 10_000
        assert asyncio.run(registry.sweep_idle()) == []

    def test_counts_by_segment(self) -> None:
        registry, _ = _registry()

        async def scenario() -> None:
            await registry.open("hub")
            await registry.open("backlog")
            await registry.open("backlog")

        asyncio.run(scenario())
        assert registry.counts_by_segment() == {"hub": 1, "backlog": 2}
