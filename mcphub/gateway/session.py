"""Session registry for the MCP Hub gateway."""

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mcphub.gateway.bridge import StdioBridge
from mcphub.gateway.bridge_pool import BridgePool
from mcphub.gateway.errors import SessionNotFoundError
from mcphub.gateway.session_state import SessionStateStore
from mcphub.gateway.toolset import ToolSet

_session_log = logging.getLogger("mcphub.gateway.session")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    """One client session and the resources it holds."""

    session_id: str
    segment: str
    created_at: float
    last_seen: float
    state: SessionState = SessionState.UNINITIALIZED
    endpoint: ToolSet = field(default_factory=ToolSet)
    owned_bridges: list[StdioBridge] = field(default_factory=list)
    shared_bridges: list[str] = field(default_factory=list)
    inflight: set["asyncio.Task[Any]"] = field(default_factory=set)


EndpointFactory = Callable[[Session], Awaitable[ToolSet]]


class SessionRegistry:
    """Owns the session map and drives ``UNINITIALIZED -> ACTIVE -> CLOSED``.

    Closing is the only way an entry leaves the map, and closing an id twice
    is a no-op. Closing cancels the session's in-flight requests and releases
    its bridges.
    """

    def __init__(
        self,
        state_store: SessionStateStore,
        endpoint_factory: EndpointFactory,
        pool: BridgePool | None = None,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the registry.

        Args:
            state_store: Sticky working directory store, cleared on close
            endpoint_factory: Builds the tool table for a new session
            pool: Bridge pool that shared bridge references are returned to
            idle_timeout: Seconds without traffic before :meth:`sweep_idle` closes a session
            clock: Time source (seconds)
        """
        self.state_store = state_store
        self.pool = pool
        self.idle_timeout = idle_timeout
        self._endpoint_factory = endpoint_factory
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    async def open(self, segment: str, initial_path: str | None = None) -> Session:
        """Create a session, build its endpoint and make it active."""
        now = self._clock()
        with self._lock:
            session_id = uuid.uuid4().hex
            while session_id in self._sessions:
                session_id = uuid.uuid4().hex
            session = Session(session_id=session_id, segment=segment, created_at=now, last_seen=now)
            self._sessions[session_id] = session

        try:
            session.endpoint = await self._endpoint_factory(session)
        except BaseException:
            with self._lock:
                self._sessions.pop(session_id, None)
            session.state = SessionState.CLOSED
            await self._release(session)
            raise

        self.state_store.set_initial(session_id, initial_path)
        with self._lock:
            registered = self._sessions.get(session_id) is session
            if registered:
                session.state = SessionState.ACTIVE
        if not registered:
            await self._release(session)
            raise SessionNotFoundError(session_id)

        _session_log.info(
            "session_opened session_id=%s segment=%s tools=%s",
            session_id,
            segment,
            len(session.endpoint),
            extra={"session_id": session_id, "segment": segment},
        )
        return session

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def get_active(self, session_id: str | None, segment: str | None = None) -> Session:
        """Return an active session, refreshing its idle clock.

        Raises:
            SessionNotFoundError: unknown, closed, not yet active, or bound to another segment
        """
        with self._lock:
            session = self._sessions.get(session_id) if session_id else None
            if (
                session is None
                or session.state is not SessionState.ACTIVE
                or (segment is not None and session.segment != segment)
            ):
                raise SessionNotFoundError(session_id)
            session.last_seen = self._clock()
        return session

    @asynccontextmanager
    async def track(self, session: Session) -> AsyncIterator[Session]:
        """Register the current task as an in-flight request of ``session``."""
        task = asyncio.current_task()
        if task is not None:
            session.inflight.add(task)
        try:
            yield session
        finally:
            if task is not None:
                session.inflight.discard(task)
            session.last_seen = self._clock()

    async def close(self, session_id: str, reason: str = "client") -> bool:
        """Close a session. Returns ``False`` if it was already gone."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.state = SessionState.CLOSED
        current = asyncio.current_task()
        cancelled = 0
        for task in list(session.inflight):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        self.state_store.forget(session_id)
        await self._release(session)
        _session_log.info(
            "session_closed session_id=%s reason=%s cancelled=%s",
            session_id,
            reason,
            cancelled,
            extra={"session_id": session_id, "reason": reason},
        )
        return True

    async def sweep_idle(self, now: float | None = None) -> list[str]:
        """Close active sessions with no traffic for longer than the idle timeout."""
        if self.idle_timeout is None:
            return []
        current = self._clock() if now is None else now
        with self._lock:
            expired = [
                session.session_id
                for session in self._sessions.values()
                if session.state is SessionState.ACTIVE
                and not session.inflight
                and current - session.last_seen > self.idle_timeout
            ]
        closed = [session_id for session_id in expired if await self.close(session_id, "idle")]
        return closed

    async def close_all(self, reason: str = "shutdown") -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.close(session_id, reason)

    def counts_by_segment(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for session in self._sessions.values():
                if session.state is SessionState.ACTIVE:
                    counts[session.segment] = counts.get(session.segment, 0) + 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def _release(self, session: Session) -> None:
        while session.shared_bridges:
            name = session.shared_bridges.pop()
            if self.pool is not None:
                await self.pool.release(name)
        while session.owned_bridges:
            bridge = session.owned_bridges.pop()
            await bridge.shutdown()
