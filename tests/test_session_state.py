"""Tests for sticky per-session working directories."""

from mcphub.gateway.paths import PathResolver
from mcphub.gateway.session_state import SessionStateStore


def _store() -> SessionStateStore:
    return SessionStateStore(PathResolver("/home/u/Documents", "/data"), "/home/u/Documents")


class TestSessionStateStore:
    def test_default_path_is_translated(self) -> None:
        assert _store().get_effective_path("s1") == "/data"

    def test_provided_path_is_sticky(self) -> None:
        store = _store()
        assert store.get_effective_path("s1", "/home/u/Documents/p1") == "/data/p1"
        assert store.get_effective_path("s1") == "/data/p1"
        assert store.stored_path("s1") == "/home/u/Documents/p1"

    def test_later_path_overwrites(self) -> None:
        store = _store()
        store.get_effective_path("s1", "/home/u/Documents/p1")
        assert store.get_effective_path("s1", "/home/u/Documents/p2") == "/data/p2"
        assert store.get_effective_path("s1") == "/data/p2"

    def test_sessions_are_isolated(self) -> None:
        store = _store()
        store.get_effective_path("s1", "/home/u/Documents/p1")
        assert store.get_effective_path("s2") == "/data"

    def test_empty_path_does_not_overwrite(self) -> None:
        store = _store()
        store.get_effective_path("s1", "/home/u/Documents/p1")
        assert store.get_effective_path("s1", "") == "/data/p1"

    def test_set_initial_does_not_clobber_sticky_path(self) -> None:
        store = _store()
        store.set_initial("s1", "/home/u/Documents/start")
        assert store.get_effective_path("s1") == "/data/start"
        store.get_effective_path("s1", "/home/u/Documents/p1")
        store.set_initial("s1", "/home/u/Documents/other")
        assert store.get_effective_path("s1") == "/data/p1"

    def test_forget_drops_state(self) -> None:
        store = _store()
        store.get_effective_path("s1", "/home/u/Documents/p1")
        store.forget("s1")
        assert store.stored_path("s1") is None
        assert len(store) == 0
        assert store.get_effective_path("s1") == "/data"
