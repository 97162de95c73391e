from __future__ import annotations

from datetime import datetime, timedelta

from backend.app.persistence import SqlPersistence
from backend.app.sessions import SessionStore

NOW = datetime(2026, 10, 1, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def test_session_without_values_is_not_kept() -> None:
    sessions = SessionStore(ttl_seconds=3600)

    opened = [sessions.open(None) for _ in range(50)]

    assert all(session.is_new for session in opened)
    assert sessions._sessions == {}
    assert sessions._last_seen == {}
    assert sessions.open(opened[0].session_id).is_new is True


def test_session_is_reused_while_active() -> None:
    clock = Clock()
    sessions = SessionStore(ttl_seconds=3600, clock=clock)
    first = sessions.open(None)
    first.set("campaign.email.send.progress", [1, 4])

    clock.advance(minutes=50)
    again = sessions.open(first.session_id)
    clock.advance(minutes=50)
    later = sessions.open(first.session_id)

    assert again.is_new is False
    assert later.is_new is False
    assert later.get("campaign.email.send.progress") == [1, 4]


def test_idle_session_expires_and_is_pruned() -> None:
    clock = Clock()
    sessions = SessionStore(ttl_seconds=3600, clock=clock)
    idle = sessions.open(None)
    idle.set("campaign.email.send.progress", [1, 4])

    clock.advance(seconds=3601)
    reopened = sessions.open(idle.session_id)

    assert reopened.is_new is True
    assert reopened.session_id != idle.session_id
    assert reopened.get("campaign.email.send.progress") is None
    assert idle.session_id not in sessions._sessions
    assert idle.session_id not in sessions._last_seen


def test_zero_ttl_keeps_sessions() -> None:
    clock = Clock()
    sessions = SessionStore(ttl_seconds=0, clock=clock)
    session = sessions.open(None)
    session.set("key", "value")

    clock.advance(days=365)

    assert sessions.open(session.session_id).is_new is False


def test_persistent_sessions_expire_after_idle_time(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{(tmp_path / 'sessions.sqlite3').as_posix()}")
    clock = Clock()
    sessions = SessionStore(persistence=persistence, ttl_seconds=600, clock=clock)
    kept = sessions.open(None)
    kept.set("campaign.email.send.active", False)
    dropped = sessions.open(None)
    dropped.set("campaign.email.send.active", False)

    clock.advance(seconds=400)
    assert sessions.open(kept.session_id).is_new is False
    clock.advance(seconds=400)
    reopened = sessions.open(dropped.session_id)

    assert reopened.is_new is True
    assert persistence.load_session(dropped.session_id) is None
    assert persistence.load_session(kept.session_id) == {"campaign.email.send.active": False}
    assert sessions.open(kept.session_id).is_new is False


def test_cookie_less_polls_do_not_create_sessions(client) -> None:
    for _ in range(5):
        response = client.post(
            "/ajax/email/send-batch",
            json={"id": "eml_missing", "pending": 1},
        )
        assert response.json() == {"success": 0}

    assert client.app.state.sessions._sessions == {}
