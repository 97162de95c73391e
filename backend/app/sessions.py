from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Optional
from uuid import uuid4

from backend.app.models import utc_now

if TYPE_CHECKING:
    from backend.app.persistence import SqlPersistence

logger = logging.getLogger("campaign_sender")

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_PRUNE_INTERVAL_SECONDS = 60


class SessionStore:
    """Server-side key/value storage scoped by session id.

    Values must be JSON-serialisable. With persistence configured every read
    goes to the database so separate workers observe each other's writes.

    A session exists once a value is written to it. Sessions idle for
    ``ttl_seconds`` expire and are pruned; ``0`` keeps them forever.
    """

    def __init__(
        self,
        persistence: Optional["SqlPersistence"] = None,
        *,
        ttl_seconds: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.ttl_seconds = max(0, ttl_seconds)
        self.clock = clock
        self._sessions: dict[str, dict[str, Any]] = {}
        self._last_seen: dict[str, datetime] = {}
        self._next_prune_at: Optional[datetime] = None

    @staticmethod
    def new_session_id() -> str:
        return uuid4().hex

    @staticmethod
    def is_valid_id(session_id: Optional[str]) -> bool:
        return bool(session_id and _SESSION_ID_RE.match(session_id))

    def open(self, session_id: Optional[str]) -> "Session":
        with self._lock:
            now = self.clock()
            self._prune(now)
            if self.is_valid_id(session_id) and self._is_live(session_id, now):
                self._touch(session_id, now)
                return Session(store=self, session_id=session_id, is_new=False)
            return Session(store=self, session_id=self.new_session_id(), is_new=True)

    def get(self, session_id: str, key: str, default: Any = None) -> Any:
        values = self._values(session_id)
        if key not in values:
            return default
        return copy.deepcopy(values[key])

    def set(self, session_id: str, key: str, value: Any) -> None:
        with self._lock:
            now = self.clock()
            if self.persistence:
                self.persistence.set_session_value(session_id, key, value, updated_at=now)
                return
            self._sessions.setdefault(session_id, {})[key] = copy.deepcopy(value)
            self._last_seen[session_id] = now

    def _values(self, session_id: str) -> dict[str, Any]:
        if self.persistence:
            return self.persistence.load_session(session_id) or {}
        with self._lock:
            return dict(self._sessions.get(session_id, {}))

    def _is_live(self, session_id: str, now: datetime) -> bool:
        if self.persistence:
            last_seen = self.persistence.session_last_seen(session_id)
        else:
            last_seen = self._last_seen.get(session_id)
        if last_seen is None:
            return False
        if not self.ttl_seconds:
            return True
        return now - last_seen < timedelta(seconds=self.ttl_seconds)

    def _touch(self, session_id: str, now: datetime) -> None:
        if self.persistence:
            self.persistence.touch_session(session_id, now)
        else:
            self._last_seen[session_id] = now

    def _prune(self, now: datetime) -> None:
        if not self.ttl_seconds:
            return
        if self._next_prune_at is not None and now < self._next_prune_at:
            return
        self._next_prune_at = now + timedelta(
            seconds=min(self.ttl_seconds, _PRUNE_INTERVAL_SECONDS)
        )
        cutoff = now - timedelta(seconds=self.ttl_seconds)
        expired = [sid for sid, seen in self._last_seen.items() if seen <= cutoff]
        for sid in expired:
            self._last_seen.pop(sid, None)
            self._sessions.pop(sid, None)
        removed = len(expired)
        if self.persistence:
            removed += self.persistence.delete_idle_sessions(cutoff)
        if removed:
            logger.info("sessions_pruned count=%s cutoff=%s", removed, cutoff.isoformat())


@dataclass
class Session:
    store: SessionStore
    session_id: str
    is_new: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.store.get(self.session_id, key, default)

    def set(self, key: str, value: Any) -> None:
        self.store.set(self.session_id, key, value)
