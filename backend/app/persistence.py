from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

SNAPSHOT_ID = "default"


def _ensure_parent(path: Path) -> None:
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            _ensure_parent(Path(sqlite_path))
        return value
    if "://" in value:
        return value
    # bare filesystem path
    path = Path(value)
    _ensure_parent(path)
    return f"sqlite:///{path.as_posix()}"


class SqlPersistence:
    """
    SQLAlchemy Core storage for the store snapshot and server-side session values.
    Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.session_values = Table(
            "session_values",
            self.metadata,
            Column("session_id", String(64), primary_key=True),
            Column("key", String(190), primary_key=True),
            Column("value_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def _upsert(
        self,
        conn: Connection,
        table: Table,
        keys: dict[str, Any],
        values: dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> None:
        condition = and_(*(table.c[name] == value for name, value in keys.items()))
        values = {**values, "updated_at_utc": updated_at or datetime.utcnow()}
        found = conn.execute(select(table.c[next(iter(keys))]).where(condition)).first()
        if found:
            conn.execute(table.update().where(condition).values(**values))
        else:
            conn.execute(table.insert().values(**keys, **values))

    def save_snapshot(self, payload: dict) -> None:
        serialized = json.dumps(payload)
        with self._lock, self.engine.begin() as conn:
            self._upsert(
                conn,
                self.state_snapshots,
                {"id": SNAPSHOT_ID},
                {"payload_json": serialized},
            )

    def load_snapshot(self) -> Optional[dict]:
        table = self.state_snapshots
        with self._lock, self.engine.connect() as conn:
            row = conn.execute(
                select(table.c.payload_json).where(table.c.id == SNAPSHOT_ID)
            ).first()
        return json.loads(row[0]) if row else None

    def set_session_value(
        self,
        session_id: str,
        key: str,
        value: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        serialized = json.dumps(value)
        with self._lock, self.engine.begin() as conn:
            self._upsert(
                conn,
                self.session_values,
                {"session_id": session_id, "key": key},
                {"value_json": serialized},
                updated_at=updated_at,
            )

    def load_session(self, session_id: str) -> Optional[dict[str, Any]]:
        table = self.session_values
        with self._lock, self.engine.connect() as conn:
            rows = conn.execute(
                select(table.c.key, table.c.value_json).where(table.c.session_id == session_id)
            ).all()
        if not rows:
            return None
        return {key: json.loads(value_json) for key, value_json in rows}

    def session_last_seen(self, session_id: str) -> Optional[datetime]:
        table = self.session_values
        with self._lock, self.engine.connect() as conn:
            return conn.execute(
                select(func.max(table.c.updated_at_utc)).where(table.c.session_id == session_id)
            ).scalar()

    def touch_session(self, session_id: str, seen_at: datetime) -> None:
        table = self.session_values
        with self._lock, self.engine.begin() as conn:
            conn.execute(
                table.update()
                .where(table.c.session_id == session_id)
                .values(updated_at_utc=seen_at)
            )

    def delete_idle_sessions(self, cutoff: datetime) -> int:
        """Delete every session whose newest row is at or before ``cutoff``."""
        table = self.session_values
        idle = (
            select(table.c.session_id)
            .group_by(table.c.session_id)
            .having(func.max(table.c.updated_at_utc) <= cutoff)
        )
        with self._lock, self.engine.begin() as conn:
            idle_ids = conn.execute(idle).scalars().all()
            if not idle_ids:
                return 0
            conn.execute(table.delete().where(table.c.session_id.in_(idle_ids)))
        return len(idle_ids)
