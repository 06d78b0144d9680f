from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from paddlesync.models import (
    ManagedEvent,
    SyncLogEntry,
    Team,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _row_to_event(row: sqlite3.Row) -> ManagedEvent:
    return ManagedEvent(
        event_id=str(row["event_id"]),
        team_id=str(row["team_id"]),
        title=str(row["title"]),
        start=parse_iso_datetime(row["start_at"]),
        external_uid=row["external_uid"],
        event_type=str(row["event_type"]),
        boat_size=str(row["boat_size"]),
    )


def _row_to_sync_log(row: sqlite3.Row) -> SyncLogEntry:
    return SyncLogEntry(
        log_id=int(row["id"]),
        team_id=str(row["team_id"]),
        status=str(row["status"]),
        created_count=int(row["created_count"]),
        updated_count=int(row["updated_count"]),
        deleted_count=int(row["deleted_count"]),
        details=json.loads(row["details_json"] or "[]"),
        error=row["error"],
        created_at=parse_iso_datetime(row["created_at"]),
    )


class EventSession:
    """Event queries bound to one connection.

    Only rows with an external UID are visible here; manually entered events
    are never read, changed or deleted through a session.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def find_many(
        self,
        team_id: str,
        *,
        uids_in: Iterable[str] | None = None,
        uids_not_in: Iterable[str] | None = None,
    ) -> list[ManagedEvent]:
        sql = """
            SELECT event_id, team_id, title, start_at, external_uid, event_type, boat_size
            FROM events
            WHERE team_id = ? AND external_uid IS NOT NULL
        """
        params: list[Any] = [team_id]
        if uids_in is not None:
            wanted = list(uids_in)
            if not wanted:
                return []
            sql += f" AND external_uid IN ({_placeholders(len(wanted))})"
            params.extend(wanted)
        if uids_not_in is not None:
            excluded = list(uids_not_in)
            if excluded:
                sql += f" AND external_uid NOT IN ({_placeholders(len(excluded))})"
                params.extend(excluded)
        sql += " ORDER BY start_at, event_id"
        rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def create_many(self, events: Iterable[ManagedEvent]) -> int:
        now = _utc_now()
        rows = []
        for event in events:
            if not event.event_id:
                event.event_id = uuid.uuid4().hex
            rows.append(
                (
                    event.event_id,
                    event.team_id,
                    event.title,
                    serialize_datetime(event.start),
                    event.external_uid,
                    event.event_type,
                    event.boat_size,
                    now,
                    now,
                )
            )
        if not rows:
            return 0
        self._conn.executemany(
            """
            INSERT INTO events(
                event_id, team_id, title, start_at, external_uid, event_type, boat_size, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        return len(rows)

    def update_many(self, events: Iterable[ManagedEvent]) -> int:
        now = _utc_now()
        rows = [
            (event.title, serialize_datetime(event.start), now, event.event_id, event.team_id)
            for event in events
        ]
        if not rows:
            return 0
        self._conn.executemany(
            """
            UPDATE events
            SET title = ?, start_at = ?, updated_at = ?
            WHERE event_id = ? AND team_id = ? AND external_uid IS NOT NULL
            """,
            rows,
        )
        return len(rows)

    def delete_many(self, team_id: str, event_ids: Iterable[str]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        cursor = self._conn.execute(
            f"""
            DELETE FROM events
            WHERE team_id = ? AND external_uid IS NOT NULL AND event_id IN ({_placeholders(len(ids))})
            """,
            [team_id, *ids],
        )
        return int(cursor.rowcount)


class EventStore:
    """SQLite persistence for teams, their events and the sync audit log."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS teams (
            team_id TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT '',
            ical_url TEXT
        );

        CREATE TABLE IF NOT EXISTS events (
            event_id TEXT PRIMARY KEY,
            team_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            external_uid TEXT,
            event_type TEXT NOT NULL DEFAULT 'training',
            boat_size TEXT NOT NULL DEFAULT 'standard',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS events_team_external_uid
            ON events(team_id, external_uid);

        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            team_id TEXT NOT NULL,
            status TEXT NOT NULL,
            created_count INTEGER NOT NULL,
            updated_count INTEGER NOT NULL,
            deleted_count INTEGER NOT NULL,
            details_json TEXT NOT NULL,
            error TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS sync_logs_team_id ON sync_logs(team_id, id);
        """
        with self._lock:
            with self._session() as conn:
                conn.executescript(schema_sql)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[EventSession]:
        """All writes made through the yielded session commit or roll back together."""
        with self._session() as conn:
            yield EventSession(conn)

    def find_many(
        self,
        team_id: str,
        *,
        uids_in: Iterable[str] | None = None,
        uids_not_in: Iterable[str] | None = None,
    ) -> list[ManagedEvent]:
        with self._session() as conn:
            return EventSession(conn).find_many(team_id, uids_in=uids_in, uids_not_in=uids_not_in)

    def create_many(self, events: Iterable[ManagedEvent]) -> int:
        with self.transaction() as session:
            return session.create_many(events)

    def update_many(self, events: Iterable[ManagedEvent]) -> int:
        with self.transaction() as session:
            return session.update_many(events)

    def delete_many(self, team_id: str, event_ids: Iterable[str]) -> int:
        with self.transaction() as session:
            return session.delete_many(team_id, event_ids)

    def list_events(self, team_id: str) -> list[ManagedEvent]:
        """Every event of the team, manual ones included."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT event_id, team_id, title, start_at, external_uid, event_type, boat_size
                FROM events
                WHERE team_id = ?
                ORDER BY start_at, event_id
                """,
                (team_id,),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def save_team(self, team: Team) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO teams(team_id, name, ical_url)
                VALUES (?, ?, ?)
                ON CONFLICT(team_id) DO UPDATE SET
                    name = excluded.name,
                    ical_url = excluded.ical_url
                """,
                (team.team_id, team.name, team.ical_url),
            )

    def get_team(self, team_id: str) -> Team | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT team_id, name, ical_url FROM teams WHERE team_id = ?",
                (team_id,),
            ).fetchone()
        if row is None:
            return None
        return Team(team_id=str(row["team_id"]), name=str(row["name"]), ical_url=row["ical_url"])

    def list_teams_with_ical_url(self) -> list[Team]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT team_id, name, ical_url
                FROM teams
                WHERE ical_url IS NOT NULL AND ical_url != ''
                ORDER BY team_id
                """
            ).fetchall()
        return [
            Team(team_id=str(row["team_id"]), name=str(row["name"]), ical_url=row["ical_url"])
            for row in rows
        ]

    def record_sync_log(self, entry: SyncLogEntry) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_logs(
                    team_id, status, created_count, updated_count, deleted_count, details_json, error, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.team_id,
                    entry.status,
                    int(entry.created_count),
                    int(entry.updated_count),
                    int(entry.deleted_count),
                    json.dumps(list(entry.details), ensure_ascii=False),
                    entry.error,
                    _utc_now(),
                ),
            )
            return int(cursor.lastrowid)

    def list_sync_logs(self, team_id: str, *, limit: int = 10, offset: int = 0) -> list[SyncLogEntry]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT id, team_id, status, created_count, updated_count, deleted_count, details_json, error, created_at
                FROM sync_logs
                WHERE team_id = ?
                ORDER BY id DESC
                LIMIT ? OFFSET ?
                """,
                (team_id, max(1, int(limit)), max(0, int(offset))),
            ).fetchall()
        return [_row_to_sync_log(row) for row in rows]

    def count_sync_logs(self, team_id: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM sync_logs WHERE team_id = ?",
                (team_id,),
            ).fetchone()
        return int(row["total"])
