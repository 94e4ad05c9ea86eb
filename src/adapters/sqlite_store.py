"""SQLite connection store adapter.

Implements the core ConnectionStorePort using a simple SQLite database.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from core.errors import AmbiguousConnection, DuplicateName, NotFound
from core.models import ConnectionRecord, ConnectionState


class SQLiteConnectionStore:
    """Thin SQLite wrapper that satisfies the ConnectionStorePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the connections table if it does not exist."""

        with self._connect() as conn:
            # One row per named connection. Each statement runs in its own
            # transaction, so a crash leaves either the old or the new row.
            # Fields:
            # - name: normalized connection name (PRIMARY KEY)
            # - credential: bot token, written once at creation
            # - remote_chat_id: chat bound by pairing, NULL until then
            # - state: pending_pairing | active
            # - created_at: creation timestamp for `list` output
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    name TEXT PRIMARY KEY,
                    credential TEXT NOT NULL,
                    remote_chat_id TEXT,
                    state TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    CHECK ((state = 'active') = (remote_chat_id IS NOT NULL))
                )
                """
            )

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ConnectionRecord:
        return ConnectionRecord(
            name=row["name"],
            credential=row["credential"],
            remote_chat_id=row["remote_chat_id"],
            state=ConnectionState(row["state"]),
        )

    def create(self, name: str, credential: str) -> ConnectionRecord:
        """Insert a new pending connection."""

        record = ConnectionRecord(name=name, credential=credential)
        created_at = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO connections (name, credential, remote_chat_id, state, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.name,
                        record.credential,
                        record.remote_chat_id,
                        record.state.value,
                        created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateName(f"connection name already taken: {name}") from e
        return record

    def _find(self, name: str) -> Optional[ConnectionRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM connections WHERE name = ?", (name,)).fetchone()
        return self._to_record(row) if row else None

    def get(self, name: str) -> ConnectionRecord:
        """Return the connection called ``name``."""

        record = self._find(name)
        if record is None:
            raise NotFound(f"specified connection does not exist: {name}")
        return record

    def get_default(self) -> ConnectionRecord:
        """Return the only connection, when exactly one exists."""

        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM connections LIMIT 2").fetchall()
        if not rows:
            raise NotFound("no connection exists yet; create one with 'teleecho new TOKEN NAME'")
        if len(rows) > 1:
            raise AmbiguousConnection(
                f"no connection was given and there are {self.count()} to choose from"
            )
        return self._to_record(rows[0])

    def resolve(self, name: Optional[str]) -> ConnectionRecord:
        """Return the named connection, or the default one when no name is given."""

        if name:
            return self.get(name)
        return self.get_default()

    def update(self, record: ConnectionRecord) -> None:
        """Persist pairing state; the credential is never rewritten."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE connections SET remote_chat_id = ?, state = ? WHERE name = ?",
                (record.remote_chat_id, record.state.value, record.name),
            )
            if cur.rowcount == 0:
                raise NotFound(f"specified connection does not exist: {record.name}")

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM connections").fetchone()
        return int(row["total"])

    def list_names(self) -> List[str]:
        """Return all connection names, sorted."""

        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM connections ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    def list_records(self) -> List[ConnectionRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM connections ORDER BY name").fetchall()
        return [self._to_record(row) for row in rows]

    def remove(self, name: str) -> None:
        """Delete the connection called ``name``."""

        with self._connect() as conn:
            cur = conn.execute("DELETE FROM connections WHERE name = ?", (name,))
            if cur.rowcount == 0:
                raise NotFound(f"specified connection does not exist: {name}")
