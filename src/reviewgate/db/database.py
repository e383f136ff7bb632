from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path(".reviewgate/journal.db")


class Database:
    """Async SQLite store for the activity journal.

    Holds a single persistent connection with WAL mode so readers (dashboards,
    other CLI invocations) never block the writer.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = resources.files("reviewgate.db").joinpath("schema.sql").read_text()

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.debug("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized, call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Activity journal
    # ------------------------------------------------------------------

    async def log_activity(
        self,
        actor: str,
        action_type: str,
        target: str | None,
        payload: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> str:
        activity_id = str(uuid.uuid4())
        await self.conn.execute(
            """
            INSERT INTO activity (id, trace_id, actor, action_type, target, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity_id,
                trace_id or str(uuid.uuid4()),
                actor,
                action_type,
                target,
                json.dumps(payload or {}, default=str),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.conn.commit()
        return activity_id

    async def get_activities_by_trace(self, trace_id: str) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(
            """
            SELECT id, trace_id, actor, action_type, target, payload, timestamp
            FROM activity WHERE trace_id = ?
            ORDER BY timestamp, rowid
            """,
            (trace_id,),
        )
        rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    async def get_activities_by_type(self, action_type: str) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(
            """
            SELECT id, trace_id, actor, action_type, target, payload, timestamp
            FROM activity WHERE action_type = ?
            ORDER BY timestamp, rowid
            """,
            (action_type,),
        )
        rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    async def get_recent_activities(self, limit: int = 100) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(
            """
            SELECT id, trace_id, actor, action_type, target, payload, timestamp
            FROM activity
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_decode(row) for row in rows]


def _decode(row: aiosqlite.Row) -> dict[str, Any]:
    d = dict(row)
    d["payload"] = json.loads(d["payload"]) if d["payload"] else {}
    return d
