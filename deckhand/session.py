"""Session persistence with SQLite storage."""

import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from deckhand.actions import ActionResult, ToolMessage
from deckhand.config import get_config
from deckhand.history import ConversationTurn
from deckhand.logging import get_logger

log = get_logger(__name__)


class SessionStore(Protocol):
    """Sink for conversation turns and action results."""

    async def save_turn(self, session_id: str, turn: ConversationTurn) -> None: ...

    async def save_result(self, session_id: str, result: ActionResult) -> None: ...


def _result_record(result: ActionResult) -> dict[str, Any]:
    request = result.request
    content: Any = result.content
    if isinstance(content, ToolMessage):
        content = asdict(content)
    return {
        "call_id": request.call_id,
        "name": request.name,
        "arguments": request.arguments,
        "protocol": request.protocol.value,
        "extraction_ok": request.extraction_ok,
        "failure_reason": request.failure_reason,
        "state": result.state.value,
        "content": content,
        "started_at": result.started_at.isoformat() if result.started_at else None,
        "finished_at": result.finished_at.isoformat() if result.finished_at else None,
    }


class SqliteSessionStore:
    """Append-only turn and result log in a SQLite file."""

    def __init__(self, db_path: Path | str | None = None):
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    call_id TEXT,
                    tool_name TEXT,
                    tool_calls TEXT,
                    group_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    call_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id, id)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_results_session ON results(session_id, id)"
            )
            await self._db.commit()
        return self._db

    async def save_turn(self, session_id: str, turn: ConversationTurn) -> None:
        async with self._lock:
            db = await self._ensure_db()
            await db.execute(
                """
                INSERT INTO turns
                    (session_id, role, content, call_id, tool_name, tool_calls, group_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    turn.role,
                    turn.content,
                    turn.call_id,
                    turn.tool_name,
                    json.dumps(turn.tool_calls, default=str) if turn.tool_calls else None,
                    turn.group_id,
                    turn.timestamp,
                ),
            )
            await db.commit()

    async def save_result(self, session_id: str, result: ActionResult) -> None:
        async with self._lock:
            db = await self._ensure_db()
            await db.execute(
                "INSERT INTO results (session_id, call_id, name, state, payload) VALUES (?, ?, ?, ?, ?)",
                (
                    session_id,
                    result.call_id,
                    result.request.name,
                    result.state.value,
                    json.dumps(_result_record(result), ensure_ascii=False, default=str),
                ),
            )
            await db.commit()

    async def load_turns(self, session_id: str) -> list[ConversationTurn]:
        """Turns of a session in the order they were saved."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT role, content, call_id, tool_name, tool_calls, group_id, created_at
            FROM turns WHERE session_id = ? ORDER BY id
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ConversationTurn(
                role=row[0],
                content=row[1],
                call_id=row[2],
                tool_name=row[3],
                tool_calls=json.loads(row[4]) if row[4] else None,
                group_id=row[5],
                timestamp=row[6],
            )
            for row in rows
        ]

    async def load_results(self, session_id: str) -> list[dict[str, Any]]:
        """Saved result records of a session, oldest first."""
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM results WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
