"""Append-only audit trail of timer commands, stored with aiosqlite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite

from .engine import TimerSnapshot


def _now_iso() -> str:
    return datetime.now().isoformat()


class CommandLog:
    """Records every command accepted by the API with the resulting balance."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def init_tables(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout=5000")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS timer_commands (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    command TEXT NOT NULL,
                    details TEXT,
                    remaining_time INTEGER,
                    debt_time INTEGER,
                    is_tracking INTEGER,
                    created_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_timer_commands_created
                ON timer_commands(created_at DESC)
            """)
            await db.commit()

    async def record(self, command: str, details: dict | None = None, snapshot: Optional[TimerSnapshot] = None) -> int:
        """Insert one command row and return its id."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout=5000")
            cursor = await db.execute("""
                INSERT INTO timer_commands (command, details, remaining_time, debt_time, is_tracking, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                command,
                json.dumps(details) if details else None,
                snapshot.remaining_credit if snapshot else None,
                snapshot.debt if snapshot else None,
                (1 if snapshot.is_tracking else 0) if snapshot else None,
                _now_iso(),
            ))
            await db.commit()
            return cursor.lastrowid

    async def recent(self, limit: int = 20) -> list[dict]:
        """Most recent commands, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM timer_commands ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            rows = [dict(row) for row in await cursor.fetchall()]

        for row in rows:
            row["details"] = json.loads(row["details"]) if row["details"] else None
            if row["is_tracking"] is not None:
                row["is_tracking"] = bool(row["is_tracking"])
        return rows
