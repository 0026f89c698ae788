"""Durable key-value storage for the timer snapshot.

The snapshot is stored as one row per key under a namespace, values
JSON-encoded, all keys written in a single transaction:

    remainingTime, debtTime, isTracking, lastUpdate, screenState, appState,
    totalTimeEarned, totalTimeSpent
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .engine import TimerSnapshot
from .errors import ConcurrentModification, StorageUnavailable
from .log import get_logger

logger = get_logger("store")

KEY_REMAINING_TIME = "remainingTime"
KEY_DEBT_TIME = "debtTime"
KEY_IS_TRACKING = "isTracking"
KEY_LAST_UPDATE = "lastUpdate"
KEY_SCREEN_STATE = "screenState"
KEY_APP_STATE = "appState"
KEY_TOTAL_TIME_EARNED = "totalTimeEarned"
KEY_TOTAL_TIME_SPENT = "totalTimeSpent"

SNAPSHOT_KEYS = (
    KEY_REMAINING_TIME,
    KEY_DEBT_TIME,
    KEY_IS_TRACKING,
    KEY_LAST_UPDATE,
    KEY_SCREEN_STATE,
    KEY_APP_STATE,
    KEY_TOTAL_TIME_EARNED,
    KEY_TOTAL_TIME_SPENT,
)


def snapshot_to_record(snapshot: TimerSnapshot) -> dict[str, Any]:
    """Serialize a snapshot to its persisted key layout."""
    return {
        KEY_REMAINING_TIME: snapshot.remaining_credit,
        KEY_DEBT_TIME: snapshot.debt,
        KEY_IS_TRACKING: snapshot.is_tracking,
        KEY_LAST_UPDATE: snapshot.last_update,
        KEY_SCREEN_STATE: snapshot.screen_on,
        KEY_APP_STATE: snapshot.app_foreground,
        KEY_TOTAL_TIME_EARNED: snapshot.total_earned,
        KEY_TOTAL_TIME_SPENT: snapshot.total_spent,
    }


def _as_int(record: dict, key: str, default: int) -> int:
    value = record.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise StorageUnavailable(f"Stored value for '{key}' is not a number: {value!r}")
    return int(value)


def _as_bool(record: dict, key: str, default: bool) -> bool:
    value = record.get(key, default)
    if not isinstance(value, bool):
        raise StorageUnavailable(f"Stored value for '{key}' is not a boolean: {value!r}")
    return value


def snapshot_from_record(record: dict[str, Any]) -> TimerSnapshot:
    """Restore a snapshot from its persisted keys.

    Missing keys fall back to defaults; negative balances are folded back to
    their floor so a damaged record cannot break the invariants.
    """
    missing = [key for key in SNAPSHOT_KEYS if key not in record]
    if missing:
        logger.warning(f"Stored timer state missing keys, using defaults: {', '.join(missing)}")

    remaining = _as_int(record, KEY_REMAINING_TIME, 0)
    debt = _as_int(record, KEY_DEBT_TIME, 0)
    if remaining < 0:
        debt += -remaining
        remaining = 0
    return TimerSnapshot(
        remaining_credit=remaining,
        debt=max(0, debt),
        is_tracking=_as_bool(record, KEY_IS_TRACKING, False),
        screen_on=_as_bool(record, KEY_SCREEN_STATE, True),
        app_foreground=_as_bool(record, KEY_APP_STATE, True),
        last_update=max(0, _as_int(record, KEY_LAST_UPDATE, 0)),
        total_earned=max(0, _as_int(record, KEY_TOTAL_TIME_EARNED, 0)),
        total_spent=max(0, _as_int(record, KEY_TOTAL_TIME_SPENT, 0)),
    )


class StateStore:
    """Interface for snapshot persistence."""

    def load(self) -> Optional[TimerSnapshot]:
        """Return the stored snapshot, or None when nothing was stored yet."""
        raise NotImplementedError

    def save(self, snapshot: TimerSnapshot) -> None:
        """Persist ``snapshot`` atomically, or raise StorageUnavailable."""
        raise NotImplementedError

    def compare_and_save(self, expected: Optional[TimerSnapshot], snapshot: TimerSnapshot) -> None:
        """Persist ``snapshot`` only if the stored state still equals ``expected``.

        ``expected`` is None when nothing was stored. Raises
        ConcurrentModification, without writing, when another writer got there
        first.
        """
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryStateStore(StateStore):
    """Process-local store; state is lost when the process exits."""

    def __init__(self, record: dict[str, Any] | None = None):
        self.record: dict[str, Any] = dict(record or {})
        self.save_count = 0

    def load(self) -> Optional[TimerSnapshot]:
        if not self.record:
            return None
        return snapshot_from_record(self.record)

    def save(self, snapshot: TimerSnapshot) -> None:
        self.record = snapshot_to_record(snapshot)
        self.save_count += 1

    def compare_and_save(self, expected: Optional[TimerSnapshot], snapshot: TimerSnapshot) -> None:
        if self.load() != expected:
            raise ConcurrentModification("Timer state changed since it was read")
        self.save(snapshot)

    def clear(self) -> None:
        self.record = {}


_UPSERT_SQL = """
    INSERT INTO timer_state (namespace, key, value, updated_at)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(namespace, key) DO UPDATE SET
        value = excluded.value,
        updated_at = excluded.updated_at
"""


class SqliteStateStore(StateStore):
    """SQLite-backed store, one row per key in the ``timer_state`` table.

    Several processes may share one file (a ``watch`` loop next to one-shot
    CLI commands). Engines write through ``compare_and_save``, which checks
    and writes inside one ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: Path, namespace: str = "credit_timer"):
        self.db_path = Path(db_path)
        self.namespace = namespace
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        # Set busy timeout to 5 seconds (prevents indefinite blocking on lock contention)
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def init_tables(self) -> None:
        """Create the database file and table if needed."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as conn:
                # WAL lets a status reader run while the owner writes
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS timer_state (
                        namespace TEXT NOT NULL,
                        key TEXT NOT NULL,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (namespace, key)
                    )
                """)
                conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(f"Cannot initialize timer store at {self.db_path}: {e}") from e
        self._initialized = True

    def _ensure_tables(self) -> None:
        if not self._initialized:
            self.init_tables()

    def _read(self, conn: sqlite3.Connection) -> Optional[TimerSnapshot]:
        rows = conn.execute(
            "SELECT key, value FROM timer_state WHERE namespace = ?",
            (self.namespace,),
        ).fetchall()
        if not rows:
            return None
        try:
            record = {key: json.loads(value) for key, value in rows}
        except json.JSONDecodeError as e:
            raise StorageUnavailable(f"Corrupt timer state in {self.db_path}: {e}") from e
        return snapshot_from_record(record)

    def _rows(self, snapshot: TimerSnapshot) -> list[tuple]:
        now = datetime.now().isoformat()
        return [
            (self.namespace, key, json.dumps(value), now)
            for key, value in snapshot_to_record(snapshot).items()
        ]

    def load(self) -> Optional[TimerSnapshot]:
        self._ensure_tables()
        try:
            with closing(self._connect()) as conn:
                return self._read(conn)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot read timer state from {self.db_path}: {e}") from e

    def save(self, snapshot: TimerSnapshot) -> None:
        self._ensure_tables()
        rows = self._rows(snapshot)
        try:
            with closing(self._connect()) as conn:
                with conn:
                    conn.executemany(_UPSERT_SQL, rows)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot write timer state to {self.db_path}: {e}") from e
        logger.debug(f"Timer state saved: {snapshot}")

    def compare_and_save(self, expected: Optional[TimerSnapshot], snapshot: TimerSnapshot) -> None:
        self._ensure_tables()
        rows = self._rows(snapshot)
        try:
            with closing(self._connect()) as conn:
                conn.isolation_level = None
                # Take the write lock before reading so no other writer can slip in
                conn.execute("BEGIN IMMEDIATE")
                try:
                    current = self._read(conn)
                    if current != expected:
                        raise ConcurrentModification(
                            f"Timer state in {self.db_path} changed since it was read"
                        )
                    conn.executemany(_UPSERT_SQL, rows)
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot write timer state to {self.db_path}: {e}") from e
        logger.debug(f"Timer state saved: {snapshot}")

    def clear(self) -> None:
        self._ensure_tables()
        try:
            with closing(self._connect()) as conn:
                with conn:
                    conn.execute("DELETE FROM timer_state WHERE namespace = ?", (self.namespace,))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot clear timer state in {self.db_path}: {e}") from e
        logger.info(f"Cleared timer state '{self.namespace}' in {self.db_path}")
