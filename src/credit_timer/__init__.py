"""Screen-time credit timer: restart-safe credit/debt accounting."""

from .engine import (
    LOW_CREDIT_THRESHOLDS,
    CreditTimerEngine,
    ReconcileResult,
    TimerEvent,
    TimerSnapshot,
    TimerUpdate,
    now_ms,
    parse_app_state,
    reconcile_snapshot,
)
from .errors import ConcurrentModification, CreditTimerError, InvalidArgument, StorageUnavailable
from .rewards import answer_points, debt_penalty, reward_seconds_for_answer
from .scheduler import TickScheduler
from .store import MemoryStateStore, SqliteStateStore, StateStore

__all__ = [
    "LOW_CREDIT_THRESHOLDS",
    "ConcurrentModification",
    "CreditTimerEngine",
    "CreditTimerError",
    "InvalidArgument",
    "MemoryStateStore",
    "ReconcileResult",
    "SqliteStateStore",
    "StateStore",
    "StorageUnavailable",
    "TickScheduler",
    "TimerEvent",
    "TimerSnapshot",
    "TimerUpdate",
    "answer_points",
    "debt_penalty",
    "now_ms",
    "parse_app_state",
    "reconcile_snapshot",
    "reward_seconds_for_answer",
]
