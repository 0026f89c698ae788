"""Credit timer engine.

Screen-time credit drains while tracking is on, the screen is on and the host
app is in the background. Once the credit pool runs dry the overdraw accrues
as debt.

Elapsed time is replayed against the last persisted state on every call, so a
missed tick or a process restart never loses the accounting. Timestamps are
integer epoch milliseconds; the unit of account is whole seconds. The clock is
injected for deterministic testing.

Every reconcile moves ``last_update`` to ``now`` and drops the sub-second
remainder, including when less than a second has elapsed. A caller that
reconciles more often than once a second (a fast status poll, for example)
therefore stops the drain entirely, and a 1 Hz tick with jitter under-counts
by the lost remainders.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from numbers import Integral, Real
from typing import Callable

from .errors import ConcurrentModification, InvalidArgument
from .log import get_logger

logger = get_logger("engine")

# Balances (seconds) at which a LOW_CREDIT event fires when crossed downward.
LOW_CREDIT_THRESHOLDS = (300, 60)

# Read-build-write rounds before a lost race with another writer is surfaced
COMMIT_ATTEMPTS = 3

_FOREGROUND_STATES = ("foreground", "active")
_BACKGROUND_STATES = ("background", "inactive")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_app_state(state: str) -> bool:
    """Map a host-app lifecycle name to ``app_foreground``."""
    normalized = state.strip().lower()
    if normalized in _FOREGROUND_STATES:
        return True
    if normalized in _BACKGROUND_STATES:
        return False
    valid = ", ".join(_FOREGROUND_STATES + _BACKGROUND_STATES)
    raise InvalidArgument(f"Unknown app state '{state}'. Valid options: {valid}")


class TimerEvent(Enum):
    LOW_CREDIT = "low_credit"
    CREDIT_EXHAUSTED = "credit_exhausted"
    DEBT_STARTED = "debt_started"


@dataclass(frozen=True)
class TimerSnapshot:
    """Complete persisted state of the timer at one instant."""

    remaining_credit: int = 0
    debt: int = 0
    is_tracking: bool = False
    screen_on: bool = True
    app_foreground: bool = True
    last_update: int = 0
    total_earned: int = 0
    total_spent: int = 0

    @property
    def is_draining(self) -> bool:
        """The drain condition: tracking, screen on, app in background."""
        return self.is_tracking and self.screen_on and not self.app_foreground

    @property
    def is_in_debt(self) -> bool:
        return self.debt > 0

    def to_dict(self) -> dict:
        """snake_case dict including the derived flags."""
        return {
            "remaining_credit": self.remaining_credit,
            "debt": self.debt,
            "is_tracking": self.is_tracking,
            "screen_on": self.screen_on,
            "app_foreground": self.app_foreground,
            "last_update": self.last_update,
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
            "is_draining": self.is_draining,
            "is_in_debt": self.is_in_debt,
        }

    def to_event_dict(self, timestamp: int | None = None) -> dict:
        """CamelCase update payload for presentation and event consumers."""
        return {
            "remainingTime": self.remaining_credit,
            "debtTime": self.debt,
            "isTracking": self.is_tracking,
            "screenOn": self.screen_on,
            "appForeground": self.app_foreground,
            "isDraining": self.is_draining,
            "isInDebt": self.is_in_debt,
            "timestamp": self.last_update if timestamp is None else timestamp,
        }


@dataclass
class ReconcileResult:
    elapsed: int = 0
    drained: int = 0
    debt_added: int = 0
    events: list[TimerEvent] = field(default_factory=list)
    low_credit_threshold: int | None = None


@dataclass(frozen=True)
class TimerUpdate:
    """Published to subscribers after every engine operation."""

    operation: str
    snapshot: TimerSnapshot
    events: tuple[TimerEvent, ...] = ()
    timestamp: int = 0
    low_credit_threshold: int | None = None

    def to_event_dict(self) -> dict:
        return self.snapshot.to_event_dict(self.timestamp)


def reconcile_snapshot(snapshot: TimerSnapshot, now: int) -> tuple[TimerSnapshot, ReconcileResult]:
    """Apply the wall-clock time elapsed since ``snapshot.last_update``.

    The drain condition is sampled from ``snapshot`` as it was stored; toggles
    in between two reconciliations are not observed, and the sub-second part
    of the interval is dropped when ``last_update`` moves forward.
    """
    result = ReconcileResult()
    result.elapsed = max(0, (now - snapshot.last_update) // 1000)
    last_update = max(snapshot.last_update, now)

    if result.elapsed == 0 or not snapshot.is_draining:
        return replace(snapshot, last_update=last_update), result

    previous = snapshot.remaining_credit
    remaining = previous - result.elapsed
    debt = snapshot.debt
    if remaining < 0:
        result.debt_added = -remaining
        debt += result.debt_added
        remaining = 0
    result.drained = result.elapsed

    if previous > 0 and remaining == 0:
        result.events.append(TimerEvent.CREDIT_EXHAUSTED)
    else:
        crossed = [t for t in LOW_CREDIT_THRESHOLDS if previous > t >= remaining]
        if crossed:
            result.low_credit_threshold = min(crossed)
            result.events.append(TimerEvent.LOW_CREDIT)
    if snapshot.debt == 0 and debt > 0:
        result.events.append(TimerEvent.DEBT_STARTED)

    updated = replace(
        snapshot,
        remaining_credit=remaining,
        debt=debt,
        last_update=last_update,
        total_spent=snapshot.total_spent + result.drained,
    )
    return updated, result


def _validate_now(now) -> int:
    if isinstance(now, bool) or not isinstance(now, Real):
        raise InvalidArgument(f"timestamp must be epoch milliseconds, got {now!r}")
    if not isinstance(now, Integral) and not math.isfinite(now):
        raise InvalidArgument(f"timestamp must be finite, got {now!r}")
    if now < 0:
        raise InvalidArgument(f"timestamp must not be negative, got {now!r}")
    return int(now)


def _validate_seconds(seconds) -> int:
    if isinstance(seconds, bool) or not isinstance(seconds, Real):
        raise InvalidArgument(f"credit adjustment must be a number of seconds, got {seconds!r}")
    if not isinstance(seconds, Integral) and not math.isfinite(seconds):
        raise InvalidArgument(f"credit adjustment must be finite, got {seconds!r}")
    return int(seconds)


def _validate_flag(name: str, value) -> bool:
    if not isinstance(value, bool):
        raise InvalidArgument(f"{name} must be a bool, got {value!r}")
    return value


class CreditTimerEngine:
    """Owns every transition applied to the stored credit snapshot.

    Public operations are serialized by one lock. Each one re-reads the store,
    reconciles, and writes back with ``compare_and_save`` before returning, so
    writes made by other processes sharing the store are never overwritten.
    When the store fails nothing is applied and the stored snapshot stays
    authoritative.
    """

    def __init__(self, store, clock: Callable[[], int] = now_ms):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[TimerUpdate], None]] = []

    @property
    def store(self):
        return self._store

    # ---- Subscriptions ----

    def subscribe(self, callback: Callable[[TimerUpdate], None]) -> Callable[[], None]:
        """Register ``callback`` for updates. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ---- Core methods ----

    def reconcile(self, now: int | None = None) -> ReconcileResult:
        """Drain the time elapsed since the last update under the stored state."""
        updated, result, now = self._apply(now, reconcile_snapshot)
        if result.drained:
            logger.debug(
                f"Reconciled {result.elapsed}s: drained={result.drained} debt_added={result.debt_added} "
                f"remaining={updated.remaining_credit} debt={updated.debt}"
            )
        self._publish("reconcile", updated, result, now)
        return result

    def snapshot(self, now: int | None = None) -> TimerSnapshot:
        """Reconcile, then return the current immutable snapshot."""
        return self._transition("snapshot", now, lambda s: s)

    get_snapshot = snapshot

    def set_screen_on(self, screen_on: bool, now: int | None = None) -> TimerSnapshot:
        screen_on = _validate_flag("screen_on", screen_on)
        logger.info(f"Screen turned {'ON' if screen_on else 'OFF'}")
        return self._transition("screen", now, lambda s: replace(s, screen_on=screen_on))

    def set_app_foreground(self, app_foreground: bool, now: int | None = None) -> TimerSnapshot:
        app_foreground = _validate_flag("app_foreground", app_foreground)
        logger.info(f"App moved to {'foreground' if app_foreground else 'background'}")
        return self._transition("app_state", now, lambda s: replace(s, app_foreground=app_foreground))

    def start_tracking(self, now: int | None = None) -> TimerSnapshot:
        logger.info("Starting credit tracking")
        return self._transition("start", now, lambda s: replace(s, is_tracking=True))

    def stop_tracking(self, now: int | None = None) -> TimerSnapshot:
        logger.info("Stopping credit tracking")
        return self._transition("stop", now, lambda s: replace(s, is_tracking=False))

    def add_credit(self, seconds: int, now: int | None = None) -> TimerSnapshot:
        """Adjust the credit pool by ``seconds`` (may be negative).

        The pool is clamped at zero and debt is never paid down here.
        """
        seconds = _validate_seconds(seconds)

        def apply(s: TimerSnapshot) -> TimerSnapshot:
            return replace(
                s,
                remaining_credit=max(0, s.remaining_credit + seconds),
                total_earned=s.total_earned + max(0, seconds),
            )

        snapshot = self._transition("add_credit", now, apply)
        logger.info(f"Adjusted credit by {seconds}s, remaining={snapshot.remaining_credit} debt={snapshot.debt}")
        return snapshot

    def reset(self, now: int | None = None) -> TimerSnapshot:
        """Zero credit and debt and stop tracking. Screen/app flags are kept."""

        def build(current: TimerSnapshot, now: int) -> tuple[TimerSnapshot, ReconcileResult]:
            updated = replace(
                current,
                remaining_credit=0,
                debt=0,
                is_tracking=False,
                last_update=max(current.last_update, now),
            )
            return updated, ReconcileResult()

        updated, result, now = self._apply(now, build)
        logger.info("Timer reset")
        self._publish("reset", updated, result, now)
        return updated

    def export_data(self, now: int | None = None) -> dict:
        """Timer state and lifetime statistics as a JSON-ready dict."""
        snapshot = self.snapshot(now)
        return {
            "timerState": {
                "remainingTimeSeconds": snapshot.remaining_credit,
                "debtTimeSeconds": snapshot.debt,
                "isTracking": snapshot.is_tracking,
                "screenOn": snapshot.screen_on,
                "appForeground": snapshot.app_foreground,
                "lastUpdateTime": snapshot.last_update,
            },
            "statistics": {
                "totalTimeEarned": snapshot.total_earned,
                "totalTimeSpent": snapshot.total_spent,
            },
            "exportDate": snapshot.last_update,
        }

    # ---- Internal ----

    def _resolve_now(self, now) -> int:
        return _validate_now(self._clock() if now is None else now)

    def _apply(
        self,
        now,
        build: Callable[[TimerSnapshot, int], tuple[TimerSnapshot, ReconcileResult]],
    ) -> tuple[TimerSnapshot, ReconcileResult, int]:
        """Read the store, ``build`` the next snapshot from it, write it back.

        A write that loses to another process is rebuilt from the fresh state,
        up to COMMIT_ATTEMPTS times.
        """
        with self._lock:
            now = self._resolve_now(now)
            for attempt in range(1, COMMIT_ATTEMPTS + 1):
                stored = self._store.load()
                if stored is None:
                    logger.info("No stored timer state, starting from defaults")
                    current = TimerSnapshot(last_update=now)
                else:
                    current = stored
                updated, result = build(current, now)
                if updated == stored:
                    return updated, result, now
                try:
                    self._store.compare_and_save(stored, updated)
                except ConcurrentModification:
                    if attempt == COMMIT_ATTEMPTS:
                        raise
                    logger.warning(f"Timer state changed by another writer, retrying ({attempt}/{COMMIT_ATTEMPTS})")
                    continue
                return updated, result, now
        raise AssertionError("unreachable")

    def _transition(self, operation: str, now, mutate: Callable[[TimerSnapshot], TimerSnapshot]) -> TimerSnapshot:
        """Reconcile under the prior state, apply ``mutate``, persist."""

        def build(current: TimerSnapshot, now: int) -> tuple[TimerSnapshot, ReconcileResult]:
            reconciled, result = reconcile_snapshot(current, now)
            return mutate(reconciled), result

        updated, result, now = self._apply(now, build)
        self._publish(operation, updated, result, now)
        return updated

    def _publish(self, operation: str, snapshot: TimerSnapshot, result: ReconcileResult, now: int) -> None:
        if not self._subscribers:
            return
        update = TimerUpdate(
            operation=operation,
            snapshot=snapshot,
            events=tuple(result.events),
            timestamp=now,
            low_credit_threshold=result.low_credit_threshold,
        )
        for callback in list(self._subscribers):
            try:
                callback(update)
            except Exception:
                logger.exception(f"Timer update subscriber {callback!r} failed during '{operation}'")
