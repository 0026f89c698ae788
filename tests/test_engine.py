"""Unit tests for CreditTimerEngine: reconciliation, transitions, invariants.

All times are injected; no test depends on the wall clock.
"""

import math
from dataclasses import replace

import pytest

from credit_timer.engine import (
    COMMIT_ATTEMPTS,
    CreditTimerEngine,
    ReconcileResult,
    TimerEvent,
    TimerSnapshot,
    TimerUpdate,
    parse_app_state,
    reconcile_snapshot,
)
from credit_timer.errors import ConcurrentModification, InvalidArgument, StorageUnavailable
from credit_timer.store import MemoryStateStore, snapshot_to_record

START = 1_700_000_000_000
HOUR_MS = 3_600_000


# ---- Helpers ----

class FakeClock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


class FailingStore(MemoryStateStore):
    """Memory store whose reads/writes can be switched off."""

    def __init__(self, record=None):
        super().__init__(record)
        self.fail_save = False
        self.fail_load = False

    def load(self):
        if self.fail_load:
            raise StorageUnavailable("disk gone")
        return super().load()

    def save(self, snapshot):
        if self.fail_save:
            raise StorageUnavailable("disk full")
        super().save(snapshot)


class RacingStore(MemoryStateStore):
    """Memory store where another writer adds 300s of credit just before each of the next ``races`` writes."""

    def __init__(self, record=None, races: int = 1):
        super().__init__(record)
        self.races = races

    def compare_and_save(self, expected, snapshot):
        if self.races:
            self.races -= 1
            current = self.load()
            self.save(replace(current, remaining_credit=current.remaining_credit + 300))
        super().compare_and_save(expected, snapshot)


def make_engine(store=None, clock=None) -> CreditTimerEngine:
    return CreditTimerEngine(store if store is not None else MemoryStateStore(), clock=clock or FakeClock())


def make_draining_engine(credit: int, now: int = START, store=None) -> CreditTimerEngine:
    """Engine with ``credit`` seconds, tracking, screen on, app in background at ``now``."""
    engine = make_engine(store)
    engine.add_credit(credit, now=now)
    engine.start_tracking(now=now)
    engine.set_screen_on(True, now=now)
    engine.set_app_foreground(False, now=now)
    return engine


def draining_snapshot(credit: int = 100, debt: int = 0, last_update: int = START) -> TimerSnapshot:
    return TimerSnapshot(
        remaining_credit=credit,
        debt=debt,
        is_tracking=True,
        screen_on=True,
        app_foreground=False,
        last_update=last_update,
    )


# ---- Snapshot model ----

class TestTimerSnapshot:
    def test_defaults(self):
        snapshot = TimerSnapshot()
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 0
        assert not snapshot.is_tracking
        assert not snapshot.is_draining
        assert not snapshot.is_in_debt

    def test_drain_condition_requires_all_three(self):
        assert draining_snapshot().is_draining
        assert not TimerSnapshot(is_tracking=False, screen_on=True, app_foreground=False).is_draining
        assert not TimerSnapshot(is_tracking=True, screen_on=False, app_foreground=False).is_draining
        assert not TimerSnapshot(is_tracking=True, screen_on=True, app_foreground=True).is_draining

    def test_snapshot_is_immutable(self):
        snapshot = TimerSnapshot()
        with pytest.raises(AttributeError):
            snapshot.debt = 5

    def test_to_dict_includes_derived_flags(self):
        data = TimerSnapshot(debt=4, last_update=START).to_dict()
        assert data["debt"] == 4
        assert data["is_in_debt"] is True
        assert data["is_draining"] is False
        assert data["last_update"] == START

    def test_event_dict_fields(self):
        payload = draining_snapshot(credit=42, debt=0).to_event_dict(START + 5)
        assert payload == {
            "remainingTime": 42,
            "debtTime": 0,
            "isTracking": True,
            "screenOn": True,
            "appForeground": False,
            "isDraining": True,
            "isInDebt": False,
            "timestamp": START + 5,
        }


# ---- Pure reconciliation ----

class TestReconcileSnapshot:
    def test_drains_exactly_elapsed_seconds(self):
        """Drain condition true, 10s elapsed → exactly 10s drained."""
        updated, result = reconcile_snapshot(draining_snapshot(100), START + 10_000)
        assert updated.remaining_credit == 90
        assert result.drained == 10
        assert updated.last_update == START + 10_000

    def test_no_drain_in_foreground(self):
        snapshot = TimerSnapshot(remaining_credit=100, is_tracking=True, screen_on=True,
                                 app_foreground=True, last_update=START)
        updated, result = reconcile_snapshot(snapshot, START + HOUR_MS)
        assert updated.remaining_credit == 100
        assert result.drained == 0
        assert updated.last_update == START + HOUR_MS

    def test_no_drain_with_screen_off(self):
        snapshot = TimerSnapshot(remaining_credit=100, is_tracking=True, screen_on=False,
                                 app_foreground=False, last_update=START)
        updated, _ = reconcile_snapshot(snapshot, START + 60_000)
        assert updated.remaining_credit == 100

    def test_no_drain_when_not_tracking(self):
        snapshot = TimerSnapshot(remaining_credit=100, is_tracking=False, screen_on=True,
                                 app_foreground=False, last_update=START)
        updated, _ = reconcile_snapshot(snapshot, START + 60_000)
        assert updated.remaining_credit == 100

    def test_debt_conversion(self):
        """5s credit, 8s drained → credit 0, debt 3."""
        updated, result = reconcile_snapshot(draining_snapshot(5), START + 8_000)
        assert updated.remaining_credit == 0
        assert updated.debt == 3
        assert result.debt_added == 3
        assert TimerEvent.CREDIT_EXHAUSTED in result.events
        assert TimerEvent.DEBT_STARTED in result.events

    def test_existing_debt_keeps_growing(self):
        updated, result = reconcile_snapshot(draining_snapshot(0, debt=10), START + 5_000)
        assert updated.debt == 15
        assert result.events == []

    def test_exact_exhaustion_has_no_debt(self):
        updated, result = reconcile_snapshot(draining_snapshot(10), START + 10_000)
        assert updated.remaining_credit == 0
        assert updated.debt == 0
        assert result.events == [TimerEvent.CREDIT_EXHAUSTED]

    def test_sub_second_remainder_is_floored(self):
        updated, result = reconcile_snapshot(draining_snapshot(100), START + 1_999)
        assert result.elapsed == 1
        assert updated.remaining_credit == 99
        assert updated.last_update == START + 1_999

    def test_zero_elapsed_still_advances_last_update(self):
        updated, result = reconcile_snapshot(draining_snapshot(100), START + 400)
        assert result.drained == 0
        assert updated.remaining_credit == 100
        assert updated.last_update == START + 400

    def test_clock_going_backwards_drains_nothing(self):
        updated, result = reconcile_snapshot(draining_snapshot(100), START - 30_000)
        assert result.elapsed == 0
        assert updated.remaining_credit == 100
        assert updated.last_update == START

    def test_low_credit_threshold_crossed(self):
        _, result = reconcile_snapshot(draining_snapshot(310), START + 20_000)
        assert result.events == [TimerEvent.LOW_CREDIT]
        assert result.low_credit_threshold == 300

    def test_low_credit_reports_lowest_threshold_crossed(self):
        _, result = reconcile_snapshot(draining_snapshot(400), START + 350_000)
        assert result.low_credit_threshold == 60

    def test_no_low_credit_event_above_thresholds(self):
        _, result = reconcile_snapshot(draining_snapshot(1000), START + 10_000)
        assert result.events == []
        assert result.low_credit_threshold is None

    def test_total_spent_counts_drained_seconds(self):
        updated, _ = reconcile_snapshot(draining_snapshot(5), START + 8_000)
        assert updated.total_spent == 8


# ---- Engine reconcile ----

class TestEngineReconcile:
    def test_fresh_engine_starts_from_defaults(self):
        store = MemoryStateStore()
        engine = make_engine(store)
        snapshot = engine.snapshot(now=START)
        assert snapshot.remaining_credit == 0
        assert snapshot.last_update == START
        assert store.record["remainingTime"] == 0

    def test_drain_condition_correctness(self):
        engine = make_draining_engine(100)
        result = engine.reconcile(now=START + 10_000)
        assert result.drained == 10
        assert engine.snapshot(now=START + 10_000).remaining_credit == 90

    def test_reconcile_is_idempotent(self):
        store = MemoryStateStore()
        engine = make_draining_engine(100, store=store)
        engine.reconcile(now=START + 10_000)
        first = engine.snapshot(now=START + 10_000)
        saves = store.save_count

        result = engine.reconcile(now=START + 10_000)

        assert result.drained == 0
        assert engine.snapshot(now=START + 10_000) == first
        assert store.save_count == saves

    def test_uses_injected_clock_by_default(self):
        clock = FakeClock()
        engine = CreditTimerEngine(MemoryStateStore(), clock=clock)
        engine.add_credit(60)
        engine.start_tracking()
        engine.set_app_foreground(False)
        clock.advance(15)
        assert engine.snapshot().remaining_credit == 45

    def test_missed_ticks_are_caught_up(self):
        """No tick for 50s, one reconcile drains all 50."""
        engine = make_draining_engine(100)
        assert engine.reconcile(now=START + 50_000).drained == 50
        assert engine.snapshot(now=START + 50_000).remaining_credit == 50

    def test_polling_faster_than_once_a_second_drains_nothing(self):
        engine = make_draining_engine(100)
        for step in range(1, 11):
            engine.reconcile(now=START + step * 600)
        # Six seconds passed, but every call saw under a second and dropped it
        assert engine.snapshot(now=START + 6_000).remaining_credit == 100

    def test_restart_safety(self):
        """Snapshot persisted an hour ago, drain condition true, new process."""
        stale = draining_snapshot(credit=1000, last_update=START)
        store = MemoryStateStore(snapshot_to_record(stale))

        engine = make_engine(store)
        result = engine.reconcile(now=START + HOUR_MS)
        snapshot = engine.snapshot(now=START + HOUR_MS)

        assert result.drained == 3600
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 2600

    def test_restart_with_enough_credit(self):
        store = MemoryStateStore(snapshot_to_record(draining_snapshot(credit=5000, last_update=START)))
        engine = make_engine(store)
        engine.reconcile(now=START + HOUR_MS)
        snapshot = engine.snapshot(now=START + HOUR_MS)
        assert snapshot.remaining_credit == 1400
        assert snapshot.debt == 0

    def test_returns_reconcile_result(self):
        engine = make_draining_engine(5)
        result = engine.reconcile(now=START + 8_000)
        assert isinstance(result, ReconcileResult)
        assert result.debt_added == 3


# ---- Transitions ----

class TestTransitions:
    def test_foreground_change_drains_under_prior_state(self):
        engine = make_draining_engine(100)
        snapshot = engine.set_app_foreground(True, now=START + 10_000)
        assert snapshot.remaining_credit == 90
        assert engine.snapshot(now=START + 60_000).remaining_credit == 90

    def test_background_change_is_not_retroactive(self):
        engine = make_engine()
        engine.add_credit(100, now=START)
        engine.start_tracking(now=START)
        # app still in the foreground for 30s
        snapshot = engine.set_app_foreground(False, now=START + 30_000)
        assert snapshot.remaining_credit == 100
        assert engine.snapshot(now=START + 40_000).remaining_credit == 90

    def test_screen_off_stops_drain(self):
        engine = make_draining_engine(100)
        engine.set_screen_on(False, now=START + 5_000)
        assert engine.snapshot(now=START + 65_000).remaining_credit == 95

    def test_screen_on_resumes_drain(self):
        engine = make_draining_engine(100)
        engine.set_screen_on(False, now=START)
        engine.set_screen_on(True, now=START + 60_000)
        assert engine.snapshot(now=START + 70_000).remaining_credit == 90

    def test_start_tracking_does_not_count_earlier_time(self):
        engine = make_engine()
        engine.add_credit(100, now=START)
        engine.set_app_foreground(False, now=START)
        engine.start_tracking(now=START + 50_000)
        assert engine.snapshot(now=START + 60_000).remaining_credit == 90

    def test_stop_tracking_keeps_balances(self):
        engine = make_draining_engine(5)
        snapshot = engine.stop_tracking(now=START + 8_000)
        assert not snapshot.is_tracking
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 3
        assert engine.snapshot(now=START + 100_000).debt == 3

    def test_add_credit_clamps_at_zero(self):
        engine = make_engine()
        engine.add_credit(20, now=START)
        snapshot = engine.add_credit(-100, now=START)
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 0

    def test_add_credit_never_reduces_debt(self):
        engine = make_draining_engine(0)
        engine.reconcile(now=START + 5_000)
        snapshot = engine.add_credit(20, now=START + 5_000)
        assert snapshot.debt == 5
        assert snapshot.remaining_credit == 20

        snapshot = engine.add_credit(-100, now=START + 5_000)
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 5

    def test_add_credit_reconciles_first(self):
        engine = make_draining_engine(100)
        snapshot = engine.add_credit(50, now=START + 30_000)
        assert snapshot.remaining_credit == 120

    def test_add_credit_truncates_fractional_seconds(self):
        engine = make_engine()
        assert engine.add_credit(12.9, now=START).remaining_credit == 12

    @pytest.mark.parametrize("bad", [math.inf, -math.inf, math.nan, "60", None, True])
    def test_add_credit_rejects_invalid_amounts(self, bad):
        store = MemoryStateStore()
        engine = make_engine(store)
        engine.add_credit(30, now=START)
        saves = store.save_count
        with pytest.raises(InvalidArgument):
            engine.add_credit(bad, now=START)
        assert store.save_count == saves
        assert engine.snapshot(now=START).remaining_credit == 30

    def test_total_earned_counts_positive_credit_only(self):
        engine = make_engine()
        engine.add_credit(60, now=START)
        engine.add_credit(-30, now=START)
        engine.add_credit(90, now=START)
        assert engine.snapshot(now=START).total_earned == 150

    def test_reset_clears_both(self):
        engine = make_draining_engine(5)
        engine.reconcile(now=START + 8_000)
        snapshot = engine.reset(now=START + 9_000)
        assert snapshot.remaining_credit == 0
        assert snapshot.debt == 0
        assert not snapshot.is_tracking
        assert snapshot.last_update == START + 9_000

    def test_reset_keeps_screen_and_app_flags(self):
        engine = make_draining_engine(100)
        engine.set_screen_on(False, now=START)
        snapshot = engine.reset(now=START + 1_000)
        assert not snapshot.screen_on
        assert not snapshot.app_foreground

    def test_reset_keeps_lifetime_statistics(self):
        engine = make_draining_engine(100)
        engine.reconcile(now=START + 10_000)
        snapshot = engine.reset(now=START + 10_000)
        assert snapshot.total_earned == 100
        assert snapshot.total_spent == 10

    def test_no_drain_after_reset(self):
        engine = make_draining_engine(100)
        engine.reset(now=START)
        engine.add_credit(50, now=START)
        assert engine.snapshot(now=START + 60_000).remaining_credit == 50

    @pytest.mark.parametrize("bad", [1, "on", None])
    def test_flags_must_be_bool(self, bad):
        engine = make_engine()
        with pytest.raises(InvalidArgument):
            engine.set_screen_on(bad, now=START)
        with pytest.raises(InvalidArgument):
            engine.set_app_foreground(bad, now=START)

    @pytest.mark.parametrize("bad", [-1, True, math.nan, "now"])
    def test_invalid_timestamps_rejected(self, bad):
        engine = make_engine()
        with pytest.raises(InvalidArgument):
            engine.reconcile(now=bad)

    def test_export_data(self):
        engine = make_draining_engine(100)
        data = engine.export_data(now=START + 10_000)
        assert data["timerState"]["remainingTimeSeconds"] == 90
        assert data["timerState"]["isTracking"] is True
        assert data["statistics"] == {"totalTimeEarned": 100, "totalTimeSpent": 10}
        assert data["exportDate"] == START + 10_000


# ---- Invariants over an operation sequence ----

class TestInvariants:
    OPERATIONS = [
        ("add", 30), ("start", None), ("background", None), ("wait", 12),
        ("screen_off", None), ("wait", 40), ("screen_on", None), ("wait", 25),
        ("add", -10), ("wait", 7), ("foreground", None), ("wait", 100),
        ("background", None), ("add", 15), ("wait", 60), ("stop", None),
        ("wait", 30), ("start", None), ("wait", 3),
    ]

    def _run(self, engine):
        now = START
        snapshots = []
        for op, arg in self.OPERATIONS:
            if op == "wait":
                now += arg * 1000
                engine.reconcile(now=now)
            elif op == "add":
                engine.add_credit(arg, now=now)
            elif op == "start":
                engine.start_tracking(now=now)
            elif op == "stop":
                engine.stop_tracking(now=now)
            elif op == "background":
                engine.set_app_foreground(False, now=now)
            elif op == "foreground":
                engine.set_app_foreground(True, now=now)
            elif op == "screen_on":
                engine.set_screen_on(True, now=now)
            elif op == "screen_off":
                engine.set_screen_on(False, now=now)
            snapshots.append(engine.snapshot(now=now))
        return snapshots

    def test_debt_is_monotonic_without_reset(self):
        snapshots = self._run(make_engine())
        debts = [s.debt for s in snapshots]
        assert debts == sorted(debts)
        assert debts[-1] > 0

    def test_balance_floor_after_every_operation(self):
        for snapshot in self._run(make_engine()):
            assert snapshot.remaining_credit >= 0
            assert snapshot.debt >= 0

    def test_last_update_is_monotonic(self):
        stamps = [s.last_update for s in self._run(make_engine())]
        assert stamps == sorted(stamps)


# ---- Storage failures ----

class TestStorageFailure:
    def test_failed_add_credit_is_not_applied(self):
        store = FailingStore()
        engine = make_engine(store)
        engine.add_credit(50, now=START)

        store.fail_save = True
        with pytest.raises(StorageUnavailable):
            engine.add_credit(100, now=START)
        store.fail_save = False

        assert engine.snapshot(now=START).remaining_credit == 50
        assert store.record["remainingTime"] == 50

    def test_failed_reconcile_keeps_last_persisted_state(self):
        store = FailingStore()
        engine = make_draining_engine(100, store=store)

        store.fail_save = True
        with pytest.raises(StorageUnavailable):
            engine.reconcile(now=START + 10_000)
        store.fail_save = False

        # The interval is replayed on the next successful call
        assert engine.snapshot(now=START + 20_000).remaining_credit == 80

    def test_load_failure_propagates(self):
        store = FailingStore()
        store.fail_load = True
        engine = make_engine(store)
        with pytest.raises(StorageUnavailable):
            engine.snapshot(now=START)


# ---- Concurrent writers ----

class TestConcurrentWriters:
    def test_lost_race_is_rebuilt_from_fresh_state(self):
        store = RacingStore(snapshot_to_record(TimerSnapshot(last_update=START)))
        engine = make_engine(store)

        snapshot = engine.add_credit(50, now=START)

        assert snapshot.remaining_credit == 350
        assert store.record["remainingTime"] == 350

    def test_gives_up_after_repeated_races(self):
        store = RacingStore(snapshot_to_record(TimerSnapshot(last_update=START)), races=COMMIT_ATTEMPTS)
        engine = make_engine(store)

        with pytest.raises(ConcurrentModification):
            engine.add_credit(50, now=START)

        # Only the other writer's credit landed
        assert store.record["remainingTime"] == 300 * COMMIT_ATTEMPTS

    def test_concurrent_modification_is_a_storage_failure(self):
        assert issubclass(ConcurrentModification, StorageUnavailable)

    def test_unchanged_state_is_not_written(self):
        store = RacingStore(snapshot_to_record(TimerSnapshot(last_update=START)))
        engine = make_engine(store)
        engine.reconcile(now=START)
        # No write attempted, so the racing writer never ran
        assert store.races == 1


# ---- Subscriptions ----

class TestSubscriptions:
    def test_subscriber_sees_every_operation(self):
        engine = make_engine()
        updates: list[TimerUpdate] = []
        engine.subscribe(updates.append)

        engine.add_credit(10, now=START)
        engine.start_tracking(now=START)
        engine.reconcile(now=START + 1_000)
        engine.reset(now=START + 2_000)

        assert [u.operation for u in updates] == ["add_credit", "start", "reconcile", "reset"]
        assert updates[-1].to_event_dict()["timestamp"] == START + 2_000

    def test_events_are_published(self):
        engine = make_draining_engine(5)
        updates = []
        engine.subscribe(updates.append)
        engine.reconcile(now=START + 8_000)
        assert updates[0].events == (TimerEvent.CREDIT_EXHAUSTED, TimerEvent.DEBT_STARTED)

    def test_unsubscribe(self):
        engine = make_engine()
        updates = []
        unsubscribe = engine.subscribe(updates.append)
        unsubscribe()
        engine.add_credit(10, now=START)
        assert updates == []

    def test_failing_subscriber_does_not_break_engine(self):
        engine = make_engine()

        def broken(update):
            raise RuntimeError("renderer crashed")

        seen = []
        engine.subscribe(broken)
        engine.subscribe(seen.append)
        snapshot = engine.add_credit(10, now=START)
        assert snapshot.remaining_credit == 10
        assert len(seen) == 1

    def test_subscriber_may_query_engine(self):
        engine = make_engine()
        seen = []

        def on_update(update):
            # Reads publish a "snapshot" update of their own
            if update.operation == "add_credit":
                seen.append(engine.snapshot(now=update.timestamp))

        engine.subscribe(on_update)
        engine.add_credit(10, now=START)
        assert seen[0].remaining_credit == 10


# ---- App state parsing ----

class TestParseAppState:
    @pytest.mark.parametrize("state", ["foreground", "active", "Active "])
    def test_foreground(self, state):
        assert parse_app_state(state) is True

    @pytest.mark.parametrize("state", ["background", "inactive", "BACKGROUND"])
    def test_background(self, state):
        assert parse_app_state(state) is False

    def test_unknown(self):
        with pytest.raises(InvalidArgument):
            parse_app_state("suspended")
