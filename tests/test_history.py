"""Tests for the aiosqlite command audit log."""

import asyncio

import pytest
import pytest_asyncio

from credit_timer.engine import TimerSnapshot
from credit_timer.history import CommandLog


def run(coro):
    """Run an async function in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def command_log(tmp_path):
    log = CommandLog(tmp_path / "nested" / "timer.db")
    run(log.init_tables())
    return log


class TestCommandLog:
    def test_init_is_idempotent(self, command_log):
        run(command_log.init_tables())
        assert run(command_log.recent()) == []

    def test_record_returns_id(self, command_log):
        first = run(command_log.record("start"))
        second = run(command_log.record("stop"))
        assert second == first + 1

    def test_record_with_snapshot_and_details(self, command_log):
        snapshot = TimerSnapshot(remaining_credit=120, debt=3, is_tracking=True)
        run(command_log.record("add_credit", {"seconds": 60}, snapshot))

        [row] = run(command_log.recent())
        assert row["command"] == "add_credit"
        assert row["details"] == {"seconds": 60}
        assert row["remaining_time"] == 120
        assert row["debt_time"] == 3
        assert row["is_tracking"] is True
        assert row["created_at"]

    def test_record_without_snapshot(self, command_log):
        run(command_log.record("reset"))
        [row] = run(command_log.recent())
        assert row["details"] is None
        assert row["remaining_time"] is None
        assert row["is_tracking"] is None

    def test_recent_newest_first_with_limit(self, command_log):
        for name in ("start", "screen", "stop"):
            run(command_log.record(name))
        rows = run(command_log.recent(limit=2))
        assert [row["command"] for row in rows] == ["stop", "screen"]


@pytest_asyncio.fixture
async def async_log(tmp_path):
    log = CommandLog(tmp_path / "timer.db")
    await log.init_tables()
    return log


class TestCommandLogInLoop:
    """Same log used from inside a running loop, as the API does."""

    @pytest.mark.asyncio
    async def test_concurrent_records(self, async_log):
        await asyncio.gather(*(async_log.record("screen", {"screen_on": i % 2 == 0}) for i in range(10)))
        rows = await async_log.recent(limit=50)
        assert len(rows) == 10
        assert {row["details"]["screen_on"] for row in rows} == {True, False}
