"""Periodic reconciliation driven by APScheduler.

Ticks are best-effort. The engine reconciles on every call anyway, so delayed,
coalesced or missed ticks only delay how soon a presenter sees the new
balance.
"""

from __future__ import annotations

from apscheduler.triggers.interval import IntervalTrigger

from .engine import CreditTimerEngine, ReconcileResult
from .errors import StorageUnavailable
from .log import get_logger

logger = get_logger("scheduler")

TICK_JOB_ID = "credit_timer_tick"


class TickScheduler:
    """Registers one interval job that calls ``engine.reconcile()``.

    ``scheduler`` is any APScheduler scheduler; starting the scheduler itself
    is left to its owner (the API lifespan or the CLI ``watch`` command).
    """

    def __init__(self, engine: CreditTimerEngine, scheduler, interval_seconds: float = 1.0):
        self.engine = engine
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.failed_ticks = 0

    @property
    def is_running(self) -> bool:
        return self.scheduler.get_job(TICK_JOB_ID) is not None

    def start(self) -> bool:
        """Register the tick job. Returns False if it was already registered."""
        if self.is_running:
            return False
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=TICK_JOB_ID,
            name="Credit timer tick",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"Tick scheduler started ({self.interval_seconds}s interval)")
        return True

    def stop(self) -> bool:
        """Cancel future ticks. The snapshot is not touched."""
        if not self.is_running:
            return False
        self.scheduler.remove_job(TICK_JOB_ID)
        logger.info("Tick scheduler stopped")
        return True

    def tick(self) -> ReconcileResult | None:
        """One reconciliation. Storage failures are logged; the next tick retries."""
        try:
            result = self.engine.reconcile()
        except StorageUnavailable as e:
            self.failed_ticks += 1
            logger.warning(f"Tick failed ({self.failed_ticks} consecutive): {e}")
            return None
        if self.failed_ticks:
            logger.info(f"Tick recovered after {self.failed_ticks} failed attempts")
            self.failed_ticks = 0
        return result
