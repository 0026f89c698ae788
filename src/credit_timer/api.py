"""
Credit Timer API: local FastAPI server for the screen-time credit engine.

This server provides:
- The command surface event sources call (screen, app state, tracking, credit)
- Snapshot and notification queries for presenters
- A 1 Hz reconciliation tick while the process is alive
- A command audit log and the recent server log
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import TimerConfig, load_config
from .engine import CreditTimerEngine, TimerSnapshot, now_ms, parse_app_state
from .errors import InvalidArgument, StorageUnavailable
from .history import CommandLog
from .log import configure_logging, get_logger, recent_logs
from .notification import NotificationPresenter, build_notification, format_duration
from .rewards import answer_points, reward_seconds_for_answer
from .scheduler import TickScheduler
from .store import SqliteStateStore, StateStore

logger = get_logger("api")


# ============ Models ============

class TimerStatusResponse(BaseModel):
    remaining_time: int
    debt_time: int
    is_tracking: bool
    screen_on: bool
    app_foreground: bool
    is_draining: bool
    is_in_debt: bool
    last_update: int
    remaining_display: str
    debt_display: str
    total_earned: int
    total_spent: int


class AddCreditRequest(BaseModel):
    seconds: int = Field(..., description="Seconds to add; negative values deduct")


class ScreenStateRequest(BaseModel):
    screen_on: bool


class AppStateRequest(BaseModel):
    state: str = Field(..., description="foreground/active or background/inactive")


class AnswerRewardRequest(BaseModel):
    correct: bool
    difficulty: str = "easy"
    response_time_ms: int = Field(0, ge=0)
    streak_count: int = Field(0, ge=0, description="Correct answers in a row, including this one")


class AnswerRewardResponse(BaseModel):
    reward_seconds: int
    points: int
    timer: TimerStatusResponse


class NotificationResponse(BaseModel):
    title: str
    text: str
    color: str
    status: str


class LogEntry(BaseModel):
    timestamp: str
    level: str
    logger: str
    message: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]
    count: int


def to_status(snapshot: TimerSnapshot) -> TimerStatusResponse:
    return TimerStatusResponse(
        remaining_time=snapshot.remaining_credit,
        debt_time=snapshot.debt,
        is_tracking=snapshot.is_tracking,
        screen_on=snapshot.screen_on,
        app_foreground=snapshot.app_foreground,
        is_draining=snapshot.is_draining,
        is_in_debt=snapshot.is_in_debt,
        last_update=snapshot.last_update,
        remaining_display=format_duration(snapshot.remaining_credit),
        debt_display=format_duration(snapshot.debt),
        total_earned=snapshot.total_earned,
        total_spent=snapshot.total_spent,
    )


# ============ App Factory ============

def create_app(
    config: Optional[TimerConfig] = None,
    store: Optional[StateStore] = None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """Build the API around one engine. ``store``/``clock`` are injectable for tests."""
    config = config or load_config()
    configure_logging(config.log_level)

    store = store or SqliteStateStore(config.db_path, config.namespace)
    engine = CreditTimerEngine(store, clock=clock)
    command_log = CommandLog(config.db_path)
    presenter = NotificationPresenter()
    presenter.attach(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await command_log.init_tables()
        scheduler = AsyncIOScheduler()
        ticker = TickScheduler(engine, scheduler, config.tick_seconds)
        ticker.start()
        scheduler.start()
        app.state.scheduler = scheduler
        app.state.ticker = ticker
        logger.info(f"Credit timer API started (db={config.db_path}, namespace={config.namespace})")
        try:
            # Bring the balance up to date before serving
            await _run(engine.reconcile)
        except StorageUnavailable as e:
            logger.error(f"Initial reconcile failed: {e}")
        yield

        # Shutdown
        ticker.stop()
        scheduler.shutdown(wait=False)
        logger.info("Credit timer API stopped")

    app = FastAPI(
        title="Credit-Timer-API",
        description="Local FastAPI server for screen-time credit tracking",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.command_log = command_log
    app.state.presenter = presenter
    app.state.ticker = None

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidArgument)
    async def invalid_argument_handler(request: Request, exc: InvalidArgument):
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
        logger.error(f"Storage unavailable for {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    async def _run(fn, *args):
        # Engine calls take a thread lock and do blocking sqlite I/O
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def _record(command: str, snapshot: TimerSnapshot, details: dict | None = None) -> None:
        try:
            await command_log.record(command, details, snapshot)
        except Exception as e:
            # The command already took effect; a lost audit row must not fail it
            logger.error(f"Failed to record command '{command}': {e}")

    # ============ Timer Endpoints ============

    @app.get("/api/timer", response_model=TimerStatusResponse)
    def get_timer():
        """Current balance, reconciled to now."""
        return to_status(engine.get_snapshot())

    @app.post("/api/timer/start", response_model=TimerStatusResponse)
    async def start_tracking():
        snapshot = await _run(engine.start_tracking)
        await _record("start", snapshot)
        return to_status(snapshot)

    @app.post("/api/timer/stop", response_model=TimerStatusResponse)
    async def stop_tracking():
        snapshot = await _run(engine.stop_tracking)
        await _record("stop", snapshot)
        return to_status(snapshot)

    @app.post("/api/timer/credit", response_model=TimerStatusResponse)
    async def add_credit(request: AddCreditRequest):
        snapshot = await _run(engine.add_credit, request.seconds)
        await _record("add_credit", snapshot, {"seconds": request.seconds})
        return to_status(snapshot)

    @app.post("/api/timer/reset", response_model=TimerStatusResponse)
    async def reset_timer():
        snapshot = await _run(engine.reset)
        await _record("reset", snapshot)
        return to_status(snapshot)

    @app.post("/api/timer/screen", response_model=TimerStatusResponse)
    async def set_screen(request: ScreenStateRequest):
        snapshot = await _run(engine.set_screen_on, request.screen_on)
        await _record("screen", snapshot, {"screen_on": request.screen_on})
        return to_status(snapshot)

    @app.post("/api/timer/app-state", response_model=TimerStatusResponse)
    async def set_app_state(request: AppStateRequest):
        foreground = parse_app_state(request.state)
        snapshot = await _run(engine.set_app_foreground, foreground)
        await _record("app_state", snapshot, {"state": request.state})
        return to_status(snapshot)

    @app.get("/api/timer/notification", response_model=NotificationResponse)
    def get_notification():
        """What the persistent notification should currently show."""
        content = build_notification(engine.get_snapshot())
        return NotificationResponse(
            title=content.title, text=content.text, color=content.color, status=content.status
        )

    @app.get("/api/timer/export")
    def export_timer():
        return engine.export_data()

    @app.get("/api/timer/commands")
    async def list_commands(limit: int = 20):
        return await command_log.recent(limit)

    @app.post("/api/rewards/answer", response_model=AnswerRewardResponse)
    async def reward_answer(request: AnswerRewardRequest):
        """Credit a quiz answer: correct answers earn seconds and points, wrong ones nothing."""
        if not request.correct:
            snapshot = await _run(engine.get_snapshot)
            return AnswerRewardResponse(reward_seconds=0, points=0, timer=to_status(snapshot))

        reward = reward_seconds_for_answer(request.difficulty, request.response_time_ms, request.streak_count)
        points = answer_points(request.response_time_ms, max(0, request.streak_count - 1))
        snapshot = await _run(engine.add_credit, reward)
        await _record("reward", snapshot, {
            "difficulty": request.difficulty,
            "response_time_ms": request.response_time_ms,
            "streak_count": request.streak_count,
            "seconds": reward,
            "points": points,
        })
        return AnswerRewardResponse(reward_seconds=reward, points=points, timer=to_status(snapshot))

    # ============ Service Endpoints ============

    @app.get("/health")
    async def health_check():
        ticker = app.state.ticker
        return {
            "status": "healthy",
            "tick_running": bool(ticker and ticker.is_running),
            "failed_ticks": ticker.failed_ticks if ticker else 0,
        }

    @app.get("/api/logs/recent", response_model=LogsResponse)
    async def get_recent_logs(limit: int = 50):
        logs = recent_logs(limit)
        return LogsResponse(logs=[LogEntry(**entry) for entry in logs], count=len(logs))

    return app
