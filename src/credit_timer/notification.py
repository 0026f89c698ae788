"""Persistent-notification content for the credit balance.

Presenters subscribe to the engine and only read the snapshots they are
given; nothing here mutates timer state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel

from .engine import TimerEvent, TimerSnapshot, TimerUpdate

COLOR_RED = "red"
COLOR_ORANGE = "dark_orange"
COLOR_YELLOW = "yellow"
COLOR_GREEN = "green"


@dataclass(frozen=True)
class NotificationContent:
    title: str
    text: str
    color: str
    status: str


@dataclass(frozen=True)
class Alert:
    """High-priority one-off message for a timer event."""

    title: str
    text: str


def format_duration(seconds: int) -> str:
    """Format seconds as 'M:SS', or 'H:MM:SS' from one hour up."""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def notification_color(remaining_credit: int, debt: int) -> str:
    if debt > 0:
        return COLOR_RED
    if remaining_credit > 3600:
        return COLOR_GREEN
    if remaining_credit > 1800:
        return COLOR_YELLOW
    if remaining_credit > 0:
        return COLOR_ORANGE
    return COLOR_RED


def drain_status(snapshot: TimerSnapshot) -> str:
    """Why the pool is or is not draining right now."""
    if not snapshot.is_tracking:
        return "Tracking Stopped"
    if snapshot.app_foreground:
        return "App Open (Paused)"
    if not snapshot.screen_on:
        return "Screen Off (Paused)"
    return "Timer Running"


def build_notification(snapshot: TimerSnapshot) -> NotificationContent:
    draining = snapshot.is_draining
    if snapshot.debt > 0:
        title = f"Time Debt: {format_duration(snapshot.debt)}"
        text = "Debt increasing..." if draining else "Paused - Answer questions to reduce debt"
    elif snapshot.remaining_credit > 0:
        title = f"Screen Time: {format_duration(snapshot.remaining_credit)}"
        text = "Time counting down..." if draining else "Paused - Complete tasks to earn more time"
    else:
        title = "No Screen Time"
        text = "Answer questions to earn time!"
    return NotificationContent(
        title=title,
        text=text,
        color=notification_color(snapshot.remaining_credit, snapshot.debt),
        status=drain_status(snapshot),
    )


def alert_for_event(event: TimerEvent, threshold: int | None = None) -> Optional[Alert]:
    if event == TimerEvent.LOW_CREDIT:
        minutes = max(1, (threshold or 60) // 60)
        plural = "s" if minutes > 1 else ""
        return Alert("Time Check!", f"Only {minutes} minute{plural} left! Time to power up!")
    if event == TimerEvent.CREDIT_EXHAUSTED:
        return Alert("Time's Up!", "Your earned time is up! Answer questions to unlock more.")
    return None


class NotificationPresenter:
    """Engine subscriber that re-renders only when the content changes.

    ``render`` and ``alert`` are the sinks; the default ones do nothing.
    """

    def __init__(
        self,
        render: Callable[[NotificationContent], None] | None = None,
        alert: Callable[[Alert], None] | None = None,
    ):
        self._render = render or (lambda content: None)
        self._alert = alert or (lambda alert: None)
        self.current: Optional[NotificationContent] = None
        self.render_count = 0

    def __call__(self, update: TimerUpdate) -> None:
        for event in update.events:
            alert = alert_for_event(event, update.low_credit_threshold)
            if alert is not None:
                self._alert(alert)

        content = build_notification(update.snapshot)
        if content == self.current:
            return
        self.current = content
        self.render_count += 1
        self._render(content)

    def attach(self, engine) -> Callable[[], None]:
        """Subscribe to ``engine``; returns the unsubscribe function."""
        return engine.subscribe(self)


class RichNotificationPresenter(NotificationPresenter):
    """Prints notifications as rich panels."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        super().__init__(render=self._print_content, alert=self._print_alert)

    def _print_content(self, content: NotificationContent) -> None:
        self.console.print(
            Panel(
                f"{content.text}\n[dim]{content.status}[/dim]",
                title=f"[bold {content.color}]{content.title}[/bold {content.color}]",
                border_style=content.color,
                expand=False,
            )
        )

    def _print_alert(self, alert: Alert) -> None:
        self.console.print(f"[bold red]{alert.title}[/bold red] {alert.text}")
