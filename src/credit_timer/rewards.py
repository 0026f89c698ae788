"""Reward and debt policy functions.

Pure and stateless; callers feed the results into the engine
(``add_credit``) or into their own scoring.
"""

from __future__ import annotations

from .errors import InvalidArgument

# Credit per correct answer, by question difficulty (seconds)
REWARD_BASE_SECONDS: dict[str, int] = {
    "easy": 60,
    "medium": 120,
    "hard": 180,
}

STREAK_MILESTONE = 5
STREAK_MILESTONE_BONUS_SECONDS = 120

# Score points for a correct answer
SCORE_BASE_POINTS = 100
# Answers faster than this earn a speed bonus, scaling linearly to zero
FAST_ANSWER_WINDOW_MS = 20_000
# Maximum speed bonus and per-streak bonus, as (numerator, denominator) of the base
FAST_ANSWER_BONUS_RATE = (1, 2)
STREAK_BONUS_RATE = (1, 2)

# Debt penalty: points per minute of debt, once past the grace period
DEBT_GRACE_SECONDS = 30
DEBT_PENALTY_PER_MINUTE = 50


def _check_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise InvalidArgument(f"{name} must not be negative, got {value}")


def reward_seconds_for_answer(difficulty: str, response_time_ms: int, streak_count: int) -> int:
    """Credit seconds earned by one correct answer.

    The difficulty's base, plus 120s when ``streak_count`` (including this
    answer) lands on a multiple of 5. Answer speed only affects score points,
    see ``answer_points``.
    """
    base = REWARD_BASE_SECONDS.get(difficulty.strip().lower())
    if base is None:
        valid = ", ".join(REWARD_BASE_SECONDS)
        raise InvalidArgument(f"Unknown difficulty '{difficulty}'. Valid options: {valid}")
    _check_non_negative("response time", response_time_ms)
    _check_non_negative("streak count", streak_count)

    if streak_count > 0 and streak_count % STREAK_MILESTONE == 0:
        return base + STREAK_MILESTONE_BONUS_SECONDS
    return base


def answer_points(response_time_ms: int, previous_streak: int) -> int:
    """Score points for one correct answer.

    100 points, up to +50 for instant answers (nothing at 20s or slower) and
    +50 for every correct answer already in the streak. Rounded half up.
    """
    _check_non_negative("response time", response_time_ms)
    _check_non_negative("previous streak", previous_streak)

    speed_num, speed_den = FAST_ANSWER_BONUS_RATE
    streak_num, streak_den = STREAK_BONUS_RATE
    # Everything scaled by the window and both denominators to stay in integers
    scale = FAST_ANSWER_WINDOW_MS * speed_den * streak_den
    remaining_window_ms = max(0, FAST_ANSWER_WINDOW_MS - int(response_time_ms))
    scaled = (
        SCORE_BASE_POINTS * scale
        + SCORE_BASE_POINTS * speed_num * streak_den * remaining_window_ms
        + SCORE_BASE_POINTS * streak_num * speed_den * FAST_ANSWER_WINDOW_MS * int(previous_streak)
    )
    return (2 * scaled + scale) // (2 * scale)


def debt_penalty(debt_seconds: int) -> int:
    """Score points lost for carrying ``debt_seconds`` of debt.

    Nothing inside the grace period, then 50 points per minute, prorated and
    rounded down.
    """
    _check_non_negative("debt", debt_seconds)
    if debt_seconds < DEBT_GRACE_SECONDS:
        return 0
    return int(debt_seconds) * DEBT_PENALTY_PER_MINUTE // 60
