from __future__ import annotations

from datetime import datetime, timedelta, timezone

from icu_handoff.schemas.session import TimeRemaining

INACTIVITY_THRESHOLD_SEC = 30 * 60
URGENT_THRESHOLD_SEC = 5 * 60
EXPIRED_TEXT = "Expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def remaining(
    last_activity: datetime,
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> timedelta:
    """Time left before a session with this last activity goes stale, never negative."""
    left = as_utc(last_activity) + timedelta(seconds=threshold_sec) - as_utc(now)
    return max(left, timedelta(0))


def is_stale(
    last_activity: datetime,
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> bool:
    return as_utc(now) - as_utc(last_activity) >= timedelta(seconds=threshold_sec)


def describe_remaining(
    last_activity: datetime,
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
    urgent_sec: int = URGENT_THRESHOLD_SEC,
) -> TimeRemaining:
    """Header countdown: ``MM:SS`` while live, ``Expired`` once stale."""
    if is_stale(last_activity, now, threshold_sec=threshold_sec):
        return TimeRemaining(text=EXPIRED_TEXT, is_urgent=True, is_expired=True, remaining_sec=0)

    # round up so a live session never shows 00:00
    left = remaining(last_activity, now, threshold_sec=threshold_sec)
    total = int(-(-left.total_seconds() // 1))
    minutes, seconds = divmod(total, 60)
    return TimeRemaining(
        text=f"{minutes:02d}:{seconds:02d}",
        is_urgent=total <= urgent_sec,
        is_expired=False,
        remaining_sec=total,
    )
