from __future__ import annotations

from datetime import datetime, timedelta, timezone


ALLOCATION_MODES = ("monthly", "weekly", "daily", "yearly", "manual")


def _to_utc(ts: float) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def period_start(mode: str, at: datetime) -> datetime:
    """Calendar-aligned UTC start of the period containing `at`.

    Weeks start on Sunday. `manual` has no cadence and maps to the epoch.
    """
    at = at.astimezone(timezone.utc)
    midnight = at.replace(hour=0, minute=0, second=0, microsecond=0)
    if mode == "daily":
        return midnight
    if mode == "weekly":
        # Python weekday(): Monday=0 .. Sunday=6.
        return midnight - timedelta(days=(midnight.weekday() + 1) % 7)
    if mode == "monthly":
        return midnight.replace(day=1)
    if mode == "yearly":
        return midnight.replace(month=1, day=1)
    if mode == "manual":
        return datetime.fromtimestamp(0, tz=timezone.utc)
    raise ValueError(f"Unknown allocation mode: {mode!r}")


def next_period_start(mode: str, now_ts: float) -> float | None:
    """Start of the first period strictly after `now_ts`, or None for `manual`."""
    if mode == "manual":
        return None
    start = period_start(mode, _to_utc(now_ts))
    if mode == "daily":
        nxt = start + timedelta(days=1)
    elif mode == "weekly":
        nxt = start + timedelta(days=7)
    elif mode == "monthly":
        nxt = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
    else:
        nxt = start.replace(year=start.year + 1)
    return nxt.timestamp()
