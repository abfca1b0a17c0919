from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    # Fixed precision keeps stored timestamps lexically ordered.
    return dt.astimezone(UTC).isoformat(timespec="milliseconds")


def epoch_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def day_key(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%d")


def days_ago(days: int, now: datetime | None = None) -> datetime:
    return (now or utc_now()) - timedelta(days=days)
