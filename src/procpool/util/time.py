from __future__ import annotations

from datetime import datetime


def local_now() -> datetime:
    return datetime.now().astimezone()


def iso_ms(value: datetime) -> str:
    """Format a timestamp for outcome records and reports."""
    return value.isoformat(timespec="milliseconds")


def duration_sec(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds(), 3)
