"""Date helpers shared by the orchestrator, processors and reconciler."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns round-trip on sqlite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_in_timezone(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Current calendar date in an ad account's reporting timezone.

    Falls back to UTC when the timezone is missing or unknown.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if not tz_name:
        return now.astimezone(timezone.utc).date()
    try:
        return now.astimezone(ZoneInfo(tz_name)).date()
    except ZoneInfoNotFoundError:
        return now.astimezone(timezone.utc).date()


def split_date_range(start: date, end: date, chunk_days: int = 30) -> List[Tuple[date, date]]:
    """Split an inclusive date range into sequential sub-ranges.

    WHAT:
        Each chunk is an inclusive (start, end) pair whose width
        (end - start) is at most `chunk_days` days. A range no wider than
        `chunk_days` comes back as a single chunk.

    WHY:
        Bounds per-request payload size for backfills and isolates partial
        failure to one sub-range.

    Example:
        2023-10-01..2024-01-01 with chunk_days=30 ->
        [10-01..10-31, 11-01..12-01, 12-02..01-01]
    """
    if end < start:
        raise ValueError(f"Invalid date range: {start} > {end}")
    if chunk_days < 1:
        raise ValueError("chunk_days must be >= 1")

    chunks: List[Tuple[date, date]] = []
    current = start
    while current <= end:
        chunk_end = min(current + timedelta(days=chunk_days), end)
        chunks.append((current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def ranges_overlap(a_from: date, a_to: date, b_from: date, b_to: date) -> bool:
    return a_from <= b_to and b_from <= a_to
