# appointments/services/slots/calculator.py
"""
Interval arithmetic for availability.

Intervals are half-open (start, end) pairs of aware datetimes. Busy time is
subtracted from open time; what remains is enumerated into slot candidates
on a grid aligned to the start of each free interval.
"""

from datetime import datetime, timedelta

Interval = tuple[datetime, datetime]


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Sort and merge overlapping or touching intervals."""
    merged: list[Interval] = []
    for start, end in sorted(i for i in intervals if i[1] > i[0]):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(open_intervals: list[Interval], busy: list[Interval]) -> list[Interval]:
    """Remove every busy interval from the open intervals."""
    busy = merge_intervals(busy)
    free: list[Interval] = []
    for start, end in merge_intervals(open_intervals):
        cursor = start
        for busy_start, busy_end in busy:
            if busy_end <= cursor:
                continue
            if busy_start >= end:
                break
            if busy_start > cursor:
                free.append((cursor, busy_start))
            cursor = max(cursor, busy_end)
            if cursor >= end:
                break
        if cursor < end:
            free.append((cursor, end))
    return free


def candidate_starts(free: list[Interval], duration: timedelta, step: timedelta) -> list[datetime]:
    """
    Start times of every slot of `duration` that fits into a free interval.

    Candidates are start, start+step, ... for each free interval; an interval
    at least `duration` long always yields its own start.
    """
    starts: list[datetime] = []
    for start, end in free:
        t = start
        while t + duration <= end:
            starts.append(t)
            t += step
    return starts


def covers(intervals: list[Interval], start: datetime, end: datetime) -> bool:
    """True if a single interval fully contains [start, end)."""
    return any(s <= start and end <= e for s, e in intervals)
