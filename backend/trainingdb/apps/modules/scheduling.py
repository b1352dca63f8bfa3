# backend/trainingdb/apps/modules/scheduling.py
"""
Pure calendar computations over a module's sessions.

- compute_duration: distinct calendar dates covered by all date ranges.
- has_conflict: whether two modules' date ranges overlap in time.

No I/O happens here; callers pass the sessions they already loaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from .documents import DateRange, ModuleSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleDuration:
    count: int
    dates: List[date] = field(default_factory=list)

    def day_index(self, day: date) -> Optional[int]:
        """1-based position of `day` in the module calendar, or None."""
        try:
            return self.dates.index(day) + 1
        except ValueError:
            return None


def parse_instant(raw: object) -> Optional[datetime]:
    """
    Parse a stored date range bound.

    Accepts datetimes, dates and ISO 8601 strings (a trailing 'Z' is read
    as UTC). Returns None for anything else.
    """
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_range(date_range: DateRange) -> Optional[Tuple[datetime, datetime]]:
    start = parse_instant(date_range.start_time)
    end = parse_instant(date_range.end_time)
    if start is None or end is None:
        return None
    return start, end


def iter_ranges(
    sessions: Iterable[ModuleSession],
    *,
    module_id: Optional[str] = None,
) -> Iterator[Tuple[datetime, datetime]]:
    """Yield parsed (start, end) pairs, skipping and logging unparseable ones."""
    for session in sessions:
        for date_range in session.date_ranges:
            parsed = parse_range(date_range)
            if parsed is None:
                logger.warning(
                    "Skipping unparseable date range",
                    extra={
                        "module_id": module_id,
                        "start_time": date_range.start_time,
                        "end_time": date_range.end_time,
                    },
                )
                continue
            yield parsed


def _calendar_days(start: datetime, end: datetime) -> Iterator[date]:
    # Calendar date as written in the timestamp; offsets are not normalised.
    day = start.date()
    last = end.date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def compute_duration(
    sessions: Iterable[ModuleSession],
    *,
    created_at: Optional[datetime] = None,
    today: Optional[date] = None,
    module_id: Optional[str] = None,
) -> ModuleDuration:
    """
    Count the distinct calendar dates covered by a module's sessions.

    Every date range contributes each day from its start date through its
    end date inclusive, into one set shared by all sessions. A module with
    no usable range lasts one day: its creation date, else today.
    """
    days: Set[date] = set()
    for start, end in iter_ranges(sessions, module_id=module_id):
        days.update(_calendar_days(start, end))

    if not days:
        if created_at is not None:
            fallback = created_at.date()
        else:
            fallback = today or date.today()
        return ModuleDuration(count=1, dates=[fallback])

    ordered = sorted(days)
    return ModuleDuration(count=len(ordered), dates=ordered)


def _comparable(value: datetime) -> datetime:
    # Naive instants are read as UTC so they can be compared with aware ones.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def ranges_overlap(
    first: Tuple[datetime, datetime],
    second: Tuple[datetime, datetime],
) -> bool:
    """Strict overlap: ranges that only touch at an endpoint do not conflict."""
    start_1, end_1 = (_comparable(v) for v in first)
    start_2, end_2 = (_comparable(v) for v in second)
    return start_1 < end_2 and start_2 < end_1


def has_conflict(
    sessions_a: Iterable[ModuleSession],
    sessions_b: Iterable[ModuleSession],
) -> bool:
    """True as soon as any date range of A overlaps any date range of B."""
    ranges_b = list(iter_ranges(sessions_b))
    if not ranges_b:
        return False
    for range_a in iter_ranges(sessions_a):
        for range_b in ranges_b:
            if ranges_overlap(range_a, range_b):
                return True
    return False
