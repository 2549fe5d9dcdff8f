"""
Recency filtering for web results.

Providers honour ``time_range`` loosely, so results are re-checked here.
Validation tightens as the window shrinks:

- day:   a trustworthy published timestamp inside the window is required,
         and every date mentioned in the content must fall inside it too
- week:  published (if present) inside the window, every content date inside
- month: published (if present) inside the window, the latest content date inside
- year:  published (if present) inside the window
- explicit start/end: published (if present) inside the range
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, List, Optional, Tuple

from ragcore.core.types import TimeFilter, TimeRange
from ragcore.providers.protocols import RawWebResult

logger = logging.getLogger(__name__)

WINDOW_DAYS = {
    TimeRange.DAY: 1,
    TimeRange.WEEK: 7,
    TimeRange.MONTH: 30,
    TimeRange.YEAR: 365,
}

QUERY_HINTS = {
    TimeRange.DAY: 'recent OR today OR "last 24 hours"',
    TimeRange.WEEK: 'recent OR "this week" OR "last 7 days"',
    TimeRange.MONTH: 'recent OR "this month" OR "last 30 days"',
    TimeRange.YEAR: 'recent OR "this year" OR "last 12 months"',
}

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAME = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
)
_MDY_RE = re.compile(rf"\b{_MONTH_NAME}\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.I)
_DMY_RE = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+{_MONTH_NAME}\s+(\d{{4}})\b", re.I)
_ISO_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def query_hint(f: Optional[TimeFilter]) -> str:
    """Recency keywords appended to the provider query (windows only, not ranges)."""
    if f is None or f.time_range is None or f.start or f.end:
        return ""
    return QUERY_HINTS[f.time_range]


def parse_published(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = value.strip()
    dt: Optional[datetime] = None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _month(token: str) -> int:
    return _MONTHS[token.lower()[:3]]


def extract_content_dates(text: str) -> List[date]:
    """Calendar dates written out in ``text`` (Month D, YYYY / D Month YYYY / ISO)."""
    found: List[date] = []
    for m in _MDY_RE.finditer(text):
        _append(found, int(m.group(3)), _month(m.group(1)), int(m.group(2)))
    for m in _DMY_RE.finditer(text):
        _append(found, int(m.group(3)), _month(m.group(2)), int(m.group(1)))
    for m in _ISO_RE.finditer(text):
        _append(found, int(m.group(1)), int(m.group(2)), int(m.group(3)))
    return found


def _append(out: List[date], year: int, month: int, day: int) -> None:
    try:
        out.append(date(year, month, day))
    except ValueError:
        pass  # "February 30, 2025" is not a date


class TimeWindowFilter:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def bounds(self, f: TimeFilter) -> Optional[Tuple[datetime, datetime]]:
        now = self.clock()
        if f.time_range is not None:
            return now - timedelta(days=WINDOW_DAYS[f.time_range]), now
        if f.start is None and f.end is None:
            return None
        start = _aware(f.start) if f.start else datetime.min.replace(tzinfo=timezone.utc)
        end = _aware(f.end) if f.end else now
        return start, end

    def accepts(self, result: RawWebResult, f: TimeFilter) -> bool:
        bounds = self.bounds(f)
        if bounds is None:
            return True
        start, end = bounds
        published = parse_published(result.published_date)

        if published is None:
            # a one-day window needs a timestamp it can trust
            if f.time_range is TimeRange.DAY:
                return False
        elif not (start <= published <= end):
            return False

        if f.time_range not in (TimeRange.DAY, TimeRange.WEEK, TimeRange.MONTH):
            return True

        mentioned = extract_content_dates(f"{result.title}\n{result.content}")
        if not mentioned:
            return True
        # calendar dates carry no time zone; allow one day either side
        lo = start.date() - timedelta(days=1)
        hi = end.date() + timedelta(days=1)
        if f.time_range is TimeRange.MONTH:
            return lo <= max(mentioned) <= hi
        return all(lo <= d <= hi for d in mentioned)

    def apply(self, results: List[RawWebResult], f: Optional[TimeFilter]) -> List[RawWebResult]:
        if f is None or f.is_empty:
            return list(results)
        kept = [r for r in results if self.accepts(r, f)]
        if len(kept) < len(results):
            logger.info("time filter dropped %d/%d web results", len(results) - len(kept), len(results))
        return kept


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
