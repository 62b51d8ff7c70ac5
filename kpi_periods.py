"""
Period resolution and per-request KPI context.

The previous period is the window of the same length that ends the day before
the current start:

    previous.start = start - (end - start)
    previous.end   = start - 1 day

This is plain timedelta arithmetic, with no month or quarter alignment.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Tuple, Union

DateValue = Union[date, datetime]

ONE_DAY = timedelta(days=1)


def parse_iso(value: str) -> DateValue:
    """Parse '2025-01-31' to a date, anything longer to a datetime.

    Raises ValueError for anything that is not ISO 8601.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError('expected an ISO 8601 date string')
    text = value.strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


def _align(start: DateValue, end: DateValue) -> Tuple[DateValue, DateValue]:
    # date and datetime do not compare; promote to datetime when mixed
    if isinstance(start, datetime) or isinstance(end, datetime):
        start, end = _to_datetime(start), _to_datetime(end)
        if (start.tzinfo is None) != (end.tzinfo is None):
            start = start if start.tzinfo else start.replace(tzinfo=timezone.utc)
            end = end if end.tzinfo else end.replace(tzinfo=timezone.utc)
    return start, end


def _to_datetime(value: DateValue) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def parse_range(start_str: str, end_str: str) -> Tuple[DateValue, DateValue]:
    return _align(parse_iso(start_str), parse_iso(end_str))


@dataclass(frozen=True)
class Period:
    start: DateValue
    end: DateValue

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def as_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class Periods:
    current: Period
    previous: Period

    def as_dict(self) -> dict:
        return {"current": self.current.as_dict(), "previous": self.previous.as_dict()}


def get_periods(start_str: str, end_str: str) -> Periods:
    start, end = parse_range(start_str, end_str)
    duration = end - start
    previous = Period(start=start - duration, end=start - ONE_DAY)
    return Periods(current=Period(start=start, end=end), previous=previous)


class KpiStrategy(str, Enum):
    GLOBAL = 'GLOBAL'            # network-wide aggregation
    COMPARATIVE = 'COMPARATIVE'  # at least one pharmacy selected


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int
    offset: int


@dataclass(frozen=True)
class KpiContext:
    request: Any
    periods: Periods
    strategy: KpiStrategy
    pagination: Optional[Pagination] = None
    duration_ms: int = field(default=0)

    @property
    def comparison_enabled(self) -> bool:
        return self.request.comparison_enabled


def build_context(request, page: Optional[int] = None, page_size: Optional[int] = None) -> KpiContext:
    """Derive the immutable per-call context from a validated FilterRequest."""
    periods = get_periods(request.date_range.start, request.date_range.end)
    strategy = KpiStrategy.COMPARATIVE if request.pharmacy_ids else KpiStrategy.GLOBAL

    pagination = None
    if page is not None:
        size = page_size or 20
        pagination = Pagination(page=page, page_size=size, offset=(page - 1) * size)

    duration_ms = int(periods.current.duration.total_seconds() * 1000)
    return KpiContext(
        request=request,
        periods=periods,
        strategy=strategy,
        pagination=pagination,
        duration_ms=duration_ms,
    )
