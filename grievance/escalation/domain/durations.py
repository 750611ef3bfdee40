"""
Duration Calculator
===================

Elapsed-time measures used for SLA decisions.

Two semantics are supported:
- Calendar: raw wall-clock difference, used for age checks and
  reporting buckets.
- Business hours: only the overlap with the configured working window
  counts, so an issue opened on Friday evening does not accrue SLA time
  over a non-working weekend.

Everything here is pure: no I/O and no error conditions.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from grievance.config import TERMINAL_STATUSES
from grievance.escalation.domain.value_objects import WorkingWindow


class SLAStatus(str):
    """SLA status of an issue against its time budget."""
    ON_TIME = "on_time"
    BREACHED = "breached"
    AT_RISK = "at_risk"
    PENDING = "pending"


class AgeBucket(str):
    """Calendar age buckets used by reports."""
    UP_TO_14_DAYS = "0-14"
    DAYS_15_TO_30 = "15-30"
    OVER_30_DAYS = "30+"


AGE_BUCKETS = [AgeBucket.UP_TO_14_DAYS, AgeBucket.DAYS_15_TO_30, AgeBucket.OVER_30_DAYS]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # Naive timestamps from the store are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _seconds_between(start: datetime, end: datetime) -> float:
    return (end.astimezone(timezone.utc) - start.astimezone(timezone.utc)).total_seconds()


class DurationCalculator:
    """
    Converts time spans into SLA-relevant elapsed hours.

    Args:
        window: Working window for business-hours mode
    """

    def __init__(self, window: Optional[WorkingWindow] = None):
        self.window = window or WorkingWindow()
        self._tz = self.window.tzinfo

    def is_working_day(self, day: date) -> bool:
        """Check if a calendar day is a working weekday and not a holiday."""
        return day.weekday() in self.window.working_weekdays and day not in self.window.holidays

    def _day_window(self, day: date) -> Tuple[datetime, datetime]:
        start = datetime.combine(day, time(self.window.start_hour), tzinfo=self._tz)
        if self.window.end_hour == 24:
            end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=self._tz)
        else:
            end = datetime.combine(day, time(self.window.end_hour), tzinfo=self._tz)
        return start, end

    def calendar_hours(self, start: datetime, end: Optional[datetime] = None) -> float:
        """
        Wall-clock hours between two instants.

        Returns 0 when start is after end.
        """
        end = _aware(end or _utcnow())
        seconds = _seconds_between(_aware(start), end)
        if seconds <= 0:
            return 0.0
        return round(seconds / 3600, 2)

    def business_hours(self, start: datetime, end: Optional[datetime] = None) -> float:
        """
        Hours of [start, end] that fall inside the working window.

        Walks the span day by day; each working day contributes the overlap
        between the span and that day's window. Returns 0 when start is
        after end.
        """
        start = _aware(start).astimezone(self._tz)
        end = _aware(end or _utcnow()).astimezone(self._tz)
        if start >= end:
            return 0.0

        total_seconds = 0.0
        day = start.date()
        while day <= end.date():
            if self.is_working_day(day):
                window_start, window_end = self._day_window(day)
                overlap = _seconds_between(max(start, window_start), min(end, window_end))
                if overlap > 0:
                    total_seconds += overlap
            day += timedelta(days=1)

        return round(total_seconds / 3600, 2)

    def add_business_hours(self, start: datetime, hours: float) -> datetime:
        """
        Instant reached after spending `hours` of working time from `start`.

        Used to report the SLA deadline of an issue.
        """
        current = _aware(start).astimezone(self._tz)
        remaining = hours * 3600
        if remaining <= 0:
            return current

        while True:
            day = current.date()
            if self.is_working_day(day):
                window_start, window_end = self._day_window(day)
                begin = max(current, window_start)
                available = _seconds_between(begin, window_end)
                if available > 0:
                    if remaining <= available:
                        deadline = begin.astimezone(timezone.utc) + timedelta(seconds=remaining)
                        return deadline.astimezone(self._tz)
                    remaining -= available
            current = datetime.combine(day + timedelta(days=1), time(0), tzinfo=self._tz)

    def age_bucket(self, start: datetime, end: Optional[datetime] = None) -> str:
        """Calendar reporting bucket: up to 14 days, 15-30 days, over 30 days."""
        days = self.calendar_hours(start, end) / 24
        if days <= 14:
            return AgeBucket.UP_TO_14_DAYS
        if days <= 30:
            return AgeBucket.DAYS_15_TO_30
        return AgeBucket.OVER_30_DAYS

    def sla_status(
        self,
        created_at: datetime,
        threshold_hours: float,
        status: str,
        resolved_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        at_risk_ratio: float = 0.8
    ) -> str:
        """
        SLA status of an issue against a business-hours budget.

        Closed issues are judged on the time it took to resolve them; open
        issues on their current age, turning at-risk once `at_risk_ratio`
        of the budget is spent.
        """
        if status in TERMINAL_STATUSES and resolved_at is not None:
            spent = self.business_hours(created_at, resolved_at)
            return SLAStatus.ON_TIME if spent <= threshold_hours else SLAStatus.BREACHED

        age = self.business_hours(created_at, now)
        if age > threshold_hours:
            return SLAStatus.BREACHED
        if age > threshold_hours * at_risk_ratio:
            return SLAStatus.AT_RISK
        return SLAStatus.PENDING
