from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


@dataclass(frozen=True, slots=True)
class DateRange:
    start: date
    end: date

    def as_payload(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True, slots=True)
class DailyDates:
    yesterday: date
    day_before_yesterday: date

    @property
    def range(self) -> DateRange:
        return DateRange(self.day_before_yesterday, self.yesterday)

    def as_payload(self) -> dict:
        return {"yesterday": self.yesterday.isoformat(), "dayBeforeYesterday": self.day_before_yesterday.isoformat()}


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def daily_dates(reference_date: date | None = None) -> DailyDates:
    base = reference_date or today_utc()
    return DailyDates(yesterday=base - timedelta(days=1), day_before_yesterday=base - timedelta(days=2))


def previous_month_range(reference_date: date | None = None) -> DateRange:
    base = reference_date or today_utc()
    end = base.replace(day=1) - timedelta(days=1)
    return DateRange(start=end.replace(day=1), end=end)


def trailing_range(days: int, reference_date: date | None = None) -> DateRange:
    end = reference_date or today_utc()
    return DateRange(start=end - timedelta(days=days), end=end)


def should_run_monthly_agents(reference_date: date | None = None, *, data_available: bool) -> bool:
    base = reference_date or today_utc()
    if base.day < 1:
        return False
    return data_available
