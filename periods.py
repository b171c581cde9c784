from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional


EPOCH = date(1970, 1, 1)
PERIOD_SLUGS = ("all", "week", "month", "last_month", "year", "custom")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def bounds(self, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
        """Half-open range covering every day of the period.

        Days are interpreted in ``tz`` and returned as naive UTC, matching how
        timestamps are stored.
        """
        lower = datetime.combine(self.start, time.min)
        upper = datetime.combine(self.end + timedelta(days=1), time.min)
        if tz is None:
            return lower, upper
        return _naive_utc(lower, tz), _naive_utc(upper, tz)


def _naive_utc(local: datetime, tz: tzinfo) -> datetime:
    return local.replace(tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def _month_span(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    following = date(first.year + first.month // 12, first.month % 12 + 1, 1)
    return first, following - timedelta(days=1)


def _parse_day(value: str, label: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid {label} date: {value}") from exc


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    slug = (period or "all").strip().lower()
    if slug not in PERIOD_SLUGS:
        raise ValueError(f"Unknown period: {period}")

    if slug == "all":
        return Period(slug, EPOCH, today)
    if slug == "week":
        return Period(slug, today - timedelta(days=6), today)
    if slug == "month":
        return Period(slug, *_month_span(today))
    if slug == "last_month":
        return Period(slug, *_month_span(today.replace(day=1) - timedelta(days=1)))
    if slug == "year":
        return Period(slug, date(today.year, 1, 1), date(today.year, 12, 31))

    if not start or not end:
        raise ValueError("Custom period requires start and end dates")
    first_day = _parse_day(start, "start")
    last_day = _parse_day(end, "end")
    if first_day > last_day:
        raise ValueError("Start date must be before end date")
    return Period(slug, first_day, last_day)
