from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Union

from errors import ValidationError


@dataclass(frozen=True)
class MonthPeriod:
    token: str


@dataclass(frozen=True)
class RangePeriod:
    start: date
    end: date


PeriodSpec = Union[MonthPeriod, RangePeriod]


@dataclass(frozen=True)
class PeriodRange:
    month: str
    start: date
    end: date

    def as_dict(self) -> dict[str, str]:
        return {
            "month": self.month,
            "period_start": self.start.isoformat(),
            "period_end": self.end.isoformat(),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def as_datetime(value: Union[date, datetime, str, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).replace("T", " ").rstrip("Z")
    return datetime.fromisoformat(text.split("+")[0])


def parse_month(token: str) -> tuple[int, int]:
    try:
        year_part, month_part = token.split("-")
        year, month = int(year_part), int(month_part)
    except (AttributeError, ValueError) as exc:
        raise ValidationError("Invalid month format (YYYY-MM)") from exc
    if len(year_part) != 4 or not 1 <= month <= 12:
        raise ValidationError("Invalid month format (YYYY-MM)")
    return year, month


def month_token(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _next_month_start(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1)
    return date(year, month + 1, 1)


def month_range(token: str) -> PeriodRange:
    year, month = parse_month(token)
    first = date(year, month, 1)
    last = _next_month_start(year, month) - date.resolution
    return PeriodRange(token, first, last)


def month_timestamp_window(token: str) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` creation-time window covering the month."""
    year, month = parse_month(token)
    start = datetime(year, month, 1)
    nxt = _next_month_start(year, month)
    return start, datetime(nxt.year, nxt.month, 1)


def period_spec(
    month: Optional[str],
    start: Optional[date],
    end: Optional[date],
) -> Optional[PeriodSpec]:
    if month:
        return MonthPeriod(month)
    if start and end:
        return RangePeriod(start, end)
    return None


def resolve_period_range(
    spec: Optional[PeriodSpec],
    *,
    today: Optional[date] = None,
) -> PeriodRange:
    today = today or utc_now().date()
    if isinstance(spec, MonthPeriod):
        return month_range(spec.token)
    if isinstance(spec, RangePeriod):
        if spec.start > spec.end:
            raise ValidationError("period_start must be before period_end")
        return PeriodRange(month_token(spec.start), spec.start, spec.end)
    return month_range(month_token(today))
