from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def validate_month(month: int) -> None:
    if not isinstance(month, int) or isinstance(month, bool) or not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}. Must be between 1 and 12.")


def validate_year(year: int, *, lower: int = 1970, upper: int = 2100) -> None:
    if not isinstance(year, int) or isinstance(year, bool) or not lower <= year <= upper:
        raise ValueError(f"Invalid year: {year}. Must be between {lower} and {upper}.")


def month_period(year: int, month: int) -> Period:
    """Inclusive first..last day window of a calendar month.

    The last day comes from the first of the following month, so February
    picks up the 29th in leap years without a calendar table.
    """
    validate_month(month)
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)
