from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import PaymentMethod


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - date(year, month, 1)).days


@dataclass(frozen=True, order=True)
class MonthRef:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.year <= 9999:
            raise ValueError(f"Invalid year: {self.year}")
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def of(cls, value: date) -> "MonthRef":
        return cls(value.year, value.month)

    @classmethod
    def parse(cls, value: str) -> "MonthRef":
        try:
            year_str, month_str = value.strip().split("-", 1)
            return cls(int(year_str), int(month_str))
        except ValueError as exc:
            raise ValueError("Month must be formatted as YYYY-MM") from exc

    def shift(self, months: int) -> "MonthRef":
        index = self.year * 12 + (self.month - 1) + months
        return MonthRef(index // 12, index % 12 + 1)

    def days(self) -> int:
        return days_in_month(self.year, self.month)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def resolve_billing_period(
    txn_date: date,
    payment_method: PaymentMethod,
    closing_day: Optional[int],
) -> MonthRef:
    """Month whose card bill a transaction lands on.

    Purchases on or after the closing day move to the next bill. The closing
    day is compared as given, never clamped to the length of the month.
    """
    own = MonthRef.of(txn_date)
    if payment_method != PaymentMethod.credit_card or not closing_day:
        return own
    if txn_date.day >= closing_day:
        return own.shift(1)
    return own
