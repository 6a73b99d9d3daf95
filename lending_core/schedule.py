"""
Payment Schedule Module

Payment frequencies and due-date arithmetic. All dates are calendar dates in
UTC with no time-of-day component.

Month arithmetic clamps to the last valid day of the target month
(Jan 31 + 1 month = Feb 28/29). Due dates are always derived from the
loan's start date, never chained from the previous due date, so a clamp in
a short month does not carry forward: a loan starting Jan 31 falls due on
Feb 29, Mar 31, Apr 30, ...
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union
import calendar
import logging

logger = logging.getLogger(__name__)


class PaymentFrequency(Enum):
    """Installment cadence"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi-annually"
    ANNUALLY = "annually"

    @classmethod
    def parse(cls, value: Union[str, 'PaymentFrequency', None]) -> 'PaymentFrequency':
        """
        Strict parse, accepting underscore and no-separator spellings
        ("bi_weekly", "biweekly"). None means the default, monthly.

        Raises:
            ValueError: If the value is not a recognized frequency
        """
        if value is None:
            return cls.MONTHLY
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown payment frequency: {value!r}")
        key = value.strip().lower().replace('_', '-')
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown payment frequency: {value!r}")

    @classmethod
    def parse_lenient(cls, value: Union[str, 'PaymentFrequency', None]) -> 'PaymentFrequency':
        """Parse stored data; unknown values fall back to monthly with a warning"""
        try:
            return cls.parse(value)
        except ValueError:
            logger.warning(f"Unrecognized payment frequency {value!r}, advancing monthly")
            return cls.MONTHLY


_ALIASES = {
    "biweekly": "bi-weekly",
    "semiannually": "semi-annually",
    "semi-annual": "semi-annually",
    "annual": "annually",
    "yearly": "annually",
}

# (days, months) added per period
_PERIOD_STEPS = {
    PaymentFrequency.DAILY: (1, 0),
    PaymentFrequency.WEEKLY: (7, 0),
    PaymentFrequency.BI_WEEKLY: (14, 0),
    PaymentFrequency.MONTHLY: (0, 1),
    PaymentFrequency.QUARTERLY: (0, 3),
    PaymentFrequency.SEMI_ANNUALLY: (0, 6),
    PaymentFrequency.ANNUALLY: (0, 12),
}


def utc_today() -> date:
    """Today's calendar date in UTC"""
    return datetime.now(timezone.utc).date()


def to_date(value: Union[date, datetime, str]) -> date:
    """
    Normalize to a calendar date

    Aware datetimes are converted to UTC first; naive ones are taken as UTC.
    Strings may be ISO dates or ISO datetimes.

    Raises:
        ValueError: If the value is not a date
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            return to_date(datetime.fromisoformat(text.replace('Z', '+00:00')))
    raise ValueError(f"Not a date: {value!r}")


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(anchor: date, frequency: PaymentFrequency, periods: int) -> date:
    """Date ``periods`` whole periods after ``anchor``"""
    days, months = _PERIOD_STEPS[frequency]
    if months:
        return add_months(anchor, months * periods)
    return anchor + timedelta(days=days * periods)


def advance_due_date(current: date, frequency: Union[str, PaymentFrequency, None]) -> date:
    """Add exactly one period to ``current``. Unknown frequencies advance monthly."""
    return due_date_for(current, PaymentFrequency.parse_lenient(frequency), 1)


def term_end_date(start_date: Optional[date], term_months: int) -> Optional[date]:
    """Contractual end date: start plus the term in calendar months"""
    if start_date is None:
        return None
    return add_months(start_date, term_months)
