"""
Tests for payment frequencies and due-date arithmetic
"""

import logging
import pytest
from datetime import date, datetime, timezone, timedelta

from lending_core.schedule import (
    PaymentFrequency, add_months, due_date_for, advance_due_date,
    term_end_date, to_date, utc_today
)


class TestPaymentFrequency:
    """Test frequency parsing"""

    @pytest.mark.parametrize("value,expected", [
        ("monthly", PaymentFrequency.MONTHLY),
        ("MONTHLY", PaymentFrequency.MONTHLY),
        ("bi-weekly", PaymentFrequency.BI_WEEKLY),
        ("bi_weekly", PaymentFrequency.BI_WEEKLY),
        ("biweekly", PaymentFrequency.BI_WEEKLY),
        ("semi-annually", PaymentFrequency.SEMI_ANNUALLY),
        ("semi_annually", PaymentFrequency.SEMI_ANNUALLY),
        ("semiannually", PaymentFrequency.SEMI_ANNUALLY),
        ("annual", PaymentFrequency.ANNUALLY),
        ("yearly", PaymentFrequency.ANNUALLY),
        (" daily ", PaymentFrequency.DAILY),
        (None, PaymentFrequency.MONTHLY),
        (PaymentFrequency.QUARTERLY, PaymentFrequency.QUARTERLY),
    ])
    def test_parse(self, value, expected):
        assert PaymentFrequency.parse(value) == expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            PaymentFrequency.parse("fortnightly-ish")
        with pytest.raises(ValueError):
            PaymentFrequency.parse(30)

    def test_lenient_parse_falls_back_to_monthly_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert PaymentFrequency.parse_lenient("every-other-tuesday") == PaymentFrequency.MONTHLY
        assert any("every-other-tuesday" in r.getMessage() for r in caplog.records)


class TestMonthArithmetic:
    """Test calendar month addition"""

    def test_plain_month(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_leap_day(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_clamps_in_non_leap_year(self):
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_crosses_year_boundary(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
        assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)

    def test_zero_months(self):
        assert add_months(date(2024, 5, 31), 0) == date(2024, 5, 31)


class TestDueDates:
    """Test due-date schedules"""

    @pytest.mark.parametrize("frequency,expected", [
        (PaymentFrequency.DAILY, date(2024, 1, 16)),
        (PaymentFrequency.WEEKLY, date(2024, 1, 22)),
        (PaymentFrequency.BI_WEEKLY, date(2024, 1, 29)),
        (PaymentFrequency.MONTHLY, date(2024, 2, 15)),
        (PaymentFrequency.QUARTERLY, date(2024, 4, 15)),
        (PaymentFrequency.SEMI_ANNUALLY, date(2024, 7, 15)),
        (PaymentFrequency.ANNUALLY, date(2025, 1, 15)),
    ])
    def test_one_period(self, frequency, expected):
        assert advance_due_date(date(2024, 1, 15), frequency) == expected

    def test_anchored_schedule_keeps_day_of_month(self):
        anchor = date(2024, 1, 31)
        dates = [due_date_for(anchor, PaymentFrequency.MONTHLY, n) for n in range(1, 5)]
        assert dates == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30), date(2024, 5, 31)]

    def test_chained_advance_drifts_after_clamp(self):
        # Chaining from a clamped date loses the 31st; anchoring does not
        chained = advance_due_date(date(2024, 2, 29), PaymentFrequency.MONTHLY)
        assert chained == date(2024, 3, 29)

    def test_due_dates_strictly_increase(self):
        for frequency in PaymentFrequency:
            previous = date(2024, 1, 31)
            for n in range(1, 30):
                current = due_date_for(date(2024, 1, 31), frequency, n)
                assert current > previous
                previous = current

    def test_unknown_frequency_advances_monthly(self):
        assert advance_due_date(date(2024, 1, 15), "sometimes") == date(2024, 2, 15)

    def test_term_end_date(self):
        assert term_end_date(date(2024, 1, 15), 12) == date(2025, 1, 15)
        assert term_end_date(None, 12) is None


class TestDateNormalization:
    """Test conversion to UTC calendar dates"""

    def test_iso_date_string(self):
        assert to_date("2024-03-01") == date(2024, 3, 1)

    def test_aware_datetime_converted_to_utc(self):
        eastern = timezone(timedelta(hours=-5))
        assert to_date(datetime(2024, 1, 15, 23, 30, tzinfo=eastern)) == date(2024, 1, 16)

    def test_iso_datetime_string_with_z(self):
        assert to_date("2024-01-15T10:00:00Z") == date(2024, 1, 15)

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_date("next tuesday")
        with pytest.raises(ValueError):
            to_date(20240115)

    def test_utc_today(self):
        assert utc_today() == datetime.now(timezone.utc).date()
