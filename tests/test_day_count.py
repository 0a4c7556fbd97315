"""Tests for ACT/365.25 year fractions."""

import pytest
from datetime import date, datetime

from structpricer.core.day_count import time_to_expiry, year_fraction_to_days


class TestTimeToExpiry:
    """Option time uses signed ACT/365.25."""

    def test_positive_before_expiry(self) -> None:
        assert time_to_expiry(date(2024, 1, 15), date(2025, 1, 15)) == pytest.approx(366 / 365.25)

    def test_negative_after_expiry(self) -> None:
        assert time_to_expiry(date(2024, 2, 1), date(2024, 1, 1)) == pytest.approx(-31 / 365.25)

    def test_zero_on_expiry(self) -> None:
        assert time_to_expiry(date(2024, 1, 1), date(2024, 1, 1)) == 0.0

    def test_time_of_day_ignored(self) -> None:
        assert time_to_expiry(datetime(2024, 1, 1, 16, 30), date(2024, 7, 1)) == pytest.approx(182 / 365.25)


class TestYearFractionToDays:

    def test_one_year(self) -> None:
        assert year_fraction_to_days(1.0) == 365

    def test_inverts_time_to_expiry(self) -> None:
        T = time_to_expiry(date(2024, 1, 15), date(2024, 9, 30))
        assert year_fraction_to_days(T) == 259
