"""
Unit tests for monthly time-stepping helpers.
"""
from datetime import date

import pandas as pd
import pytest

from errors import InvalidInputError
from time_series import (
    add_years, aggregate_to_annual, annual_to_monthly, calculate_age, growth_factor, month_range,
    monthly_to_annual,
)


class TestRates:
    """Test rate conversion"""

    def test_monthly_rate_compounds_back(self):
        monthly = annual_to_monthly(0.07)
        assert abs((1 + monthly) ** 12 - 1.07) < 1e-12
        assert abs(monthly_to_annual(monthly) - 0.07) < 1e-12

    def test_zero_rate(self):
        assert annual_to_monthly(0.0) == 0.0

    def test_growth_factor(self):
        assert abs(growth_factor(0.03, 24) - 1.03 ** 2) < 1e-12
        assert growth_factor(0.05, 0) == 1.0


class TestDates:
    """Test month ranges and ages"""

    def test_add_years_leap_day(self):
        assert add_years(date(1960, 2, 29), 100) == date(2060, 2, 29)
        assert add_years(date(1960, 2, 29), 1) == date(1961, 2, 28)

    def test_month_range_inclusive(self):
        months = month_range(date(2025, 11, 15), date(2026, 2, 1))
        assert months == [date(2025, 11, 1), date(2025, 12, 1), date(2026, 1, 1), date(2026, 2, 1)]

    def test_month_range_single_month(self):
        assert month_range(date(2025, 5, 1), date(2025, 5, 31)) == [date(2025, 5, 1)]

    def test_month_range_reversed(self):
        with pytest.raises(InvalidInputError):
            month_range(date(2025, 5, 1), date(2025, 4, 1))

    def test_age_before_and_after_birthday(self):
        assert calculate_age(date(1960, 6, 15), date(2025, 6, 14)) == 64
        assert calculate_age(date(1960, 6, 15), date(2025, 6, 15)) == 65


class TestAggregateToAnnual:
    """Test annual roll-up of monthly rows"""

    @pytest.fixture
    def frame(self):
        months = month_range(date(2025, 11, 1), date(2026, 2, 1))
        return pd.DataFrame({
            'month_date': months,
            'flow': [1.0, 2.0, 3.0, 4.0],
            'balance': [10.0, 20.0, 30.0, 40.0],
        })

    def test_sum(self, frame):
        annual = aggregate_to_annual(frame, ['flow'])
        assert annual.loc[2025, 'flow'] == 3.0
        assert annual.loc[2026, 'flow'] == 7.0
        assert annual.loc[2026, 'month_count'] == 2

    def test_last_and_mean(self, frame):
        assert aggregate_to_annual(frame, ['balance'], how='last').loc[2025, 'balance'] == 20.0
        assert aggregate_to_annual(frame, ['balance'], how='mean').loc[2026, 'balance'] == 35.0

    def test_unknown_method(self, frame):
        with pytest.raises(InvalidInputError):
            aggregate_to_annual(frame, ['flow'], how='median')
