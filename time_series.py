"""
Monthly time-stepping helpers for projections.
Rate conversion between annual and monthly compounding, month ranges,
ages and roll-up of monthly ledgers into calendar years.
"""
from datetime import date
from typing import List, Sequence

import pandas as pd

from errors import InvalidInputError


def annual_to_monthly(annual_rate: float) -> float:
    """Monthly rate that compounds to `annual_rate` over twelve months"""
    return (1 + annual_rate) ** (1 / 12) - 1


def monthly_to_annual(monthly_rate: float) -> float:
    return (1 + monthly_rate) ** 12 - 1


def growth_factor(annual_rate: float, months: int) -> float:
    """Compound growth multiplier after `months` at `annual_rate`"""
    return (1 + annual_to_monthly(annual_rate)) ** months


def add_years(d: date, years: int) -> date:
    """Same calendar day `years` later; Feb 29 becomes Feb 28 in non-leap years"""
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        return d.replace(year=d.year + years, day=28)


def month_start(d: date) -> date:
    return date(d.year, d.month, 1)


def month_range(start: date, end: date) -> List[date]:
    """
    First-of-month dates from `start` through `end`, inclusive.

    Both bounds are normalised to the first of their month.
    """
    current = month_start(start)
    last = month_start(end)
    if last < current:
        raise InvalidInputError(f"End date {end} is before start date {start}")

    months = []
    while current <= last:
        months.append(current)
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)
    return months


def calculate_age(birth_date: date, as_of: date) -> int:
    """Completed years of age on `as_of`"""
    age = as_of.year - birth_date.year
    if (as_of.month, as_of.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def aggregate_to_annual(frame: pd.DataFrame, value_columns: Sequence[str],
                        how: str = 'sum', date_column: str = 'month_date') -> pd.DataFrame:
    """
    Roll monthly rows up to calendar years.

    Args:
        frame: Monthly rows with a date column
        value_columns: Columns to aggregate
        how: 'sum' for flows, 'mean' for rates, 'last' for balances
        date_column: Column holding the month date

    Returns:
        DataFrame indexed by year with one column per value column and a month count
    """
    if how not in ('sum', 'mean', 'last'):
        raise InvalidInputError(f"Unknown aggregation method: {how}")

    years = pd.to_datetime(frame[date_column]).dt.year.rename('year')
    grouped = frame[list(value_columns)].groupby(years)
    annual = getattr(grouped, how)()
    annual['month_count'] = grouped.size()
    return annual
