"""
Household tax model with stacked capital-gains brackets.
Federal ordinary and preferential income tax, taxable Social Security,
state income tax, Medicare IRMAA surcharges and the net investment income tax.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from errors import InvalidInputError
from tax_utils import FILING_STATUSES, TaxYearTables, get_state_tax_rates, get_tax_tables

logger = logging.getLogger(__name__)


def calculate_tax(taxable_income: float, tax_brackets: List[Tuple[float, float]]) -> float:
    """
    Calculate tax using progressive brackets.

    Args:
        taxable_income: Income subject to tax
        tax_brackets: List of (threshold, rate) tuples where threshold is the START of each bracket

    Returns:
        Total tax owed
    """
    if taxable_income <= 0:
        return 0.0

    if not tax_brackets:
        return 0.0

    tax = 0.0

    # Sort brackets by threshold to ensure proper order
    sorted_brackets = sorted(tax_brackets, key=lambda x: x[0])

    for i, (threshold, rate) in enumerate(sorted_brackets):
        # Calculate the upper limit of this bracket
        if i + 1 < len(sorted_brackets):
            upper_limit = sorted_brackets[i + 1][0]
        else:
            upper_limit = float('inf')  # No upper limit for highest bracket

        # Calculate income taxed in this bracket
        income_in_bracket = max(0, min(taxable_income, upper_limit) - threshold)

        if income_in_bracket > 0:
            tax += income_in_bracket * rate

    return max(0.0, tax)


def calculate_stacked_tax(amount: float, base: float,
                          tax_brackets: List[Tuple[float, float]]) -> float:
    """
    Tax on `amount` when it sits on top of `base` income in the same schedule.

    Long-term gains and qualified dividends are taxed this way: the brackets
    are evaluated against (ordinary + gains) and only the slice above the
    ordinary baseline is charged.
    """
    if amount <= 0:
        return 0.0
    base = max(0.0, base)
    return calculate_tax(base + amount, tax_brackets) - calculate_tax(base, tax_brackets)


def marginal_tax_rate(taxable_income: float, tax_brackets: List[Tuple[float, float]]) -> float:
    """
    Rate applied to the next dollar of income.

    Args:
        taxable_income: Current taxable income
        tax_brackets: Progressive tax brackets

    Returns:
        Marginal tax rate for next dollar of income
    """
    if taxable_income <= 0:
        return 0.0

    if not tax_brackets:
        return 0.0

    # Sort brackets by threshold
    sorted_brackets = sorted(tax_brackets, key=lambda x: x[0])
    current_rate = 0.0

    for threshold, rate in sorted_brackets:
        if taxable_income >= threshold:
            current_rate = rate
        else:
            break

    return current_rate


def next_bracket_threshold(taxable_income: float,
                           tax_brackets: List[Tuple[float, float]]) -> Optional[float]:
    """Start of the next bracket above `taxable_income`, or None in the top bracket"""
    for threshold, _ in sorted(tax_brackets, key=lambda x: x[0]):
        if taxable_income < threshold:
            return threshold
    return None


@dataclass
class HouseholdProfile:
    """Who files and where"""
    state: str = 'AZ'
    filing_status: str = 'married_joint'
    age1: Optional[int] = 65
    age2: Optional[int] = None  # None for single filers
    tax_year: int = 2024

    def __post_init__(self):
        if self.filing_status not in FILING_STATUSES:
            raise InvalidInputError(f"Unsupported filing status: {self.filing_status}")
        for age in (self.age1, self.age2):
            if age is not None and age < 0:
                raise InvalidInputError(f"Age must be non-negative, got {age}")
        self.state = (self.state or '').upper()

    @property
    def filer_ages(self) -> List[int]:
        """Ages of the people on this return"""
        ages = [self.age1] if self.age1 is not None else []
        if self.filing_status == 'married_joint' and self.age2 is not None:
            ages.append(self.age2)
        return ages


@dataclass
class IncomeFacts:
    """Annual income by tax character"""
    ordinary_income: float = 0.0        # Wages, interest, IRA/401k distributions
    long_term_capital_gains: float = 0.0
    qualified_dividends: float = 0.0
    social_security: float = 0.0
    roth_distributions: float = 0.0     # Tax-free, counts toward MAGI
    municipal_bond_interest: float = 0.0  # Tax-free, counts toward MAGI
    roth_conversion_income: float = 0.0   # Taxed as ordinary income

    def __post_init__(self):
        for name, value in self.__dict__.items():
            if value is None or value < 0:
                raise InvalidInputError(f"{name} must be a non-negative amount, got {value}")

    def __add__(self, other: 'IncomeFacts') -> 'IncomeFacts':
        return IncomeFacts(**{name: getattr(self, name) + getattr(other, name)
                              for name in self.__dict__})

    @property
    def total_ordinary(self) -> float:
        return self.ordinary_income + self.roth_conversion_income

    @property
    def preferential_income(self) -> float:
        return self.long_term_capital_gains + self.qualified_dividends

    def total_cash(self) -> float:
        """Cash actually received (conversions move money between accounts)"""
        return (self.ordinary_income + self.long_term_capital_gains + self.qualified_dividends
                + self.social_security + self.roth_distributions + self.municipal_bond_interest)


@dataclass
class IrmaaResult:
    """Medicare Part B/D income-related surcharges"""
    part_b: float = 0.0          # Monthly, all enrollees
    part_d: float = 0.0          # Monthly, all enrollees
    total_monthly: float = 0.0
    total_annual: float = 0.0
    tier: Optional[int] = None   # 1-based tier, None when nobody is on Medicare
    magi: float = 0.0
    enrollees: int = 0


@dataclass
class TaxResult:
    """Annual tax liability breakdown"""
    agi: float
    magi: float
    taxable_income: float
    ordinary_taxable_income: float
    preferential_income: float
    taxable_social_security: float
    deduction: float
    federal_tax: float
    ordinary_tax: float
    capital_gains_tax: float
    state_tax: float
    irmaa: IrmaaResult
    niit: float
    total_tax: float
    effective_rate: float
    marginal_rate: float

    def breakdown(self) -> Dict[str, float]:
        return {
            'federal': self.federal_tax,
            'state': self.state_tax,
            'irmaa': self.irmaa.total_annual,
            'niit': self.niit,
        }


def zero_tax_result() -> TaxResult:
    """Result used for months without a settlement"""
    return TaxResult(
        agi=0.0, magi=0.0, taxable_income=0.0, ordinary_taxable_income=0.0,
        preferential_income=0.0, taxable_social_security=0.0, deduction=0.0,
        federal_tax=0.0, ordinary_tax=0.0, capital_gains_tax=0.0, state_tax=0.0,
        irmaa=IrmaaResult(), niit=0.0, total_tax=0.0, effective_rate=0.0, marginal_rate=0.0,
    )


def taxable_social_security(benefits: float, other_income: float, filing_status: str,
                            tables: TaxYearTables) -> float:
    """
    Taxable portion of Social Security benefits (IRS Publication 915).

    Args:
        benefits: Annual Social Security benefits
        other_income: Other income plus tax-exempt interest
        filing_status: Filing status
        tables: Tax-year tables

    Returns:
        Amount of benefits included in AGI (at most 85%)
    """
    if benefits <= 0:
        return 0.0

    base, adjusted = tables.for_status(tables.social_security_thresholds, filing_status)
    provisional = other_income + 0.5 * benefits

    if provisional <= base:
        return 0.0
    if provisional <= adjusted:
        return min(0.5 * benefits, 0.5 * (provisional - base))

    first_tier = min(0.5 * benefits, 0.5 * (adjusted - base))
    return min(0.85 * benefits, 0.85 * (provisional - adjusted) + first_tier)


class TaxCalculator:
    """Tax liability for one household and tax year"""

    def __init__(self, tax_year: int = 2024, tables: Optional[TaxYearTables] = None):
        self.tables = tables or get_tax_tables(tax_year)
        self.tax_year = self.tables.tax_year

    def federal_brackets(self, filing_status: str) -> List[Tuple[float, float]]:
        return self.tables.for_status(self.tables.federal_brackets, filing_status)

    def deduction(self, household: HouseholdProfile) -> float:
        """Standard deduction plus the additional amount per filer aged 65+"""
        status = household.filing_status
        base = self.tables.for_status(self.tables.standard_deduction, status)
        if status in ('married_joint', 'married_separate'):
            per_person = self.tables.additional_deduction_married
        else:
            per_person = self.tables.additional_deduction_unmarried
        seniors = sum(1 for age in household.filer_ages if age >= 65)
        return base + seniors * per_person

    def calculate_tax(self, income: IncomeFacts, household: HouseholdProfile) -> TaxResult:
        """
        Calculate total tax liability for a household.

        Args:
            income: Annual income by tax character
            household: Filing status, state and ages

        Returns:
            TaxResult with the full breakdown
        """
        status = household.filing_status

        # Step 1: AGI
        other_income = income.total_ordinary + income.preferential_income
        taxable_ss = taxable_social_security(
            income.social_security,
            other_income + income.municipal_bond_interest,
            status,
            self.tables,
        )
        agi = other_income + taxable_ss

        # Step 2: MAGI, used for IRMAA and NIIT only
        magi = agi + income.municipal_bond_interest + income.roth_distributions

        # Step 3: Taxable income
        deduction = self.deduction(household)
        taxable_income = max(0.0, agi - deduction)

        # Step 4: Ordinary income fills the brackets first, gains stack on top
        ordinary_taxable = max(0.0, taxable_income - income.preferential_income)
        preferential_taxable = taxable_income - ordinary_taxable
        ordinary_tax = calculate_tax(ordinary_taxable, self.federal_brackets(status))
        capital_gains_tax = calculate_stacked_tax(
            preferential_taxable,
            ordinary_taxable,
            self.tables.for_status(self.tables.capital_gains_brackets, status),
        )
        federal_tax = ordinary_tax + capital_gains_tax

        # Step 5: State
        state_tax = self.calculate_state_tax(taxable_income, household.state, status)

        # Step 6: IRMAA (current-year MAGI, see DESIGN.md)
        irmaa = self.calculate_irmaa(magi, household)

        # Step 7: NIIT
        niit = self.calculate_niit(income.preferential_income, magi, status)

        total_tax = federal_tax + state_tax + irmaa.total_annual + niit
        effective_rate = min(1.0, total_tax / agi) if agi > 0 else 0.0

        return TaxResult(
            agi=agi,
            magi=magi,
            taxable_income=taxable_income,
            ordinary_taxable_income=ordinary_taxable,
            preferential_income=preferential_taxable,
            taxable_social_security=taxable_ss,
            deduction=deduction,
            federal_tax=federal_tax,
            ordinary_tax=ordinary_tax,
            capital_gains_tax=capital_gains_tax,
            state_tax=state_tax,
            irmaa=irmaa,
            niit=niit,
            total_tax=total_tax,
            effective_rate=effective_rate,
            marginal_rate=marginal_tax_rate(ordinary_taxable, self.federal_brackets(status)),
        )

    def calculate_state_tax(self, taxable_income: float, state: str, filing_status: str) -> float:
        """State income tax on federal taxable income"""
        definition = get_state_tax_rates(state, filing_status, self.tables)
        if definition is None:
            logger.warning(f"No state tax table for '{state}', assuming no state income tax")
            return 0.0
        if definition['type'] == 'flat':
            return max(0.0, taxable_income) * definition['rate']
        if definition['type'] == 'progressive':
            return calculate_tax(taxable_income, definition['brackets'])
        return 0.0

    def calculate_irmaa(self, magi: float, household: HouseholdProfile) -> IrmaaResult:
        """Medicare surcharges for every filer aged 65+"""
        enrollees = sum(1 for age in household.filer_ages if age >= 65)
        if enrollees == 0:
            return IrmaaResult(magi=magi)

        tiers = self.tables.for_status(self.tables.irmaa_tiers, household.filing_status)
        tier_index = len(tiers) - 1
        for i, (upper, _, _) in enumerate(tiers):
            if magi <= upper:
                tier_index = i
                break

        _, part_b_each, part_d_each = tiers[tier_index]
        part_b = part_b_each * enrollees
        part_d = part_d_each * enrollees

        return IrmaaResult(
            part_b=part_b,
            part_d=part_d,
            total_monthly=part_b + part_d,
            total_annual=(part_b + part_d) * 12,
            tier=tier_index + 1,
            magi=magi,
            enrollees=enrollees,
        )

    def calculate_niit(self, investment_income: float, magi: float, filing_status: str) -> float:
        """3.8% on the lesser of investment income and MAGI above the threshold"""
        threshold = self.tables.for_status(self.tables.niit_threshold, filing_status)
        if magi <= threshold:
            return 0.0
        return min(investment_income, magi - threshold) * self.tables.niit_rate


def calculate_household_tax(income: IncomeFacts, household: HouseholdProfile) -> TaxResult:
    """Convenience wrapper using the household's tax year"""
    return TaxCalculator(household.tax_year).calculate_tax(income, household)
