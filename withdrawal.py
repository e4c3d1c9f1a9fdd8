"""
Tax-aware withdrawal sequencing across taxable, tax-deferred and tax-free
buckets. Solves the withdrawal/tax circularity with a bounded fixed-point
iteration so the household nets its spending target after taxes.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from config_utils import EngineConfig
from errors import InvalidInputError
from models import (
    BUCKET_TREATMENTS, DEFAULT_WITHDRAWAL_ORDER, ROTH_CONVERSION_TARGET, TAX_DEFERRED,
    TAX_FREE, TAXABLE, Assumptions, balances_by_treatment, bucket_treatment,
)
from tax import HouseholdProfile, IncomeFacts, TaxCalculator, TaxResult, next_bracket_threshold
from tax_utils import UNIFORM_LIFETIME_TABLE, TaxYearTables

logger = logging.getLogger(__name__)


@dataclass
class WithdrawalOptions:
    """Withdrawal policy for one settlement"""
    allow_roth_withdrawals: bool = False
    roth_conversion_budget: float = 0.0
    charitable_giving: float = 0.0
    tax_loss_harvesting: float = 0.0
    withdrawal_order: Optional[List[str]] = None
    capital_gains_ratio: float = 0.30
    tolerance: float = 1.0
    max_iterations: int = 50

    def __post_init__(self):
        for name in ('roth_conversion_budget', 'charitable_giving', 'tax_loss_harvesting'):
            if getattr(self, name) < 0:
                raise InvalidInputError(f"{name} must be non-negative")
        if not 0 <= self.capital_gains_ratio <= 1:
            raise InvalidInputError("capital_gains_ratio must be between 0 and 1")
        if self.tolerance <= 0 or self.max_iterations < 1:
            raise InvalidInputError("tolerance must be positive and max_iterations at least 1")
        if self.withdrawal_order is not None:
            for bucket in self.withdrawal_order:
                bucket_treatment(bucket)

    @classmethod
    def from_assumptions(cls, assumptions: Assumptions,
                         config: Optional[EngineConfig] = None) -> 'WithdrawalOptions':
        config = config or EngineConfig()
        return cls(
            allow_roth_withdrawals=assumptions.allow_roth_withdrawals,
            roth_conversion_budget=assumptions.roth_conversion_budget,
            charitable_giving=assumptions.charitable_giving,
            tax_loss_harvesting=assumptions.tax_loss_harvesting,
            withdrawal_order=assumptions.withdrawal_order,
            capital_gains_ratio=config.capital_gains_ratio,
            tolerance=config.convergence_tolerance,
            max_iterations=config.max_iterations,
        )


@dataclass
class RothConversion:
    amount: float = 0.0
    additional_tax: float = 0.0
    sources: Dict[str, float] = field(default_factory=dict)
    # Tax avoided at the assumed future rate, less the tax paid now
    benefit: Optional[float] = None
    break_even_years: Optional[float] = None  # None when there is no benefit
    recommendation: Optional[str] = None      # 'convert' or 'skip'


def _older_age(household: HouseholdProfile) -> Optional[int]:
    ages = [age for age in (household.age1, household.age2) if age is not None]
    return max(ages) if ages else None


@dataclass
class WithdrawalSummary:
    target_spending: float
    gross_withdrawals: float
    other_income: float
    total_income: float
    total_tax: float
    net_spending: float
    shortfall: float


@dataclass
class WithdrawalPlan:
    """Result of one withdrawal optimization"""
    withdrawals: Dict[str, float]   # Gross per bucket, RMDs included
    rmds: Dict[str, float]
    roth_conversion: RothConversion
    income: IncomeFacts
    taxes: TaxResult
    summary: WithdrawalSummary
    iterations: int
    converged: bool
    is_shortfall: bool
    qcd_used: float = 0.0
    tax_loss_harvested: float = 0.0
    roth_last_resort: bool = False

    @property
    def is_approximate(self) -> bool:
        return not self.converged

    def withdrawals_by_treatment(self) -> Dict[str, float]:
        return balances_by_treatment(self.withdrawals)


def calculate_rmds(balances: Dict[str, float], age1: Optional[int], age2: Optional[int],
                   tables: TaxYearTables) -> Dict[str, float]:
    """
    Required minimum distributions from tax-deferred buckets.

    Uses the older spouse's age against the Uniform Lifetime Table.
    """
    ages = [age for age in (age1, age2) if age is not None]
    if not ages:
        return {}
    age = max(ages)
    if age < tables.rmd_start_age:
        return {}

    divisor = UNIFORM_LIFETIME_TABLE.get(age, UNIFORM_LIFETIME_TABLE[max(UNIFORM_LIFETIME_TABLE)])
    return {
        bucket: balance / divisor
        for bucket, balance in balances.items()
        if bucket_treatment(bucket) == TAX_DEFERRED and balance > 0
    }


def apply_withdrawal_plan(balances: Dict[str, float], plan: WithdrawalPlan) -> Dict[str, float]:
    """New balances after the plan's withdrawals and Roth conversion"""
    updated = dict(balances)
    for bucket, amount in plan.withdrawals.items():
        updated[bucket] = max(0.0, updated.get(bucket, 0.0) - amount)
    for bucket, amount in plan.roth_conversion.sources.items():
        updated[bucket] = max(0.0, updated.get(bucket, 0.0) - amount)
    if plan.roth_conversion.amount > 0:
        updated[ROTH_CONVERSION_TARGET] = updated.get(ROTH_CONVERSION_TARGET, 0.0) + plan.roth_conversion.amount
    return updated


def _as_income_facts(other_income: Union[float, IncomeFacts]) -> IncomeFacts:
    if isinstance(other_income, IncomeFacts):
        return other_income
    # Plain amounts are Social Security
    return IncomeFacts(social_security=float(other_income))


class WithdrawalSequencer:
    """Chooses which buckets fund a year's spending and converges on the tax"""

    def __init__(self, tax_calculator: Optional[TaxCalculator] = None,
                 config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.tax_calculator = tax_calculator or TaxCalculator(self.config.tax_year)

    @property
    def tables(self) -> TaxYearTables:
        return self.tax_calculator.tables

    def withdrawal_order(self, options: WithdrawalOptions) -> List[str]:
        """Bucket priority; tax-free buckets go last unless Roth withdrawals are allowed"""
        order = list(options.withdrawal_order or DEFAULT_WITHDRAWAL_ORDER)
        order += [bucket for bucket in DEFAULT_WITHDRAWAL_ORDER if bucket not in order]
        if not options.allow_roth_withdrawals:
            order = ([b for b in order if bucket_treatment(b) != TAX_FREE]
                     + [b for b in order if bucket_treatment(b) == TAX_FREE])
        return order

    @staticmethod
    def _allocate(amount: float, available: Dict[str, float], order: List[str]) -> Dict[str, float]:
        allocation = {}
        remaining = amount
        for bucket in order:
            if remaining <= 0:
                break
            take = min(remaining, available.get(bucket, 0.0))
            if take > 0:
                allocation[bucket] = take
                remaining -= take
        return allocation

    def _qcd_eligible(self, household: HouseholdProfile) -> bool:
        """Charitable distributions only once distributions are required"""
        age = _older_age(household)
        return age is not None and age >= self.tables.rmd_start_age

    def _income(self, withdrawals: Dict[str, float], other: IncomeFacts, options: WithdrawalOptions,
                conversion: float, household: HouseholdProfile) -> Tuple[IncomeFacts, float, float]:
        """Income facts for a set of withdrawals, after charitable and loss offsets"""
        by_treatment = balances_by_treatment(withdrawals)

        # Qualified charitable distributions come out of tax-deferred money untaxed
        qcd = 0.0
        if self._qcd_eligible(household):
            qcd = min(options.charitable_giving, self.tables.qcd_limit, by_treatment[TAX_DEFERRED])

        gains = by_treatment[TAXABLE] * options.capital_gains_ratio
        against_gains = min(options.tax_loss_harvesting, gains)
        leftover_loss = options.tax_loss_harvesting - against_gains
        ordinary_before_offset = other.ordinary_income + by_treatment[TAX_DEFERRED] - qcd
        against_ordinary = min(leftover_loss, self.tables.capital_loss_ordinary_limit,
                               max(0.0, ordinary_before_offset))

        income = IncomeFacts(
            ordinary_income=max(0.0, ordinary_before_offset - against_ordinary),
            long_term_capital_gains=other.long_term_capital_gains + gains - against_gains,
            qualified_dividends=other.qualified_dividends,
            social_security=other.social_security,
            roth_distributions=other.roth_distributions + by_treatment[TAX_FREE],
            municipal_bond_interest=other.municipal_bond_interest,
            roth_conversion_income=other.roth_conversion_income + conversion,
        )
        return income, qcd, against_gains + against_ordinary

    def _solve(self, available: Dict[str, float], rmds: Dict[str, float], target_spending: float,
               other: IncomeFacts, options: WithdrawalOptions, household: HouseholdProfile,
               conversion: float = 0.0) -> dict:
        """Fixed-point search for the gross withdrawal that covers spending plus tax"""
        order = self.withdrawal_order(options)
        capacity = sum(available.values())
        fixed_cash = other.total_cash() + sum(rmds.values())

        def evaluate(estimate: float) -> dict:
            allocation = self._allocate(min(estimate, capacity), available, order)
            withdrawals = dict(rmds)
            for bucket, amount in allocation.items():
                withdrawals[bucket] = withdrawals.get(bucket, 0.0) + amount
            income, qcd, harvested = self._income(withdrawals, other, options, conversion, household)
            taxes = self.tax_calculator.calculate_tax(income, household)
            return {
                'allocation': allocation,
                'withdrawals': withdrawals,
                'income': income,
                'taxes': taxes,
                'qcd': qcd,
                'harvested': harvested,
            }

        estimate = max(0.0, target_spending - fixed_cash)
        converged = False
        iterations = 0
        for iterations in range(1, options.max_iterations + 1):
            state = evaluate(estimate)
            # QCD dollars go to charity, not to spending
            required = max(0.0, target_spending - fixed_cash + state['taxes'].total_tax + state['qcd'])
            delta = abs(min(required, capacity) - min(estimate, capacity))
            estimate = required
            if delta < options.tolerance:
                converged = True
                break

        if not converged:
            logger.warning(f"Withdrawal solve hit the {options.max_iterations} iteration cap, "
                           f"returning approximate plan")
        else:
            logger.debug(f"Withdrawal solve converged in {iterations} iterations")

        state = evaluate(estimate)
        state['iterations'] = iterations
        state['converged'] = converged
        state['is_shortfall'] = estimate > capacity + options.tolerance
        return state

    def _roth_conversion(self, balances: Dict[str, float], state: dict, options: WithdrawalOptions,
                         household: HouseholdProfile) -> Dict[str, float]:
        """Amount per tax-deferred bucket to convert, filling the current bracket"""
        if options.roth_conversion_budget <= 0 or state['is_shortfall']:
            return {}

        remaining = {
            bucket: balance - state['withdrawals'].get(bucket, 0.0)
            for bucket, balance in balances.items()
            if bucket_treatment(bucket) == TAX_DEFERRED
        }
        if sum(remaining.values()) <= 0:
            return {}

        taxes = state['taxes']
        brackets = self.tax_calculator.federal_brackets(household.filing_status)
        threshold = next_bracket_threshold(taxes.ordinary_taxable_income, brackets)
        if threshold is None:
            return {}

        # Deduction not yet absorbed by income also takes converted dollars tax-free
        unused_deduction = max(0.0, taxes.deduction + state['income'].preferential_income - taxes.agi)
        headroom = threshold - taxes.ordinary_taxable_income + unused_deduction
        amount = min(options.roth_conversion_budget, headroom, sum(remaining.values()))
        if amount <= 0:
            return {}
        return self._allocate(amount, remaining, [b for b in DEFAULT_WITHDRAWAL_ORDER if b in remaining])

    def _value_conversion(self, amount: float, additional_tax: float,
                          sources: Dict[str, float]) -> RothConversion:
        """Compare the tax paid now with the tax avoided at the assumed future rate"""
        future_tax_saved = amount * self.config.roth_future_marginal_rate
        benefit = future_tax_saved - additional_tax
        return RothConversion(
            amount=amount,
            additional_tax=additional_tax,
            sources=sources,
            benefit=benefit,
            break_even_years=additional_tax / benefit if benefit > 0 else None,
            recommendation='convert' if benefit > 0 else 'skip',
        )

    def optimize_withdrawals(self, balances: Dict[str, float], target_spending: float,
                             other_income: Union[float, IncomeFacts] = 0.0,
                             options: Optional[WithdrawalOptions] = None,
                             household: Optional[HouseholdProfile] = None) -> WithdrawalPlan:
        """
        Find the withdrawals that fund `target_spending` after taxes.

        Args:
            balances: Bucket id -> balance
            target_spending: Annual after-tax spending need
            other_income: Non-portfolio income (IncomeFacts, or a plain amount of Social Security)
            options: Withdrawal policy
            household: Filing profile

        Returns:
            WithdrawalPlan; insufficient funds and non-convergence are flagged on the plan
        """
        options = options or WithdrawalOptions()
        household = household or HouseholdProfile()
        if target_spending < 0:
            raise InvalidInputError(f"target_spending must be non-negative, got {target_spending}")
        for bucket, balance in balances.items():
            bucket_treatment(bucket)
            if balance < 0:
                raise InvalidInputError(f"Balance for {bucket} must be non-negative, got {balance}")
        other = _as_income_facts(other_income)

        rmds = calculate_rmds(balances, household.age1, household.age2, self.tables)
        available = {bucket: balance - rmds.get(bucket, 0.0) for bucket, balance in balances.items()}

        state = self._solve(available, rmds, target_spending, other, options, household)
        conversion = RothConversion()

        sources = self._roth_conversion(balances, state, options, household)
        if sources:
            amount = sum(sources.values())
            after_conversion = {bucket: amount_left - sources.get(bucket, 0.0)
                                for bucket, amount_left in available.items()}
            converted = self._solve(after_conversion, rmds, target_spending, other, options,
                                    household, conversion=amount)
            if converted['is_shortfall']:
                logger.debug("Skipping Roth conversion: its tax cannot be funded")
            else:
                conversion = self._value_conversion(
                    amount, converted['taxes'].total_tax - state['taxes'].total_tax, sources)
                state = converted

        taxes = state['taxes']
        gross = sum(state['withdrawals'].values())
        other_cash = other.total_cash()
        net_spending = gross + other_cash - taxes.total_tax - state['qcd']
        roth_last_resort = (not options.allow_roth_withdrawals
                            and any(amount > 0 for bucket, amount in state['withdrawals'].items()
                                    if bucket_treatment(bucket) == TAX_FREE))

        return WithdrawalPlan(
            withdrawals=state['withdrawals'],
            rmds=rmds,
            roth_conversion=conversion,
            income=state['income'],
            taxes=taxes,
            summary=WithdrawalSummary(
                target_spending=target_spending,
                gross_withdrawals=gross,
                other_income=other_cash,
                total_income=gross + other_cash,
                total_tax=taxes.total_tax,
                net_spending=net_spending,
                shortfall=max(0.0, target_spending - net_spending) if state['is_shortfall'] else 0.0,
            ),
            iterations=state['iterations'],
            converged=state['converged'],
            is_shortfall=state['is_shortfall'],
            qcd_used=state['qcd'],
            tax_loss_harvested=state['harvested'],
            roth_last_resort=roth_last_resort,
        )


def simulate_multi_year(balances: Dict[str, float], target_spending: float,
                        other_income: Union[float, IncomeFacts], household: HouseholdProfile,
                        years: int = 30, options: Optional[WithdrawalOptions] = None,
                        sequencer: Optional[WithdrawalSequencer] = None) -> List[dict]:
    """
    Year-by-year withdrawal plans with no portfolio growth.

    Ages advance one year per step; stops early once every bucket is empty.
    """
    sequencer = sequencer or WithdrawalSequencer(TaxCalculator(household.tax_year))
    current = {bucket: balances.get(bucket, 0.0) for bucket in BUCKET_TREATMENTS}
    current.update(balances)
    results = []

    for year in range(years):
        profile = HouseholdProfile(
            state=household.state,
            filing_status=household.filing_status,
            age1=household.age1 + year if household.age1 is not None else None,
            age2=household.age2 + year if household.age2 is not None else None,
            tax_year=household.tax_year,
        )
        plan = sequencer.optimize_withdrawals(current, target_spending, other_income, options, profile)
        current = apply_withdrawal_plan(current, plan)
        results.append({
            'year': year + 1,
            'age1': profile.age1,
            'age2': profile.age2,
            'plan': plan,
            'balances': dict(current),
        })

        if all(balance <= 0 for balance in current.values()):
            break

    return results
