"""
Deterministic monthly projection of a scenario (the planning graph).
Steps month by month through cash flow, a once-yearly withdrawal and tax
settlement, and monthly portfolio growth, emitting one ledger entry per month.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from config_utils import EngineConfig
from errors import InvalidInputError, ProjectionError
from models import TAX_DEFERRED, TAX_FREE, TAXABLE, Goal, Scenario, balances_by_treatment
from tax import HouseholdProfile, IncomeFacts, TaxCalculator
from time_series import add_years, aggregate_to_annual, annual_to_monthly, calculate_age, growth_factor, month_range
from withdrawal import WithdrawalOptions, WithdrawalPlan, WithdrawalSequencer, apply_withdrawal_plan

logger = logging.getLogger(__name__)

# Income stream tax character -> IncomeFacts field
INCOME_FACT_FIELDS = {
    'ordinary': 'ordinary_income',
    'social_security': 'social_security',
    'capital_gains': 'long_term_capital_gains',
    'qualified_dividends': 'qualified_dividends',
    'tax_free': 'roth_distributions',
    'municipal_bond_interest': 'municipal_bond_interest',
}

FLOW_COLUMNS = [
    'taxable_withdrawals', 'tax_deferred_withdrawals', 'tax_free_withdrawals', 'total_withdrawals',
    'roth_conversion', 'contributions', 'rmd_required', 'total_income', 'total_expenses',
    'net_cash_flow', 'federal_tax', 'state_tax', 'irmaa_surcharge', 'niit_tax', 'total_tax', 'shortfall',
]
BALANCE_COLUMNS = ['taxable_balance', 'tax_deferred_balance', 'tax_free_balance', 'total_balance']


@dataclass
class PlanningGraphEntry:
    """One month of the projection ledger"""
    scenario_id: str
    month_index: int  # 1-based
    month_date: date

    # Balances after this month's settlement and growth
    taxable_balance: float
    tax_deferred_balance: float
    tax_free_balance: float
    total_balance: float

    # Settlement-month only
    taxable_withdrawals: float = 0.0
    tax_deferred_withdrawals: float = 0.0
    tax_free_withdrawals: float = 0.0
    total_withdrawals: float = 0.0
    roth_conversion: float = 0.0
    contributions: float = 0.0
    rmd_required: float = 0.0

    # Monthly cash flow
    total_income: float = 0.0
    total_expenses: float = 0.0
    net_cash_flow: float = 0.0

    # Annual taxes, settlement-month only
    federal_tax: float = 0.0
    state_tax: float = 0.0
    irmaa_surcharge: float = 0.0
    niit_tax: float = 0.0
    total_tax: float = 0.0
    shortfall: float = 0.0

    age_primary: Optional[int] = None
    age_secondary: Optional[int] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlanningGraph:
    """Complete, contiguous monthly ledger for one scenario"""
    scenario_id: str
    entries: List[PlanningGraphEntry]
    start_date: date
    end_date: date
    cumulative_withdrawals: float = 0.0
    cumulative_taxes: float = 0.0
    goals: List[Goal] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([entry.to_dict() for entry in self.entries])

    def annual_summary(self) -> pd.DataFrame:
        """Calendar-year totals of flows with year-end balances"""
        frame = self.to_dataframe()
        if frame.empty:
            return pd.DataFrame(columns=FLOW_COLUMNS + BALANCE_COLUMNS)
        flows = aggregate_to_annual(frame, FLOW_COLUMNS, how='sum')
        balances = aggregate_to_annual(frame, BALANCE_COLUMNS, how='last').drop(columns='month_count')
        return flows.join(balances)


@dataclass
class _YearToDate:
    """Cash flow accumulated since the last settlement"""
    income: Dict[str, float] = field(default_factory=lambda: {name: 0.0 for name in INCOME_FACT_FIELDS.values()})
    expenses: float = 0.0

    def income_facts(self) -> IncomeFacts:
        return IncomeFacts(**self.income)


class PlanningGraphProjector:
    """Deterministic monthly projection with annual tax settlement"""

    def __init__(self, config: Optional[EngineConfig] = None,
                 sequencer: Optional[WithdrawalSequencer] = None):
        self.config = config or EngineConfig()
        self.sequencer = sequencer

    def projection_end(self, scenario: Scenario, start_date: date) -> date:
        """Primary person's 100th birthday, or a fixed horizon without a birth date"""
        primary = scenario.primary
        if primary is not None and primary.date_of_birth is not None:
            return add_years(primary.date_of_birth, self.config.projection_max_age)
        return add_years(start_date, self.config.default_horizon_years)

    def _sequencer_for(self, scenario: Scenario) -> WithdrawalSequencer:
        if self.sequencer is not None:
            return self.sequencer
        return WithdrawalSequencer(TaxCalculator(scenario.assumptions.tax_year), self.config)

    def _monthly_cash_flow(self, scenario: Scenario, month: date, months_elapsed: int,
                           ytd: _YearToDate) -> Dict[str, float]:
        """Income and inflated expenses for one month; accumulates into `ytd`"""
        total_income = 0.0
        for stream in scenario.income_streams:
            if stream.is_active(month):
                amount = stream.monthly_amount()
                ytd.income[INCOME_FACT_FIELDS[stream.tax_character]] += amount
                total_income += amount

        total_expenses = 0.0
        for stream in scenario.expense_streams:
            if stream.is_active(month):
                rate = stream.inflation_rate
                if rate is None:
                    rate = scenario.assumptions.inflation_rate
                total_expenses += stream.monthly_amount() * growth_factor(rate, months_elapsed)
        ytd.expenses += total_expenses

        return {
            'total_income': total_income,
            'total_expenses': total_expenses,
            'net_cash_flow': total_income - total_expenses,
        }

    def _settle_year(self, scenario: Scenario, balances: Dict[str, float], ytd: _YearToDate,
                     household: HouseholdProfile, sequencer: WithdrawalSequencer,
                     options: WithdrawalOptions):
        """Annual withdrawal and tax settlement; returns (plan, new balances, reinvested surplus)"""
        plan = sequencer.optimize_withdrawals(balances, ytd.expenses, ytd.income_facts(), options, household)
        balances = apply_withdrawal_plan(balances, plan)

        surplus = 0.0
        if scenario.assumptions.reinvest_surplus:
            surplus = max(0.0, plan.summary.net_spending - ytd.expenses)
            balances[TAXABLE] = balances.get(TAXABLE, 0.0) + surplus
        return plan, balances, surplus

    @staticmethod
    def _settlement_notes(plan: WithdrawalPlan, partial_year: bool = False) -> str:
        notes = [f"Annual tax: ${plan.taxes.total_tax:,.0f}"]
        if partial_year:
            notes.append("Final partial-year settlement")
        if plan.roth_conversion.amount > 0:
            notes.append(f"Roth conversion: ${plan.roth_conversion.amount:,.0f}")
        if plan.is_shortfall:
            notes.append(f"Shortfall: ${plan.summary.shortfall:,.0f}")
        if plan.is_approximate:
            notes.append("Withdrawal solve did not converge")
        return '; '.join(notes)

    def generate(self, scenario: Scenario, start_date: date,
                 end_date: Optional[date] = None) -> PlanningGraph:
        """
        Project a scenario month by month.

        Args:
            scenario: Validated scenario bundle
            start_date: Projection start (also the inflation base)
            end_date: Inclusive end; defaults to the primary person's 100th birthday

        Returns:
            PlanningGraph with one entry per month

        Raises:
            InvalidInputError: malformed scenario, rejected before projecting
            ProjectionError: any failure inside the monthly loop
        """
        if not isinstance(start_date, date):
            raise InvalidInputError(f"start_date must be a date, got {start_date!r}")
        scenario.validate()

        end_date = end_date or self.projection_end(scenario, start_date)
        months = month_range(start_date, end_date)
        assumptions = scenario.assumptions
        sequencer = self._sequencer_for(scenario)
        options = WithdrawalOptions.from_assumptions(assumptions, self.config)
        monthly_return = annual_to_monthly(assumptions.portfolio_return)

        logger.info(f"Projecting scenario {scenario.scenario_id}: {len(months)} months "
                    f"from {months[0]} to {months[-1]}")

        balances = scenario.initial_balances()
        primary, secondary = scenario.primary, scenario.secondary
        ytd = _YearToDate()
        entries = []
        cumulative_withdrawals = 0.0
        cumulative_taxes = 0.0

        for i, month in enumerate(months):
            month_index = i + 1
            try:
                age1 = calculate_age(primary.date_of_birth, month) if primary and primary.date_of_birth else None
                age2 = (calculate_age(secondary.date_of_birth, month)
                        if secondary and secondary.date_of_birth else None)

                cash_flow = self._monthly_cash_flow(scenario, month, i, ytd)
                settlement = {}
                notes = None

                # The last month also settles so every month's expenses are funded
                is_last = month_index == len(months)
                partial_year = is_last and month.month != self.config.settlement_month
                if month.month == self.config.settlement_month or is_last:
                    household = HouseholdProfile(
                        state=assumptions.state,
                        filing_status=assumptions.filing_status,
                        age1=age1,
                        age2=age2,
                        tax_year=assumptions.tax_year,
                    )
                    plan, balances, surplus = self._settle_year(
                        scenario, balances, ytd, household, sequencer, options)
                    by_treatment = plan.withdrawals_by_treatment()
                    settlement = {
                        'taxable_withdrawals': by_treatment[TAXABLE],
                        'tax_deferred_withdrawals': by_treatment[TAX_DEFERRED],
                        'tax_free_withdrawals': by_treatment[TAX_FREE],
                        'total_withdrawals': plan.summary.gross_withdrawals,
                        'roth_conversion': plan.roth_conversion.amount,
                        'contributions': surplus,
                        'rmd_required': sum(plan.rmds.values()),
                        'federal_tax': plan.taxes.federal_tax,
                        'state_tax': plan.taxes.state_tax,
                        'irmaa_surcharge': plan.taxes.irmaa.total_annual,
                        'niit_tax': plan.taxes.niit,
                        'total_tax': plan.taxes.total_tax,
                        'shortfall': plan.summary.shortfall,
                    }
                    notes = self._settlement_notes(plan, partial_year)
                    cumulative_withdrawals += plan.summary.gross_withdrawals
                    cumulative_taxes += plan.taxes.total_tax
                    ytd = _YearToDate()

                balances = {bucket: balance * (1 + monthly_return) for bucket, balance in balances.items()}
                totals = balances_by_treatment(balances)

                entries.append(PlanningGraphEntry(
                    scenario_id=scenario.scenario_id,
                    month_index=month_index,
                    month_date=month,
                    taxable_balance=totals[TAXABLE],
                    tax_deferred_balance=totals[TAX_DEFERRED],
                    tax_free_balance=totals[TAX_FREE],
                    total_balance=sum(totals.values()),
                    age_primary=age1,
                    age_secondary=age2,
                    notes=notes,
                    **cash_flow,
                    **settlement,
                ))
            except Exception as e:
                raise ProjectionError(f"Projection failed: {e}", scenario_id=scenario.scenario_id,
                                      month_index=month_index) from e

        logger.info(f"Generated {len(entries)} monthly entries for {scenario.scenario_id}; "
                    f"cumulative withdrawals ${cumulative_withdrawals:,.0f}, "
                    f"cumulative taxes ${cumulative_taxes:,.0f}")

        return PlanningGraph(
            scenario_id=scenario.scenario_id,
            entries=entries,
            start_date=months[0],
            end_date=months[-1],
            cumulative_withdrawals=cumulative_withdrawals,
            cumulative_taxes=cumulative_taxes,
            goals=list(scenario.goals),
        )


def generate_planning_graph(scenario: Scenario, start_date: date, end_date: Optional[date] = None,
                            config: Optional[EngineConfig] = None) -> PlanningGraph:
    """Convenience wrapper around PlanningGraphProjector"""
    return PlanningGraphProjector(config).generate(scenario, start_date, end_date)
