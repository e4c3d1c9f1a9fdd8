#!/usr/bin/env python3
"""
Demo script showing how to use the cash-flow engine modules programmatically.
Runs a tax calculation, a withdrawal plan, a monthly projection and a Monte Carlo simulation.
"""
from datetime import date

from config_utils import configure_logging, load_engine_config
from io_utils import export_annual_summary_csv, format_currency
from models import Account, Assumptions, ExpenseStream, IncomeStream, Person, Scenario
from planning_graph import PlanningGraphProjector
from simulation import MonteCarloEngine, params_from_scenario
from tax import HouseholdProfile, IncomeFacts, TaxCalculator
from withdrawal import WithdrawalOptions, WithdrawalSequencer


def build_demo_scenario() -> Scenario:
    """Married couple in Arizona, both recently retired"""
    return Scenario(
        scenario_id='demo-couple',
        people=[
            Person(name='Alex', date_of_birth=date(1958, 4, 12)),
            Person(name='Sam', date_of_birth=date(1960, 9, 3), relationship='spouse'),
        ],
        accounts=[
            Account('taxable', 600_000, name='Brokerage'),
            Account('ira_traditional', 900_000, name='Rollover IRA'),
            Account('401k_traditional', 250_000, name='Old 401k'),
            Account('ira_roth', 300_000, name='Roth IRA'),
        ],
        income_streams=[
            IncomeStream(3_200, 'monthly', start_date=date(2025, 1, 1),
                         tax_character='social_security', description='Social Security (Alex)'),
            IncomeStream(2_100, 'monthly', start_date=date(2027, 1, 1),
                         tax_character='social_security', description='Social Security (Sam)'),
            IncomeStream(12_000, 'annual', tax_character='qualified_dividends', description='Dividends'),
        ],
        expense_streams=[
            ExpenseStream(8_500, 'monthly', description='Living expenses'),
            ExpenseStream(12_000, 'annual', inflation_rate=0.05, description='Healthcare'),
        ],
        assumptions=Assumptions(state='AZ', filing_status='married_joint', roth_conversion_budget=40_000),
    )


def main():
    configure_logging()
    config = load_engine_config()

    print("Retirement Cash-Flow Engine Demo")
    print("=" * 50)

    # 1. Tax calculation
    print("\nTax calculation:")
    income = IncomeFacts(ordinary_income=50_000, long_term_capital_gains=30_000,
                         qualified_dividends=10_000, social_security=48_000)
    household = HouseholdProfile(state='AZ', filing_status='married_joint', age1=68, age2=68)
    taxes = TaxCalculator(config.tax_year).calculate_tax(income, household)
    print(f"   AGI: {format_currency(taxes.agi)}, taxable income: {format_currency(taxes.taxable_income)}")
    print(f"   Federal: ${taxes.federal_tax:,.0f}, state: ${taxes.state_tax:,.0f}, "
          f"IRMAA tier {taxes.irmaa.tier}, NIIT: ${taxes.niit:,.0f}")
    print(f"   Effective rate: {taxes.effective_rate:.1%}, marginal rate: {taxes.marginal_rate:.0%}")

    # 2. Withdrawal plan for one year
    print("\nWithdrawal plan:")
    sequencer = WithdrawalSequencer(config=config)
    balances = {'taxable': 400_000, 'ira_traditional': 800_000, 'ira_roth': 200_000}
    plan = sequencer.optimize_withdrawals(
        balances, 120_000, IncomeFacts(social_security=48_000),
        WithdrawalOptions(roth_conversion_budget=30_000), household,
    )
    for bucket, amount in plan.withdrawals.items():
        print(f"   {bucket}: ${amount:,.0f}")
    print(f"   Roth conversion: ${plan.roth_conversion.amount:,.0f}")
    print(f"   Total tax: ${plan.summary.total_tax:,.0f}, net spending: ${plan.summary.net_spending:,.0f} "
          f"({plan.iterations} iterations)")

    # 3. Monthly projection
    print("\nPlanning graph:")
    scenario = build_demo_scenario()
    graph = PlanningGraphProjector(config).generate(scenario, start_date=date(2025, 1, 1))
    final = graph.entries[-1]
    print(f"   {len(graph)} months through {graph.end_date}")
    print(f"   Cumulative withdrawals: {format_currency(graph.cumulative_withdrawals, precision=1)}")
    print(f"   Cumulative taxes: {format_currency(graph.cumulative_taxes, precision=1)}")
    print(f"   Final balance: {format_currency(final.total_balance, precision=1)}")
    print("\n   First five years:")
    for line in export_annual_summary_csv(graph).splitlines()[:6]:
        print(f"   {line[:100]}")

    # 4. Monte Carlo
    print("\nMonte Carlo:")
    params = params_from_scenario(scenario, years=30, num_simulations=5_000, random_seed=42)
    summary = MonteCarloEngine(config).run(params)
    print(f"   Success rate: {summary.success_rate:.1f}%")
    print(f"   Terminal wealth (P5/P50/P95): {format_currency(summary.percentile5)} / "
          f"{format_currency(summary.median_final_value)} / {format_currency(summary.percentile95)}")
    print(f"   Completed in {summary.execution_time_ms:.0f}ms")


if __name__ == "__main__":
    main()
