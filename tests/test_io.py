"""
Unit tests for IO utilities (scenario loading, exports).
"""
import json
from datetime import date
from io import StringIO

import numpy as np
import pandas as pd
import pytest

from errors import InvalidInputError
from io_utils import (
    export_annual_summary_csv, export_percentile_bands_csv, export_planning_graph_csv,
    export_terminal_wealth_csv, format_currency, graph_to_dataframe, load_scenario_json,
    records_to_dataframe, save_scenario_json, scenario_from_dict, scenario_to_dict, summary_to_json,
    withdrawal_plan_to_dict,
)
from planning_graph import generate_planning_graph
from simulation import run_monte_carlo
from tax import HouseholdProfile
from withdrawal import WithdrawalSequencer, simulate_multi_year

CAMEL_BUNDLE = {
    'scenarioId': 'abc-123',
    'people': [
        {'name': 'Pat', 'dateOfBirth': '1958-04-12', 'relationship': 'primary'},
        {'name': 'Lee', 'dateOfBirth': '1960-09-03T00:00:00Z', 'relationship': 'spouse'},
    ],
    'accounts': [
        {'id': 'acct-1', 'accountType': 'taxable', 'currentValue': '250000.50', 'custodian': 'X'},
        {'accountType': 'ira_traditional', 'currentValue': 400_000},
    ],
    'incomeStreams': [
        {'amount': 3_000, 'frequency': 'monthly', 'startDate': '2025-01-01', 'endDate': None,
         'taxCharacter': 'social_security', 'description': 'SS'},
    ],
    'expenseStreams': [
        {'amount': 6_000, 'frequency': 'monthly', 'inflationRate': 0.02},
    ],
    'goals': [
        {'name': 'Travel', 'targetAmount': 50_000, 'targetDate': '2030-06-01', 'priority': 'high'},
    ],
    'assumptions': {
        'state': 'TX', 'filingStatus': 'married_joint', 'portfolioReturn': 0.05,
        'allowRothWithdrawals': True, 'rothConversionBudget': 10_000,
    },
}


class TestScenarioLoading:
    """Test scenario bundle parsing"""

    def test_camel_case_bundle(self):
        scenario = scenario_from_dict(CAMEL_BUNDLE)

        assert scenario.scenario_id == 'abc-123'
        assert scenario.people[0].date_of_birth == date(1958, 4, 12)
        assert scenario.people[1].date_of_birth == date(1960, 9, 3)
        assert scenario.accounts[0].account_id == 'acct-1'
        assert scenario.accounts[0].current_value == 250_000.50
        assert scenario.income_streams[0].tax_character == 'social_security'
        assert scenario.income_streams[0].end_date is None
        assert scenario.expense_streams[0].inflation_rate == 0.02
        assert scenario.goals[0].target_date == date(2030, 6, 1)
        assert scenario.goals[0].metadata == {'priority': 'high'}
        assert scenario.assumptions.allow_roth_withdrawals is True
        assert scenario.assumptions.roth_conversion_budget == 10_000

    def test_snake_case_round_trip(self):
        scenario = scenario_from_dict(CAMEL_BUNDLE)
        restored = scenario_from_dict(scenario_to_dict(scenario))
        assert restored == scenario

    def test_save_and_load_json(self, tmp_path):
        scenario = scenario_from_dict(CAMEL_BUNDLE)
        path = tmp_path / 'scenario.json'
        save_scenario_json(scenario, str(path))
        assert load_scenario_json(str(path)) == scenario

    def test_missing_scenario_id(self):
        with pytest.raises(InvalidInputError, match="scenario_id"):
            scenario_from_dict({'accounts': []})

    def test_malformed_date(self):
        bundle = dict(CAMEL_BUNDLE, people=[{'name': 'Pat', 'dateOfBirth': '04/12/1958'}])
        with pytest.raises(InvalidInputError, match="ISO date"):
            scenario_from_dict(bundle)

    def test_non_numeric_amount(self):
        bundle = dict(CAMEL_BUNDLE, accounts=[{'accountType': 'taxable', 'currentValue': 'lots'}])
        with pytest.raises(InvalidInputError):
            scenario_from_dict(bundle)

    def test_negative_amount_rejected(self):
        bundle = dict(CAMEL_BUNDLE, expenseStreams=[{'amount': -10, 'frequency': 'monthly'}])
        with pytest.raises(InvalidInputError):
            scenario_from_dict(bundle)

    def test_unknown_frequency_rejected(self):
        bundle = dict(CAMEL_BUNDLE, incomeStreams=[{'amount': 10, 'frequency': 'weekly'}])
        with pytest.raises(InvalidInputError, match="frequency"):
            scenario_from_dict(bundle)

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / 'broken.json'
        path.write_text('{not json')
        with pytest.raises(InvalidInputError):
            load_scenario_json(str(path))


class TestExports:
    """Test ledger and summary exports"""

    @pytest.fixture
    def graph(self):
        scenario = scenario_from_dict(CAMEL_BUNDLE)
        return generate_planning_graph(scenario, date(2025, 1, 1), date(2026, 12, 1))

    def test_planning_graph_csv(self, graph):
        frame = pd.read_csv(StringIO(export_planning_graph_csv(graph)))
        assert len(frame) == 24
        assert frame['month_index'].tolist() == list(range(1, 25))
        assert frame.loc[0, 'month_date'] == '2025-01-01'

    def test_graph_to_dataframe(self, graph):
        frame = graph_to_dataframe(graph)
        assert frame['scenario_id'].unique().tolist() == ['abc-123']

    def test_annual_summary_csv(self, graph):
        frame = pd.read_csv(StringIO(export_annual_summary_csv(graph)))
        assert frame['year'].tolist() == [2025, 2026]
        assert 'total_tax' in frame.columns

    def test_summary_to_json(self):
        summary = run_monte_carlo(1_000_000, 0.05, 0.1, 10, num_simulations=200, random_seed=2,
                                  include_sample_paths=True)
        data = json.loads(summary_to_json(summary))
        assert data['successRate'] == summary.success_rate
        assert len(data['samplePaths']['p50']) == 11

    def test_terminal_wealth_csv(self):
        csv = export_terminal_wealth_csv(np.array([1.0, 2.0, 3.0]))
        frame = pd.read_csv(StringIO(csv))
        assert frame['simulation'].tolist() == [1, 2, 3]
        assert frame['terminal_wealth'].tolist() == [1.0, 2.0, 3.0]

    def test_percentile_bands_csv(self):
        bands = {'p10': np.array([1.0, 2.0]), 'p50': np.array([2.0, 3.0]), 'p90': np.array([3.0, 4.0])}
        frame = pd.read_csv(StringIO(export_percentile_bands_csv(np.array([2025, 2026]), bands)))
        assert list(frame.columns) == ['year', 'p10_wealth', 'p50_wealth', 'p90_wealth']

    def test_withdrawal_plan_to_dict(self):
        household = HouseholdProfile(state='TX', filing_status='single', age1=60)
        plan = WithdrawalSequencer().optimize_withdrawals({'taxable': 100_000}, 30_000, household=household)
        data = withdrawal_plan_to_dict(plan)
        json.dumps(data)
        assert data['summary']['gross_withdrawals'] == plan.summary.gross_withdrawals
        assert data['taxes']['irmaa']['tier'] is None
        assert data['is_approximate'] is False

    def test_records_to_dataframe(self):
        household = HouseholdProfile(state='TX', filing_status='single', age1=60)
        records = simulate_multi_year({'taxable': 100_000}, 40_000, 0, household, years=10)
        frame = records_to_dataframe(records)
        assert frame['year'].tolist() == [1, 2, 3]
        assert frame['ending_balance'].iloc[-1] == 0


class TestFormatCurrency:
    """Test currency formatting"""

    def test_millions(self):
        assert format_currency(2_500_000, precision=1) == "$2.5M"

    def test_thousands(self):
        assert format_currency(350_000) == "$350K"

    def test_small_and_negative(self):
        assert format_currency(42) == "$42"
        assert format_currency(-1_500, precision=1) == "-$1.5K"
