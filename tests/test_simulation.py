"""
Unit tests for the Monte Carlo simulation engine.
"""
import threading

import numpy as np
import pytest

import simulation
from config_utils import EngineConfig
from errors import InvalidInputError, SimulationError
from models import Account, Assumptions, ExpenseStream, IncomeStream, Scenario
from simulation import (
    MonteCarloEngine, MonteCarloParams, calculate_percentiles, params_from_scenario, run_monte_carlo,
    sorted_percentile,
)


class TestMonteCarloParams:
    """Test parameter validation"""

    def test_valid_params(self):
        MonteCarloParams(1_000_000, 0.07, 0.15, 30, num_simulations=1_000).validate()

    @pytest.mark.parametrize("overrides", [
        {'initial_value': 0},
        {'expected_return': -0.01},
        {'volatility': 1.5},
        {'years': 0},
        {'years': 101},
        {'num_simulations': 50},
        {'num_simulations': 50_001},
        {'annual_withdrawal': -1},
        {'deadline_seconds': 0},
    ])
    def test_out_of_range_rejected(self, overrides):
        values = dict(initial_value=1_000_000, expected_return=0.07, volatility=0.15, years=30,
                      num_simulations=1_000)
        values.update(overrides)
        with pytest.raises(InvalidInputError):
            run_monte_carlo(**values)


class TestDeterministicPaths:
    """Test paths with zero volatility"""

    def test_zero_volatility_matches_compound_growth(self):
        summary = run_monte_carlo(1_000_000, 0.08, 0.0, 10, num_simulations=100, random_seed=7)
        expected = 1_000_000 * 1.08 ** 10

        assert summary.num_simulations == 100
        assert summary.success_rate == 100.0
        assert summary.percentile5 == summary.percentile95 == summary.median_final_value
        assert summary.median_final_value == pytest.approx(expected, rel=1e-9)
        assert abs(expected - 2_158_925) < 1
        assert np.all(summary.terminal_values == summary.terminal_values[0])

    def test_depletion_statistics(self):
        summary = run_monte_carlo(100_000, 0.0, 0.0, 10, annual_withdrawal=30_000, num_simulations=100)

        assert summary.success_rate == 0.0
        assert summary.first_failure_year == 4
        assert summary.earliest_failure_year == 4
        # 20,000 unmet in year 4, then 30,000 in each of six more years
        assert abs(summary.max_shortfall - 200_000) < 1e-6
        assert summary.probabilities['depleted'] == 1.0
        assert summary.median_final_value == 0

    def test_contributions_added_each_year(self):
        summary = run_monte_carlo(100_000, 0.0, 0.0, 5, annual_contribution=10_000,
                                  num_simulations=100, goal_value=150_000)
        assert abs(summary.median_final_value - 150_000) < 1e-6
        assert summary.probabilities['preserved'] == 1.0
        assert summary.probabilities['doubled'] == 0.0
        assert summary.probabilities['goal'] == 1.0
        assert summary.first_failure_year is None
        assert summary.max_shortfall == 0

    def test_withdrawal_grows_with_inflation(self):
        summary = run_monte_carlo(100_000, 0.0, 0.0, 3, annual_withdrawal=10_000,
                                  num_simulations=100, withdrawal_inflation=0.10)
        # 10,000 then 11,000 then 12,100
        assert abs(summary.median_final_value - 66_900) < 1e-6

    def test_inflated_withdrawal_depletes_sooner(self):
        flat = run_monte_carlo(100_000, 0.0, 0.0, 10, annual_withdrawal=20_000, num_simulations=100)
        inflated = run_monte_carlo(100_000, 0.0, 0.0, 10, annual_withdrawal=20_000, num_simulations=100,
                                   withdrawal_inflation=0.10)
        assert flat.first_failure_year == 5
        assert inflated.first_failure_year == 5
        # 20,000 + 22,000 + 24,200 + 26,620 leaves 7,180 for year five
        assert inflated.max_shortfall > flat.max_shortfall

    def test_stopped_chunk_returns_nothing(self):
        stop = threading.Event()
        stop.set()
        params = MonteCarloParams(1_000_000, 0.07, 0.15, 10, num_simulations=100)
        assert simulation.simulate_chunk(params, np.random.SeedSequence(1), 100, stop=stop) is None

    def test_goal_probability_absent_without_goal(self):
        summary = run_monte_carlo(100_000, 0.05, 0.0, 5, num_simulations=100)
        assert summary.probabilities['goal'] is None


class TestRandomPaths:
    """Test seeded stochastic runs"""

    def test_seed_reproducible(self):
        first = run_monte_carlo(1_000_000, 0.07, 0.15, 30, num_simulations=2_000, random_seed=42)
        second = run_monte_carlo(1_000_000, 0.07, 0.15, 30, num_simulations=2_000, random_seed=42)
        assert np.array_equal(first.terminal_values, second.terminal_values)
        assert first.success_rate == second.success_rate

    def test_worker_count_does_not_change_results(self):
        params = dict(initial_value=1_000_000, expected_return=0.06, volatility=0.18, years=25,
                      annual_withdrawal=50_000, num_simulations=1_000, random_seed=123)
        single = run_monte_carlo(config=EngineConfig(mc_chunk_size=100, mc_max_workers=1), **params)
        many = run_monte_carlo(config=EngineConfig(mc_chunk_size=100, mc_max_workers=8), **params)
        assert np.array_equal(single.terminal_values, many.terminal_values)
        assert single.median_final_value == many.median_final_value

    def test_percentiles_ordered(self):
        summary = run_monte_carlo(1_000_000, 0.07, 0.2, 30, annual_withdrawal=40_000,
                                  num_simulations=5_000, random_seed=1)
        assert summary.percentile5 <= summary.percentile10 <= summary.median_final_value
        assert summary.median_final_value <= summary.percentile90 <= summary.percentile95
        assert 0 <= summary.success_rate <= 100
        assert not summary.is_partial

    def test_success_rate_matches_depletion(self):
        summary = run_monte_carlo(500_000, 0.04, 0.2, 30, annual_withdrawal=40_000,
                                  num_simulations=1_000, random_seed=5)
        assert abs(summary.success_rate / 100 + summary.probabilities['depleted'] - 1) < 1e-12

    def test_sample_paths(self):
        summary = run_monte_carlo(1_000_000, 0.07, 0.15, 20, num_simulations=500, random_seed=3,
                                  include_sample_paths=True)
        assert set(summary.sample_paths) == {'p5', 'p10', 'p50', 'p90', 'p95'}
        assert all(len(path) == 21 for path in summary.sample_paths.values())
        assert summary.sample_paths['p50'][-1] == summary.median_final_value
        assert summary.sample_paths['p5'][0] == 1_000_000

    def test_no_sample_paths_by_default(self):
        summary = run_monte_carlo(1_000_000, 0.07, 0.15, 20, num_simulations=500, random_seed=3)
        assert summary.sample_paths is None
        assert summary.wealth_paths is None


class TestDeadlineAndFailures:
    """Test partial results and fatal errors"""

    def test_deadline_returns_partial_summary(self, monkeypatch):
        real_chunk = simulation.simulate_chunk
        lock = threading.Lock()
        calls = []
        late_results = []
        late_finished = threading.Event()

        def slow_after_first(params, seed, num_paths, keep_paths=False, stop=None):
            with lock:
                calls.append(num_paths)
                first = len(calls) == 1
            if first:
                return real_chunk(params, seed, num_paths, keep_paths, stop)
            # Still running at the deadline; resumes once the engine signals stop
            stop.wait(5)
            result = real_chunk(params, seed, num_paths, keep_paths, stop)
            late_results.append(result)
            late_finished.set()
            return result

        monkeypatch.setattr(simulation, 'simulate_chunk', slow_after_first)
        engine = MonteCarloEngine(EngineConfig(mc_chunk_size=100, mc_max_workers=2))
        summary = engine.run(MonteCarloParams(1_000_000, 0.07, 0.15, 10, num_simulations=200,
                                              random_seed=1, deadline_seconds=1.0))

        assert summary.is_partial
        assert summary.num_simulations == 100
        assert summary.requested_simulations == 200
        assert late_finished.wait(5)
        assert late_results == [None]

    def test_no_completed_chunk_raises(self, monkeypatch):
        release = threading.Event()

        def never_finishes(params, seed, num_paths, keep_paths=False, stop=None):
            release.wait(5)
            raise RuntimeError("released")

        monkeypatch.setattr(simulation, 'simulate_chunk', never_finishes)
        try:
            with pytest.raises(SimulationError, match="No simulation chunk completed"):
                run_monte_carlo(1_000_000, 0.07, 0.15, 10, num_simulations=100, deadline_seconds=0.05)
        finally:
            release.set()

    def test_chunk_failure_reports_path_index(self, monkeypatch):
        def broken(params, seed, num_paths, keep_paths=False, stop=None):
            raise FloatingPointError("overflow")

        monkeypatch.setattr(simulation, 'simulate_chunk', broken)
        with pytest.raises(SimulationError) as excinfo:
            run_monte_carlo(1_000_000, 0.07, 0.15, 10, num_simulations=100)
        assert excinfo.value.path_index == 0
        assert isinstance(excinfo.value.__cause__, FloatingPointError)


class TestSummaryOutput:
    """Test summary serialisation and helpers"""

    def test_to_dict_keys(self):
        summary = run_monte_carlo(1_000_000, 0.08, 0.0, 10, num_simulations=100)
        data = summary.to_dict()
        for key in ('successRate', 'medianFinalValue', 'percentile5', 'percentile95',
                    'executionTimeMs', 'samplePaths', 'isPartial'):
            assert key in data
        assert data['executionTimeMs'] >= 0
        assert 'terminal_values' not in data

    def test_sorted_percentile_indexing(self):
        values = np.arange(10, dtype=float)
        assert sorted_percentile(values, 0.05) == 0
        assert sorted_percentile(values, 0.50) == 5
        assert sorted_percentile(values, 0.95) == 9
        assert sorted_percentile(values, 1.0) == 9

    def test_calculate_percentiles(self):
        wealth_paths = np.array([
            [100, 110, 120],
            [100, 90, 80],
            [100, 100, 100],
        ], dtype=float)
        bands = calculate_percentiles(wealth_paths)
        assert np.allclose(bands['p50'], [100, 100, 100])
        assert bands['p10'][2] < bands['p90'][2]


class TestParamsFromScenario:
    """Test deriving parameters from a scenario bundle"""

    def test_withdrawal_is_uncovered_expenses(self):
        scenario = Scenario(
            scenario_id='mc',
            accounts=[Account('taxable', 500_000), Account('ira_traditional', 300_000)],
            income_streams=[IncomeStream(2_000, 'monthly')],
            expense_streams=[ExpenseStream(5_000, 'monthly'), ExpenseStream(6_000, 'annual')],
            assumptions=Assumptions(portfolio_return=0.06, portfolio_volatility=0.12),
        )
        params = params_from_scenario(scenario, years=25, num_simulations=1_000)
        assert params.initial_value == 800_000
        assert params.annual_withdrawal == 42_000
        assert params.expected_return == 0.06
        assert params.volatility == 0.12
        assert params.years == 25
        assert params.withdrawal_inflation == 0.03

    def test_withdrawal_inflation_override(self):
        scenario = Scenario(scenario_id='mc', accounts=[Account('taxable', 100_000)],
                            assumptions=Assumptions(inflation_rate=0.05))
        assert params_from_scenario(scenario).withdrawal_inflation == 0.05
        assert params_from_scenario(scenario, withdrawal_inflation=0.0).withdrawal_inflation == 0.0

    def test_income_above_expenses_means_no_withdrawal(self):
        scenario = Scenario(
            scenario_id='mc',
            accounts=[Account('taxable', 100_000)],
            income_streams=[IncomeStream(90_000, 'annual')],
            expense_streams=[ExpenseStream(3_000, 'monthly')],
        )
        assert params_from_scenario(scenario).annual_withdrawal == 0
