"""
Monte Carlo portfolio simulation.
Vectorised growth/withdrawal paths run in fixed-size chunks on a thread pool,
each chunk with its own seeded generator so results do not depend on the
number of workers.
"""
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from config_utils import EngineConfig
from errors import InvalidInputError, SimulationError
from models import Scenario

logger = logging.getLogger(__name__)

MAX_SIMULATIONS = 50_000
MIN_SIMULATIONS = 100


@dataclass
class MonteCarloParams:
    """Parameters for one Monte Carlo run"""
    initial_value: float
    expected_return: float          # Arithmetic mean annual return
    volatility: float               # Standard deviation of annual return
    years: int
    annual_contribution: float = 0.0
    annual_withdrawal: float = 0.0
    withdrawal_inflation: float = 0.0  # Withdrawal grows by this each year after the first
    num_simulations: int = 10_000
    random_seed: Optional[int] = None
    goal_value: float = 0.0
    include_sample_paths: bool = False
    deadline_seconds: Optional[float] = None

    def validate(self) -> None:
        if not self.initial_value > 0:
            raise InvalidInputError(f"initial_value must be positive, got {self.initial_value}")
        if self.expected_return < 0:
            raise InvalidInputError(f"expected_return must be non-negative, got {self.expected_return}")
        if not 0 <= self.volatility <= 1:
            raise InvalidInputError(f"volatility must be between 0 and 1, got {self.volatility}")
        if not 1 <= self.years <= 100:
            raise InvalidInputError(f"years must be between 1 and 100, got {self.years}")
        if not MIN_SIMULATIONS <= self.num_simulations <= MAX_SIMULATIONS:
            raise InvalidInputError(
                f"num_simulations must be between {MIN_SIMULATIONS} and {MAX_SIMULATIONS}, "
                f"got {self.num_simulations}")
        if self.annual_contribution < 0 or self.annual_withdrawal < 0:
            raise InvalidInputError("annual_contribution and annual_withdrawal must be non-negative")
        if self.withdrawal_inflation <= -1:
            raise InvalidInputError("withdrawal_inflation must be greater than -100%")
        if self.goal_value < 0:
            raise InvalidInputError("goal_value must be non-negative")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise InvalidInputError("deadline_seconds must be positive")


@dataclass
class SimulationSummary:
    """Aggregate Monte Carlo outcome; success_rate is a percentage (0-100)"""
    num_simulations: int
    requested_simulations: int
    success_rate: float
    median_final_value: float
    mean_final_value: float
    percentile5: float
    percentile10: float
    percentile90: float
    percentile95: float
    first_failure_year: Optional[float]
    earliest_failure_year: Optional[int]
    max_shortfall: float
    probabilities: Dict[str, Optional[float]]
    execution_time_ms: float
    is_partial: bool = False
    sample_paths: Optional[Dict[str, List[float]]] = None
    terminal_values: np.ndarray = field(default=None, repr=False)
    wealth_paths: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Summary with the camelCase keys collaborators expect"""
        return {
            'numSimulations': self.num_simulations,
            'requestedSimulations': self.requested_simulations,
            'successRate': self.success_rate,
            'medianFinalValue': self.median_final_value,
            'meanFinalValue': self.mean_final_value,
            'percentile5': self.percentile5,
            'percentile10': self.percentile10,
            'percentile90': self.percentile90,
            'percentile95': self.percentile95,
            'firstFailureYear': self.first_failure_year,
            'earliestFailureYear': self.earliest_failure_year,
            'maxShortfall': self.max_shortfall,
            'probabilities': dict(self.probabilities),
            'executionTimeMs': self.execution_time_ms,
            'isPartial': self.is_partial,
            'samplePaths': self.sample_paths,
        }


def sorted_percentile(sorted_values: np.ndarray, fraction: float) -> float:
    """Percentile by sorted-array indexing: sorted[min(n - 1, floor(n * p))]"""
    n = len(sorted_values)
    return float(sorted_values[min(n - 1, int(math.floor(n * fraction)))])


def simulate_chunk(params: MonteCarloParams, seed: np.random.SeedSequence, num_paths: int,
                   keep_paths: bool = False,
                   stop: Optional[threading.Event] = None) -> Optional[Dict[str, np.ndarray]]:
    """
    Simulate one block of independent paths.

    Per year: apply the drawn return, add the contribution, subtract the
    inflated withdrawal and clamp at zero. A path that reaches zero is failed
    but keeps compounding from zero.

    Returns None if `stop` is set before the block finishes.
    """
    rng = np.random.default_rng(seed)
    returns = rng.normal(params.expected_return, params.volatility, size=(num_paths, params.years))

    balance = np.full(num_paths, float(params.initial_value))
    depletion_year = np.full(num_paths, -1, dtype=np.int64)
    shortfall = np.zeros(num_paths)
    wealth_paths = None
    if keep_paths:
        wealth_paths = np.empty((num_paths, params.years + 1))
        wealth_paths[:, 0] = balance

    withdrawal = float(params.annual_withdrawal)
    for year in range(params.years):
        if stop is not None and stop.is_set():
            return None
        if year > 0:
            withdrawal *= 1 + params.withdrawal_inflation
        balance = balance * (1 + returns[:, year]) + params.annual_contribution - withdrawal
        shortfall += np.maximum(0.0, -balance)
        np.maximum(balance, 0.0, out=balance)

        newly_depleted = (balance <= 0) & (depletion_year == -1)
        depletion_year[newly_depleted] = year + 1
        if keep_paths:
            wealth_paths[:, year + 1] = balance

    return {
        'terminal': balance,
        'depletion_year': depletion_year,
        'shortfall': shortfall,
        'wealth_paths': wealth_paths,
    }


class MonteCarloEngine:
    """Runs Monte Carlo paths across a thread pool"""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def _chunks(self, num_simulations: int) -> List[tuple]:
        """(first path index, path count) per chunk"""
        size = self.config.mc_chunk_size
        return [(start, min(size, num_simulations - start)) for start in range(0, num_simulations, size)]

    def run(self, params: MonteCarloParams) -> SimulationSummary:
        """
        Run the simulation and aggregate terminal wealth.

        Raises:
            InvalidInputError: parameters outside the accepted ranges
            SimulationError: a chunk failed, or the deadline passed before any chunk finished
        """
        params.validate()
        started = time.perf_counter()

        chunks = self._chunks(params.num_simulations)
        seeds = np.random.SeedSequence(params.random_seed).spawn(len(chunks))
        logger.info(f"Starting {params.num_simulations} simulations over {params.years} years "
                    f"in {len(chunks)} chunks")

        stop = threading.Event()
        executor = ThreadPoolExecutor(max_workers=self.config.mc_max_workers)
        try:
            futures = {
                executor.submit(simulate_chunk, params, seed, count, params.include_sample_paths, stop): index
                for index, ((_, count), seed) in enumerate(zip(chunks, seeds))
            }
            done, _ = wait(futures, timeout=params.deadline_seconds)
        finally:
            # Pending chunks are cancelled, running ones stop at their next year
            stop.set()
            executor.shutdown(wait=False, cancel_futures=True)

        results = {}
        for future in done:
            index = futures[future]
            try:
                results[index] = future.result()
            except Exception as e:
                raise SimulationError(f"Simulation chunk failed: {e}", path_index=chunks[index][0]) from e

        if not results:
            raise SimulationError(f"No simulation chunk completed within {params.deadline_seconds}s")

        is_partial = len(results) < len(chunks)
        if is_partial:
            logger.warning(f"Monte Carlo deadline of {params.deadline_seconds}s reached: "
                           f"{len(results)} of {len(chunks)} chunks completed")

        ordered = [results[index] for index in sorted(results)]
        summary = self._summarise(params, ordered, is_partial)
        summary.execution_time_ms = (time.perf_counter() - started) * 1000

        logger.info(f"Completed {summary.num_simulations} simulations in {summary.execution_time_ms:.0f}ms, "
                    f"success rate {summary.success_rate:.1f}%")
        return summary

    def _summarise(self, params: MonteCarloParams, chunks: List[Dict[str, np.ndarray]],
                   is_partial: bool) -> SimulationSummary:
        terminal = np.concatenate([chunk['terminal'] for chunk in chunks])
        depletion_year = np.concatenate([chunk['depletion_year'] for chunk in chunks])
        shortfall = np.concatenate([chunk['shortfall'] for chunk in chunks])
        wealth_paths = None
        if params.include_sample_paths:
            wealth_paths = np.concatenate([chunk['wealth_paths'] for chunk in chunks])

        n = len(terminal)
        sorted_terminal = np.sort(terminal)
        failed_years = depletion_year[depletion_year > 0]
        success_rate = 100.0 * (n - len(failed_years)) / n

        probabilities = {
            'depleted': len(failed_years) / n,
            'preserved': float(np.mean(terminal > params.initial_value)),
            'doubled': float(np.mean(terminal >= 2 * params.initial_value)),
            'goal': float(np.mean(terminal >= params.goal_value)) if params.goal_value > 0 else None,
        }

        return SimulationSummary(
            num_simulations=n,
            requested_simulations=params.num_simulations,
            success_rate=success_rate,
            median_final_value=sorted_percentile(sorted_terminal, 0.50),
            mean_final_value=float(np.mean(terminal)),
            percentile5=sorted_percentile(sorted_terminal, 0.05),
            percentile10=sorted_percentile(sorted_terminal, 0.10),
            percentile90=sorted_percentile(sorted_terminal, 0.90),
            percentile95=sorted_percentile(sorted_terminal, 0.95),
            first_failure_year=float(np.median(failed_years)) if len(failed_years) else None,
            earliest_failure_year=int(failed_years.min()) if len(failed_years) else None,
            max_shortfall=float(shortfall.max()),
            probabilities=probabilities,
            execution_time_ms=0.0,
            is_partial=is_partial,
            sample_paths=self._sample_paths(terminal, wealth_paths),
            terminal_values=terminal,
            wealth_paths=wealth_paths,
        )

    def _sample_paths(self, terminal: np.ndarray,
                      wealth_paths: Optional[np.ndarray]) -> Optional[Dict[str, List[float]]]:
        """Yearly path of the simulation at each configured terminal-wealth percentile"""
        if wealth_paths is None:
            return None
        order = np.argsort(terminal, kind='stable')
        n = len(terminal)
        return {
            f"p{p}": wealth_paths[order[min(n - 1, int(math.floor(n * p / 100)))]].tolist()
            for p in self.config.mc_sample_path_percentiles
        }


def run_monte_carlo(initial_value: float, expected_return: float, volatility: float, years: int,
                    annual_contribution: float = 0.0, annual_withdrawal: float = 0.0,
                    num_simulations: int = 10_000, config: Optional[EngineConfig] = None,
                    **kwargs) -> SimulationSummary:
    """
    Run a Monte Carlo simulation.

    Args:
        initial_value: Starting portfolio value
        expected_return: Mean annual return
        volatility: Standard deviation of annual return
        years: Years to simulate
        annual_contribution: Added each year after growth
        annual_withdrawal: Removed each year after growth
        num_simulations: Number of paths
        config: Engine configuration (chunk size, workers)
        **kwargs: Other MonteCarloParams fields (withdrawal_inflation, random_seed, goal_value, ...)

    Returns:
        SimulationSummary
    """
    params = MonteCarloParams(
        initial_value=initial_value,
        expected_return=expected_return,
        volatility=volatility,
        years=years,
        annual_contribution=annual_contribution,
        annual_withdrawal=annual_withdrawal,
        num_simulations=num_simulations,
        **kwargs,
    )
    return MonteCarloEngine(config).run(params)


def _annual_amount(amount: float, frequency: str) -> float:
    return amount if frequency == 'annual' else amount * 12


def params_from_scenario(scenario: Scenario, years: int = 30, num_simulations: int = 10_000,
                         **kwargs) -> MonteCarloParams:
    """
    Monte Carlo parameters for a scenario.

    Starting value is the sum of all accounts; the annual withdrawal is the
    expense total not covered by income streams, grown each year at the
    scenario's inflation rate.
    """
    scenario.validate()
    kwargs.setdefault('withdrawal_inflation', scenario.assumptions.inflation_rate)
    annual_income = sum(_annual_amount(s.amount, s.frequency) for s in scenario.income_streams)
    annual_expenses = sum(_annual_amount(s.amount, s.frequency) for s in scenario.expense_streams)

    return MonteCarloParams(
        initial_value=sum(account.current_value for account in scenario.accounts),
        expected_return=scenario.assumptions.portfolio_return,
        volatility=scenario.assumptions.portfolio_volatility,
        years=years,
        annual_withdrawal=max(0.0, annual_expenses - annual_income),
        num_simulations=num_simulations,
        **kwargs,
    )


def calculate_percentiles(wealth_paths: np.ndarray) -> Dict[str, np.ndarray]:
    """Calculate wealth percentile bands over time"""
    p10 = np.percentile(wealth_paths, 10, axis=0)
    p50 = np.percentile(wealth_paths, 50, axis=0)
    p90 = np.percentile(wealth_paths, 90, axis=0)

    return {
        'p10': p10,
        'p50': p50,
        'p90': p90
    }
