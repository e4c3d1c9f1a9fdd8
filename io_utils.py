"""
IO utilities for loading scenario bundles and exporting engine results.
Handles JSON scenario input and CSV/JSON exports of ledgers and simulation summaries.
"""
import json
import re
from dataclasses import asdict, fields
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from errors import InvalidInputError
from models import Account, Assumptions, ExpenseStream, Goal, IncomeStream, Person, Scenario
from planning_graph import PlanningGraph
from simulation import SimulationSummary
from withdrawal import WithdrawalPlan

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')

# Keys collaborators use for the same field
_ALIASES = {
    'id': 'account_id',
    'type': 'account_type',
    'balance': 'current_value',
    'dob': 'date_of_birth',
}


def _snake(key: str) -> str:
    snake = _CAMEL_BOUNDARY.sub('_', key).lower()
    return _ALIASES.get(snake, snake)


def _normalise_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept camelCase or snake_case keys"""
    if not isinstance(data, dict):
        raise InvalidInputError(f"Expected an object, got {type(data).__name__}")
    return {_snake(key): value for key, value in data.items()}


def _parse_date(value: Any, label: str) -> Optional[date]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidInputError(f"{label} is not an ISO date: {value!r}") from None


def _parse_amount(value: Any, label: str, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        raise InvalidInputError(f"{label} is not a number: {value!r}") from None


def _build(cls, data: Dict[str, Any], dates=(), amounts=(), label: str = ''):
    """Construct a record from normalised keys, ignoring keys it does not know"""
    known = {f.name for f in fields(cls)}
    values = {key: value for key, value in data.items() if key in known}
    for name in dates:
        if name in values:
            values[name] = _parse_date(values[name], f"{label} {name}")
    for name in amounts:
        if name in values:
            values[name] = _parse_amount(values[name], f"{label} {name}")
    try:
        return cls(**values)
    except TypeError as e:
        raise InvalidInputError(f"Invalid {label or cls.__name__}: {e}") from e


def _goal(data: Dict[str, Any]) -> Goal:
    known = {'name', 'target_amount', 'target_date', 'metadata'}
    goal = _build(Goal, data, dates=('target_date',), amounts=('target_amount',), label='Goal')
    goal.metadata.update({key: value for key, value in data.items() if key not in known})
    return goal


def scenario_from_dict(data: Dict[str, Any]) -> Scenario:
    """
    Build a Scenario from a collaborator's bundle.

    Args:
        data: Dictionary with people, accounts, income/expense streams, goals and
            assumptions; keys may be camelCase or snake_case, dates ISO strings

    Returns:
        Validated Scenario
    """
    bundle = _normalise_keys(data)
    scenario_id = bundle.get('scenario_id')
    if not scenario_id:
        raise InvalidInputError("Scenario bundle is missing scenario_id")

    people = [_build(Person, _normalise_keys(p), dates=('date_of_birth',), label='Person')
              for p in bundle.get('people') or []]
    accounts = [_build(Account, _normalise_keys(a), amounts=('current_value',), label='Account')
                for a in bundle.get('accounts') or []]
    income_streams = [
        _build(IncomeStream, _normalise_keys(s), dates=('start_date', 'end_date'),
               amounts=('amount',), label='Income stream')
        for s in bundle.get('income_streams') or []
    ]
    expense_streams = [
        _build(ExpenseStream, _normalise_keys(s), dates=('start_date', 'end_date'),
               amounts=('amount',), label='Expense stream')
        for s in bundle.get('expense_streams') or []
    ]
    goals = [_goal(_normalise_keys(g)) for g in bundle.get('goals') or []]
    assumptions = _build(
        Assumptions,
        _normalise_keys(bundle.get('assumptions') or {}),
        amounts=('inflation_rate', 'portfolio_return', 'portfolio_volatility',
                 'roth_conversion_budget', 'charitable_giving', 'tax_loss_harvesting'),
        label='Assumptions',
    )

    scenario = Scenario(
        scenario_id=str(scenario_id),
        people=people,
        accounts=accounts,
        income_streams=income_streams,
        expense_streams=expense_streams,
        goals=goals,
        assumptions=assumptions,
    )
    scenario.validate()
    return scenario


def load_scenario_json(filepath: str) -> Scenario:
    """
    Load a scenario bundle from a JSON file.

    Args:
        filepath: Path to JSON file

    Returns:
        Scenario object
    """
    with open(filepath, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Invalid JSON in {filepath}: {e}") from e

    return scenario_from_dict(data)


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return str(value)


def scenario_to_dict(scenario: Scenario) -> Dict[str, Any]:
    """Scenario as snake_case JSON-ready dictionary with ISO dates"""
    return json.loads(json.dumps(asdict(scenario), default=_json_default))


def save_scenario_json(scenario: Scenario, filepath: str) -> None:
    with open(filepath, 'w') as f:
        json.dump(scenario_to_dict(scenario), f, indent=2)


def withdrawal_plan_to_dict(plan: WithdrawalPlan) -> Dict[str, Any]:
    """Withdrawal plan with its tax result, JSON-ready"""
    result = asdict(plan)
    result['is_approximate'] = plan.is_approximate
    return json.loads(json.dumps(result, default=_json_default))


def graph_to_dataframe(graph: PlanningGraph) -> pd.DataFrame:
    return graph.to_dataframe()


def export_planning_graph_csv(graph: PlanningGraph) -> str:
    """
    Export the monthly ledger to CSV string.

    Args:
        graph: Planning graph

    Returns:
        CSV string, one row per month
    """
    return graph.to_dataframe().to_csv(index=False)


def export_annual_summary_csv(graph: PlanningGraph) -> str:
    """Calendar-year roll-up of the ledger as CSV string"""
    return graph.annual_summary().to_csv(index=True, index_label='year')


def summary_to_json(summary: SimulationSummary) -> str:
    """
    Export a Monte Carlo summary as JSON string.

    Args:
        summary: Simulation summary

    Returns:
        JSON string with camelCase keys
    """
    return json.dumps(summary.to_dict(), indent=2, default=_json_default)


def export_terminal_wealth_csv(terminal_wealth: np.ndarray) -> str:
    """
    Export terminal wealth results to CSV string.

    Args:
        terminal_wealth: Array of terminal wealth values

    Returns:
        CSV string
    """
    df = pd.DataFrame({
        'simulation': range(1, len(terminal_wealth) + 1),
        'terminal_wealth': terminal_wealth
    })

    return df.to_csv(index=False)


def export_percentile_bands_csv(years: np.ndarray, percentiles: Dict[str, np.ndarray]) -> str:
    """
    Export wealth percentile bands to CSV string.

    Args:
        years: Array of years
        percentiles: Dictionary with 'p10', 'p50', 'p90' arrays

    Returns:
        CSV string
    """
    df = pd.DataFrame({
        'year': years,
        'p10_wealth': percentiles['p10'],
        'p50_wealth': percentiles['p50'],
        'p90_wealth': percentiles['p90']
    })

    return df.to_csv(index=False)


def format_currency(value: float, precision: int = 0) -> str:
    """
    Format currency values for display.

    Args:
        value: Numeric value to format
        precision: Number of decimal places

    Returns:
        Formatted string such as $1.2M or $350K
    """
    sign = '-' if value < 0 else ''
    value = abs(value)
    if value >= 1_000_000:
        return f"{sign}${value/1_000_000:.{precision}f}M"
    elif value >= 1_000:
        return f"{sign}${value/1_000:.{precision}f}K"
    return f"{sign}${value:.{precision}f}"


def records_to_dataframe(records: List[Dict[str, Any]]) -> pd.DataFrame:
    """Tabulate year-by-year withdrawal results"""
    rows = []
    for record in records:
        plan = record['plan']
        rows.append({
            'year': record['year'],
            'age1': record['age1'],
            'age2': record['age2'],
            'gross_withdrawals': plan.summary.gross_withdrawals,
            'total_tax': plan.summary.total_tax,
            'net_spending': plan.summary.net_spending,
            'shortfall': plan.summary.shortfall,
            'ending_balance': sum(record['balances'].values()),
        })
    return pd.DataFrame(rows)
