"""
Exception types raised by the cash-flow engine.

Business outcomes such as a withdrawal shortfall, a non-converged solve or a
partial Monte Carlo run are reported on the result objects, not raised.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for engine errors"""


class InvalidInputError(EngineError, ValueError):
    """Input rejected before any calculation starts"""


class ProjectionError(EngineError):
    """A planning graph run aborted; no partial ledger is produced."""

    def __init__(self, message: str, scenario_id: Optional[str] = None,
                 month_index: Optional[int] = None):
        self.scenario_id = scenario_id
        self.month_index = month_index
        context = []
        if scenario_id is not None:
            context.append(f"scenario={scenario_id}")
        if month_index is not None:
            context.append(f"month_index={month_index}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class SimulationError(EngineError):
    """A Monte Carlo run failed."""

    def __init__(self, message: str, path_index: Optional[int] = None):
        self.path_index = path_index
        if path_index is not None:
            message = f"{message} (path_index={path_index})"
        super().__init__(message)
