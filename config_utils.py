"""
Configuration utilities for the cash-flow engine.
Default engine settings, JSON config persistence and logging setup.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Tuple

from errors import InvalidInputError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'engine_config.json'
LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


@dataclass
class EngineConfig:
    """Engine-wide policy settings"""
    tax_year: int = 2024

    # Annual settlement (December)
    settlement_month: int = 12

    # Withdrawal fixed-point solve
    convergence_tolerance: float = 1.0
    max_iterations: int = 50
    capital_gains_ratio: float = 0.30  # Share of a taxable withdrawal realised as LTCG

    # Assumed retirement-era marginal rate when valuing a Roth conversion
    roth_future_marginal_rate: float = 0.24

    # Projection horizon
    default_horizon_years: int = 30
    projection_max_age: int = 100

    # Scenario defaults
    default_portfolio_return: float = 0.07
    default_portfolio_volatility: float = 0.15
    default_inflation_rate: float = 0.03
    default_state: str = 'AZ'
    default_filing_status: str = 'married_joint'

    # Monte Carlo
    mc_chunk_size: int = 1_000
    mc_max_workers: Optional[int] = None
    mc_sample_path_percentiles: Tuple[int, ...] = (5, 10, 50, 90, 95)

    def __post_init__(self):
        if not 1 <= self.settlement_month <= 12:
            raise InvalidInputError(f"settlement_month must be 1-12, got {self.settlement_month}")
        if self.convergence_tolerance <= 0:
            raise InvalidInputError("convergence_tolerance must be positive")
        if self.max_iterations < 1:
            raise InvalidInputError("max_iterations must be at least 1")
        if not 0 <= self.capital_gains_ratio <= 1:
            raise InvalidInputError("capital_gains_ratio must be between 0 and 1")
        if not 0 <= self.roth_future_marginal_rate <= 1:
            raise InvalidInputError("roth_future_marginal_rate must be between 0 and 1")
        if self.mc_chunk_size < 1:
            raise InvalidInputError("mc_chunk_size must be at least 1")
        self.mc_sample_path_percentiles = tuple(self.mc_sample_path_percentiles)


def config_from_dict(data: Dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig, ignoring keys it does not know"""
    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown engine config keys: {unknown}")
    return EngineConfig(**{k: v for k, v in data.items() if k in known})


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration from a JSON file, falling back to defaults"""
    path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        logger.debug(f"No engine config at {path}, using defaults")
        return EngineConfig()

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Malformed engine config {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInputError(f"Engine config {path} must contain a JSON object")

    logger.info(f"Loaded engine config from {path} with {len(data)} keys")
    return config_from_dict(data)


def save_engine_config(config: EngineConfig, path: Optional[str] = None) -> None:
    """Save engine configuration to a JSON file"""
    path = path or DEFAULT_CONFIG_PATH
    data = asdict(config)
    data['mc_sample_path_percentiles'] = list(config.mc_sample_path_percentiles)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)
    logger.info(f"Saved engine config to {path}")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for scripts and demos"""
    logging.basicConfig(level=level, format=LOG_FORMAT)
