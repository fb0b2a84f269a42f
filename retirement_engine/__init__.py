"""Retirement Monte Carlo simulation and withdrawal-sequencing engine."""

from .aggregator import AggregateResult, run_simulation
from .errors import (
    CacheInconsistencyError,
    ComputeTimeoutError,
    EngineError,
    IncompleteInputError,
    InvalidParameterError,
)
from .params import SimulationParams, build_params
from .profile import HouseholdProfile, OptimizationOverlay
from .service import SimulationService

__version__ = "0.1.0"
