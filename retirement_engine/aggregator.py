"""Run many scenarios and summarize them."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .params import SimulationParams, validate_params
from .scenarios import generate_path, iteration_seeds
from .sequencer import ScenarioOutcome, YearlyCashFlow, run_scenario

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 1000
DEFAULT_BATCHES = 8
ENDING_PERCENTILES = (10, 25, 50, 75, 90)
BAND_PERCENTILES = (5, 25, 50, 75, 95)


def percentile(values: Iterable[float], p: float) -> float:
    """
    Percentile with linear interpolation between order statistics.

    For ``k`` sorted values the rank is ``p / 100 * (k - 1)``; the result
    interpolates between the values at the floor and ceiling of that rank.
    """

    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("percentile of an empty sequence")
    if not 0 <= p <= 100:
        raise ValueError("percentile must be between 0 and 100")
    return float(np.percentile(arr, p, method="linear"))


def batch_sizes(iterations: int, batches: int) -> List[int]:
    """Split ``iterations`` into ``batches`` contiguous, near-equal partitions."""

    base, extra = divmod(iterations, batches)
    return [base + (1 if b < extra else 0) for b in range(batches)]


def simulate_batch(params: SimulationParams, batch: int, count: int) -> List[ScenarioOutcome]:
    """Run the ``count`` iterations of one batch; seeds depend only on (seed, batch)."""

    return [run_scenario(params, generate_path(params, seq)) for seq in iteration_seeds(params.seed, batch, count)]


@dataclass(frozen=True)
class AgeBand:
    age: int
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float


@dataclass(frozen=True)
class AggregateResult:
    iterations: int
    successes: int
    success_probability: float
    ending_percentiles: Dict[int, float]
    median_ending_balance: float
    mean_ending_balance: float
    bands: Tuple[AgeBand, ...]
    median_trace: Tuple[YearlyCashFlow, ...]
    average_depletion_age: Optional[float] = None
    median_lifetime_taxes: float = 0.0
    seed: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ending_percentiles"] = {f"p{p}": v for p, v in self.ending_percentiles.items()}
        return data


def _balance_matrix(outcomes: Sequence[ScenarioOutcome], n_years: int) -> np.ndarray:
    # Failed scenarios carry their last known balance forward, so every age
    # band covers the whole population rather than only the survivors.
    matrix = np.empty((len(outcomes), n_years))
    for i, outcome in enumerate(outcomes):
        balances = outcome.balances
        run = len(balances)
        matrix[i, :run] = balances
        matrix[i, run:] = balances[-1] if run else outcome.ending_balance
    return matrix


def aggregate(outcomes: Sequence[ScenarioOutcome], params: SimulationParams) -> AggregateResult:
    """Summarize scenario outcomes into success probability and percentile bands."""

    if not outcomes:
        raise ValueError("cannot aggregate zero scenarios")
    total = len(outcomes)
    ending = np.array([o.ending_balance for o in outcomes])
    successes = sum(1 for o in outcomes if o.success)

    n_years = params.n_years
    matrix = _balance_matrix(outcomes, n_years)
    bands = []
    if n_years:
        levels = np.percentile(matrix, BAND_PERCENTILES, axis=0, method="linear")
        for t in range(n_years):
            bands.append(AgeBand(params.current_age + t, *(float(v) for v in levels[:, t])))

    # Lower median by ending balance
    order = np.argsort(ending, kind="stable")
    median_outcome = outcomes[int(order[(total - 1) // 2])]

    depletion_ages = [o.depletion_age for o in outcomes if o.depletion_age is not None]
    return AggregateResult(
        iterations=total,
        successes=successes,
        success_probability=successes / total,
        ending_percentiles={p: percentile(ending, p) for p in ENDING_PERCENTILES},
        median_ending_balance=percentile(ending, 50),
        mean_ending_balance=float(ending.mean()),
        bands=tuple(bands),
        median_trace=median_outcome.cash_flows,
        average_depletion_age=float(np.mean(depletion_ages)) if depletion_ages else None,
        median_lifetime_taxes=percentile([o.lifetime_taxes for o in outcomes], 50),
        seed=params.seed,
    )


def run_simulation(
    params: SimulationParams,
    iterations: int = DEFAULT_ITERATIONS,
    batches: int = DEFAULT_BATCHES,
) -> AggregateResult:
    """
    Run every batch serially in the calling thread.

    Produces exactly the result a pool run with the same batch count gives.
    """

    validate_params(params)
    if iterations <= 0:
        raise ValueError("iterations must be positive")
    start = time.perf_counter()
    outcomes: List[ScenarioOutcome] = []
    for batch, count in enumerate(batch_sizes(iterations, batches)):
        outcomes.extend(simulate_batch(params, batch, count))
    result = aggregate(outcomes, params)
    logger.info(
        "Simulated %d iterations in %.2fs: success %.1f%%",
        iterations, time.perf_counter() - start, result.success_probability * 100,
    )
    return result
