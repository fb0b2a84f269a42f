"""Stochastic market paths: one per simulated life."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from numba import njit

from .params import SimulationParams
from .settings import MIN_ASSET_RETURN, MIN_INFLATION

# Independent random streams drawn for every path
RETURNS_STREAM = 0
HEALTHCARE_STREAM = 1
LTC_TRIGGER_STREAM = 2
LTC_DURATION_STREAM = 3
N_STREAMS = 4


@njit(cache=True, nogil=True)
def cholesky_factor(corr: np.ndarray) -> np.ndarray:
    """
    Lower-triangular factor of a correlation matrix.

    Manual implementation for Numba compatibility; diagonal terms that are not
    positive (matrix not PSD) are replaced with a small positive value.
    """
    n = corr.shape[0]
    L = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1):
            s = 0.0
            for k in range(j):
                s += L[i, k] * L[j, k]
            if i == j:
                val = corr[i, i] - s
                if val > 0:
                    L[i, j] = np.sqrt(val)
                else:
                    L[i, j] = 0.001
            else:
                if L[j, j] > 1e-10:
                    L[i, j] = (corr[i, j] - s) / L[j, j]
                else:
                    L[i, j] = 0.0
    return L


@njit(cache=True, nogil=True)
def correlate_draws(
    L: np.ndarray,
    uncorrelated: np.ndarray,  # (n_years, n_assets) standard normals
    means: np.ndarray,
    stds: np.ndarray,
    min_return: float,
    min_inflation: float,
) -> np.ndarray:
    """
    Scale standard normals into correlated annual draws.

    Columns are [stocks, bonds, cash, inflation]; asset columns are floored at
    ``min_return`` and the inflation column at ``min_inflation``.
    """
    n_years, n_assets = uncorrelated.shape
    out = np.empty((n_years, n_assets))
    for t in range(n_years):
        for i in range(n_assets):
            z = 0.0
            for k in range(i + 1):
                z += L[i, k] * uncorrelated[t, k]
            val = means[i] + stds[i] * z
            floor = min_inflation if i == n_assets - 1 else min_return
            if val < floor:
                val = floor
            out[t, i] = val
    return out


@dataclass(frozen=True)
class ScenarioPath:
    """
    One simulated life: annual market draws indexed by year offset.

    All arrays are read-only.  ``owner_returns`` has one row per owner plan of
    the parameters the path was generated for, in the same order.
    """

    start_age: int
    stock_returns: np.ndarray
    bond_returns: np.ndarray
    cash_returns: np.ndarray
    inflation: np.ndarray
    healthcare_inflation: np.ndarray
    owner_returns: np.ndarray
    ltc_trigger: np.ndarray  # uniform draws, one per year
    ltc_duration: np.ndarray  # standard normal draws, one per year

    @property
    def n_years(self) -> int:
        return len(self.inflation)

    def fingerprint(self) -> Tuple[bytes, ...]:
        return tuple(
            arr.tobytes()
            for arr in (
                self.stock_returns, self.bond_returns, self.cash_returns, self.inflation,
                self.healthcare_inflation, self.owner_returns, self.ltc_trigger, self.ltc_duration,
            )
        )


def iteration_seeds(seed: int, batch: int, count: int) -> List[np.random.SeedSequence]:
    """Seed sequences for the ``count`` iterations of one batch."""

    return np.random.SeedSequence([seed, batch]).spawn(count)


def _stream(seed_seq: np.random.SeedSequence, index: int) -> np.random.Generator:
    # Same child spawn() would hand out, without advancing the parent
    child = np.random.SeedSequence(seed_seq.entropy, spawn_key=tuple(seed_seq.spawn_key) + (index,))
    return np.random.default_rng(child)


def allocation_weights(params: SimulationParams) -> np.ndarray:
    """(n_owners, n_years, 3) stock/bond/cash weights by owner and year."""

    n_years = params.n_years
    weights = np.empty((len(params.owners), n_years, 3))
    for o, plan in enumerate(params.owners):
        for t in range(n_years):
            weights[o, t] = plan.allocation_at(params.current_age + t).weights()
    return weights


def generate_path(params: SimulationParams, seed_seq: np.random.SeedSequence) -> ScenarioPath:
    """
    Draw one market path for ``params``.

    Every stream draws year by year, so a longer horizon extends the path
    without changing the years it shares with a shorter one.
    """

    n_years = params.n_years
    market = params.market

    z = _stream(seed_seq, RETURNS_STREAM).standard_normal((n_years, 4))
    L = cholesky_factor(np.asarray(market.correlation, dtype=np.float64))
    draws = correlate_draws(
        L, z,
        np.asarray(market.means(), dtype=np.float64),
        np.asarray(market.stds(), dtype=np.float64),
        MIN_ASSET_RETURN, MIN_INFLATION,
    )
    for shock in params.market_shocks:
        if 0 <= shock.year_offset < n_years:
            draws[shock.year_offset, 0] = shock.equity_return
            if shock.bond_return is not None:
                draws[shock.year_offset, 1] = shock.bond_return

    healthcare = _stream(seed_seq, HEALTHCARE_STREAM).normal(
        market.healthcare_inflation_mean, market.healthcare_inflation_std, n_years
    )
    np.maximum(healthcare, MIN_INFLATION, out=healthcare)
    ltc_trigger = _stream(seed_seq, LTC_TRIGGER_STREAM).random(n_years)
    ltc_duration = _stream(seed_seq, LTC_DURATION_STREAM).standard_normal(n_years)

    owner_returns = np.einsum("oty,ty->ot", allocation_weights(params), draws[:, :3])

    arrays = [
        np.ascontiguousarray(draws[:, 0]),
        np.ascontiguousarray(draws[:, 1]),
        np.ascontiguousarray(draws[:, 2]),
        np.ascontiguousarray(draws[:, 3]),
        healthcare,
        np.ascontiguousarray(owner_returns),
        ltc_trigger,
        ltc_duration,
    ]
    for arr in arrays:
        arr.setflags(write=False)
    return ScenarioPath(params.current_age, *arrays)
