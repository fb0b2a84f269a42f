import dataclasses

import numpy as np
import pytest

from retirement_engine.params import (
    Allocation,
    AssetBuckets,
    Expenses,
    GlidePoint,
    MarketShock,
    OwnerPlan,
    SimulationParams,
)
from retirement_engine.scenarios import cholesky_factor, generate_path, iteration_seeds
from retirement_engine.settings import DEFAULT_CORRELATION, MIN_INFLATION


def _make_params(**overrides) -> SimulationParams:
    base = dict(
        current_age=60,
        retirement_age=65,
        life_expectancy=90,
        owners=(
            OwnerPlan("user", AssetBuckets(tax_deferred=500_000), Allocation(0.6, 0.35, 0.05)),
            OwnerPlan("joint", AssetBuckets(taxable=100_000), Allocation(1.0, 0.0, 0.0)),
        ),
        expenses=Expenses(60_000),
        effective_tax_rate=0.15,
        seed=42,
    )
    base.update(overrides)
    return SimulationParams(**base)


def _seed(seed=42, batch=0, index=0):
    return iteration_seeds(seed, batch, index + 1)[index]


def test_cholesky_factor_reproduces_correlation():
    corr = np.array(DEFAULT_CORRELATION)
    L = cholesky_factor(corr)
    assert np.allclose(L @ L.T, corr)
    assert np.allclose(L, np.tril(L))


def test_same_seed_same_path():
    params = _make_params()
    first = generate_path(params, _seed())
    second = generate_path(params, _seed())
    assert first.fingerprint() == second.fingerprint()


def test_different_iterations_differ():
    params = _make_params()
    assert not np.array_equal(
        generate_path(params, _seed(index=0)).stock_returns,
        generate_path(params, _seed(index=1)).stock_returns,
    )


def test_longer_horizon_keeps_prefix():
    short = generate_path(_make_params(), _seed())
    long = generate_path(_make_params(life_expectancy=96), _seed())
    n = short.n_years
    assert long.n_years == n + 6
    for name in ("stock_returns", "bond_returns", "inflation", "healthcare_inflation", "ltc_trigger"):
        assert np.array_equal(getattr(long, name)[:n], getattr(short, name))
    assert np.array_equal(long.owner_returns[:, :n], short.owner_returns)


def test_paths_are_read_only():
    path = generate_path(_make_params(), _seed())
    with pytest.raises(ValueError):
        path.inflation[0] = 0.5
    with pytest.raises(ValueError):
        path.owner_returns[0, 0] = 0.5


def test_floors_and_shapes():
    params = _make_params()
    path = generate_path(params, _seed())
    assert path.n_years == params.n_years == 30
    assert path.owner_returns.shape == (2, 30)
    assert path.inflation.min() >= MIN_INFLATION
    assert path.healthcare_inflation.min() >= MIN_INFLATION
    assert path.stock_returns.min() >= -0.95


def test_owner_returns_follow_allocation():
    path = generate_path(_make_params(), _seed())
    expected = 0.6 * path.stock_returns + 0.35 * path.bond_returns + 0.05 * path.cash_returns
    assert np.allclose(path.owner_returns[0], expected)
    assert np.allclose(path.owner_returns[1], path.stock_returns)


def test_glide_path_changes_allocation_by_age():
    glide = (GlidePoint(70, Allocation(0.0, 1.0, 0.0)),)
    owners = (OwnerPlan("user", AssetBuckets(taxable=1.0), Allocation(1.0, 0.0, 0.0), glide),)
    path = generate_path(_make_params(owners=owners), _seed())
    assert np.allclose(path.owner_returns[0, :10], path.stock_returns[:10])
    assert np.allclose(path.owner_returns[0, 10:], path.bond_returns[10:])


def test_market_shock_overrides_draw():
    params = _make_params()
    shocked = dataclasses.replace(params, market_shocks=(MarketShock(5, -0.3, -0.1),))
    base = generate_path(params, _seed())
    path = generate_path(shocked, _seed())
    assert path.stock_returns[5] == -0.3
    assert path.bond_returns[5] == -0.1
    assert np.array_equal(path.inflation, base.inflation)
    assert np.array_equal(np.delete(path.stock_returns, 5), np.delete(base.stock_returns, 5))
