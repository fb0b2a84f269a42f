import numpy as np
import pytest

from retirement_engine.aggregator import aggregate, batch_sizes, percentile, run_simulation
from retirement_engine.errors import InvalidParameterError
from retirement_engine.params import (
    Allocation,
    AssetBuckets,
    Expenses,
    IncomeStream,
    OwnerPlan,
    SimulationParams,
)
from retirement_engine.sequencer import COL_AGE, COL_BALANCE, COL_TAXES, TRACE_COLUMNS, ScenarioOutcome


def _make_params(**overrides) -> SimulationParams:
    base = dict(
        current_age=60,
        retirement_age=65,
        life_expectancy=90,
        owners=(OwnerPlan("user", AssetBuckets(tax_deferred=800_000), Allocation(0.6, 0.35, 0.05)),),
        expenses=Expenses(85_000),
        effective_tax_rate=0.15,
        income=(IncomeStream("user", "pension", 40_000, 65),),
        has_ltc_insurance=True,
        seed=1234,
    )
    base.update(overrides)
    return SimulationParams(**base)


def _outcome(balances, success=True, depletion_age=None, taxes=0.0, start_age=60):
    trace = np.zeros((len(balances), TRACE_COLUMNS))
    trace[:, COL_AGE] = np.arange(start_age, start_age + len(balances))
    trace[:, COL_BALANCE] = balances
    trace[:, COL_TAXES] = taxes
    return ScenarioOutcome(
        success=success,
        ending_balance=float(balances[-1]),
        depletion_age=depletion_age,
        trace=trace,
    )


@pytest.mark.parametrize(
    "values, p, expected",
    [
        ([1, 2, 3, 4], 50, 2.5),
        ([4, 1, 3, 2], 0, 1.0),
        ([4, 1, 3, 2], 100, 4.0),
        ([0, 10], 25, 2.5),
        ([7], 90, 7.0),
    ],
)
def test_percentile_interpolates(values, p, expected):
    assert percentile(values, p) == pytest.approx(expected)


@pytest.mark.parametrize("values, p", [([], 50), ([1, 2], -1), ([1, 2], 101)])
def test_percentile_rejects(values, p):
    with pytest.raises(ValueError):
        percentile(values, p)


def test_batch_sizes_partition_iterations():
    assert batch_sizes(10, 4) == [3, 3, 2, 2]
    assert batch_sizes(3, 8) == [1, 1, 1, 0, 0, 0, 0, 0]
    assert sum(batch_sizes(1000, 8)) == 1000


def test_failed_scenarios_carry_last_balance():
    params = _make_params(current_age=60, life_expectancy=63)
    outcomes = [
        _outcome([100.0, 200.0, 300.0]),
        _outcome([100.0, 0.0], success=False, depletion_age=61),
    ]
    result = aggregate(outcomes, params)
    assert [band.age for band in result.bands] == [60, 61, 62]
    assert result.bands[2].p50 == pytest.approx(150.0)
    assert result.bands[2].p5 == pytest.approx(15.0)
    assert result.success_probability == 0.5
    assert result.average_depletion_age == 61.0
    # Lower median of two outcomes is the poorer one
    assert len(result.median_trace) == 2


def test_aggregate_summary_statistics():
    params = _make_params(current_age=60, life_expectancy=61)
    outcomes = [_outcome([b], taxes=t) for b, t in ((10.0, 1.0), (20.0, 3.0), (30.0, 2.0))]
    result = aggregate(outcomes, params)
    assert result.iterations == 3
    assert result.successes == 3
    assert result.mean_ending_balance == pytest.approx(20.0)
    assert result.median_ending_balance == result.ending_percentiles[50] == 20.0
    assert result.median_lifetime_taxes == 2.0
    assert result.average_depletion_age is None
    assert result.median_trace[0].ending_balance == 20.0
    assert set(result.to_dict()["ending_percentiles"]) == {"p10", "p25", "p50", "p75", "p90"}


def test_aggregate_requires_outcomes():
    with pytest.raises(ValueError):
        aggregate([], _make_params())


def test_same_seed_same_result():
    params = _make_params()
    first = run_simulation(params, iterations=80, batches=4)
    second = run_simulation(params, iterations=80, batches=4)
    assert first == second


def test_different_seed_changes_result():
    first = run_simulation(_make_params(seed=1), iterations=80, batches=4)
    second = run_simulation(_make_params(seed=2), iterations=80, batches=4)
    assert first.ending_percentiles != second.ending_percentiles


def test_run_simulation_validates():
    with pytest.raises(InvalidParameterError):
        run_simulation(_make_params(effective_tax_rate=1.5), iterations=10)
    with pytest.raises(ValueError):
        run_simulation(_make_params(), iterations=0)


def test_realistic_household_has_uncertain_outcome():
    result = run_simulation(_make_params(), iterations=500)
    assert 0.0 < result.success_probability < 1.0
    p = result.ending_percentiles
    assert p[10] < p[50] < p[90]
    assert result.median_ending_balance == p[50]
    assert len(result.bands) == 30
    for band in result.bands:
        assert band.p5 <= band.p25 <= band.p50 <= band.p75 <= band.p95


def test_reference_household_without_ltc_insurance():
    params = _make_params(
        life_expectancy=92,
        expenses=Expenses(100_000),
        income=(IncomeStream("user", "pension", 72_000, 65),),
        has_ltc_insurance=False,
    )
    result = run_simulation(params, iterations=1000)
    assert 0.0 < result.success_probability < 1.0
    p = result.ending_percentiles
    assert p[10] < p[50] < p[90]
    assert result.median_ending_balance == p[50]
