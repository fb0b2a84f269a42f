from types import SimpleNamespace

import pytest

from retirement_engine.optimizer import (
    best_claim_age_by_pv,
    best_claim_age_by_success,
    claim_age_candidates,
    optimal_claim_ages,
    optimal_retirement_age,
    pick_best,
    retirement_age_candidates,
)
from retirement_engine.params import (
    Allocation,
    AssetBuckets,
    Expenses,
    OwnerPlan,
    SimulationParams,
    SocialSecurityElection,
)
from retirement_engine.pool import ExecutionPool


def _make_params(**overrides) -> SimulationParams:
    base = dict(
        current_age=60,
        retirement_age=65,
        life_expectancy=90,
        owners=(OwnerPlan("user", AssetBuckets(tax_deferred=900_000), Allocation(0.6, 0.4, 0.0)),),
        expenses=Expenses(70_000),
        effective_tax_rate=0.15,
        social_security=(SocialSecurityElection("user", 2_000, 67),),
        has_ltc_insurance=True,
        seed=5,
    )
    base.update(overrides)
    return SimulationParams(**base)


class RecordingPool:
    """Stands in for ExecutionPool; success probability comes from ``score``."""

    def __init__(self, score):
        self.score = score
        self.calls = []

    def run_many(self, runs, iterations=1000):
        self.calls.append((list(runs), iterations))
        return [SimpleNamespace(success_probability=self.score(p)) for p in runs]


def test_pick_best_prefers_earliest_on_ties():
    assert pick_best({64: 0.5, 62: 0.9, 63: 0.9 + 1e-12}) == 62
    assert pick_best({62: 0.1, 70: 0.2}) == 70
    assert pick_best({}) is None


def test_claim_age_candidates():
    assert claim_age_candidates(55) == list(range(62, 71))
    assert claim_age_candidates(66.5) == [67, 68, 69, 70]
    assert claim_age_candidates(72) == []


def test_long_life_favors_delayed_claim():
    result = best_claim_age_by_pv(2_000, 62, 95)
    assert result.best_age == 70
    assert result.monthly_benefit == pytest.approx(2_480)
    assert set(result.values) == set(range(62, 71))


def test_short_life_favors_early_claim():
    result = best_claim_age_by_pv(2_000, 62, 70)
    assert result.best_age == 62
    assert result.best_value == max(result.values.values())


def test_optimal_claim_ages_per_owner():
    params = _make_params(
        spouse_current_age=58,
        spouse_life_expectancy=70,
        social_security=(
            SocialSecurityElection("user", 2_000, 67),
            SocialSecurityElection("spouse", 1_000, 67),
        ),
        life_expectancy=95,
    )
    results = optimal_claim_ages(params)
    assert set(results) == {"user", "spouse"}
    assert results["user"].best_age == 70
    assert results["spouse"].best_age < 67
    assert results["spouse"].owner == "spouse"


def test_claim_age_by_success_uses_one_submission():
    pool = RecordingPool(lambda p: 0.5 + 0.01 * min(p.social_security[0].claim_age, 68))
    result = best_claim_age_by_success(_make_params(), pool, iterations=50)
    assert len(pool.calls) == 1
    runs, iterations = pool.calls[0]
    assert iterations == 50
    assert [p.social_security[0].claim_age for p in runs] == list(range(62, 71))
    assert len({p.seed for p in runs}) == 1
    # 68, 69 and 70 tie; the earliest wins
    assert result.best_age == 68
    assert result.objective == "success_probability"


def test_claim_age_by_success_requires_election():
    with pytest.raises(ValueError):
        best_claim_age_by_success(_make_params(), RecordingPool(lambda p: 0.5), owner="spouse")


def test_retirement_age_candidates():
    assert retirement_age_candidates(_make_params()) == list(range(60, 76))
    assert retirement_age_candidates(_make_params(life_expectancy=70)) == list(range(60, 70))


def test_retirement_age_threshold_picks_earliest():
    pool = RecordingPool(lambda p: 0.05 * (p.retirement_age - 55))
    result = optimal_retirement_age(_make_params(), pool, threshold=0.8)
    # 0.05 * (71 - 55) = 0.8
    assert result.best_age == 71
    assert result.threshold == 0.8


def test_retirement_age_threshold_unreachable():
    pool = RecordingPool(lambda p: 0.1)
    result = optimal_retirement_age(_make_params(), pool, threshold=0.9)
    assert result.best_age is None
    assert result.best_value is None
    assert len(result.values) == 16


def test_retirement_age_without_threshold_maximizes():
    pool = RecordingPool(lambda p: 1.0 - abs(p.retirement_age - 66) * 0.01)
    assert optimal_retirement_age(_make_params(), pool).best_age == 66


def test_later_retirement_does_not_hurt_on_common_paths():
    params = _make_params(expenses=Expenses(80_000))
    with ExecutionPool(max_workers=2, batches=2) as pool:
        result = optimal_retirement_age(params, pool, iterations=100, candidates=[62, 70])
    assert result.values[70] >= result.values[62]
    assert result.best_age in (62, 70)
