import pytest

from retirement_engine.profile import HouseholdProfile, OptimizationOverlay
from retirement_engine.service import SimulationService
from retirement_engine.settings import EngineSettings

PROFILE = {
    "householdId": "h-42",
    "currentAge": 58,
    "desiredRetirementAge": 65,
    "userLifeExpectancy": 90,
    "expectedMonthlyExpensesRetirement": 5_000,
    "socialSecurityClaimAge": 67,
    "socialSecurityBenefit": 2_400,
    "assets": [
        {"type": "401k", "value": 600_000},
        {"type": "brokerage", "value": 150_000},
    ],
    "effectiveTaxRate": 0.15,
    "hasLongTermCareInsurance": True,
}


@pytest.fixture
def service():
    settings = EngineSettings(iterations=40, batches=2, max_workers=2)
    with SimulationService(settings) as svc:
        yield svc


def _profile(**overrides) -> HouseholdProfile:
    return HouseholdProfile.from_dict({**PROFILE, **overrides})


def test_identical_inputs_hit_cache(service):
    first = service.simulate(_profile())
    second = service.simulate(_profile())
    assert not first.cached
    assert second.cached
    assert first.key == second.key
    assert first.result == second.result


def test_profile_update_invalidates(service):
    service.simulate(_profile())
    assert service.profile_updated("h-42") == 1
    assert not service.simulate(_profile()).cached


def test_persist_called_once_per_computation():
    stored = []
    settings = EngineSettings(iterations=20, batches=2, max_workers=1)
    with SimulationService(settings, persist=lambda h, k, r: stored.append((h, k))) as svc:
        response = svc.simulate(_profile())
        svc.simulate(_profile())
    assert stored == [("h-42", response.key)]


def test_persist_failure_still_returns_result():
    def broken(household_id, key, result):
        raise OSError("disk full")

    settings = EngineSettings(iterations=20, batches=2, max_workers=1)
    with SimulationService(settings, persist=broken) as svc:
        response = svc.simulate(_profile())
    assert response.persist_error == "disk full"
    assert 0.0 <= response.result.success_probability <= 1.0


def test_compare_runs_independent_plans(service):
    overlay = OptimizationOverlay.from_dict({"retirementAge": 68})
    comparison = service.compare(_profile(), overlay)
    assert comparison.baseline.key != comparison.optimized.key
    assert comparison.improvement == pytest.approx(
        comparison.optimized.result.success_probability
        - comparison.baseline.result.success_probability
    )
    assert service.simulate(_profile()).cached


def test_cached_result_checks_key(service):
    response = service.simulate(_profile())
    assert service.cached_result("h-42", response.key) == response.result
    assert service.cached_result("h-42", "0" * 64) is None
    assert service.cached_result("someone-else", response.key) is None


def test_claim_ages_objectives(service):
    by_pv = service.optimal_claim_ages(_profile())
    assert by_pv["user"].objective == "lifetime_pv"
    by_success = service.optimal_claim_ages(_profile(), objective="success_probability")
    assert by_success["user"].objective == "success_probability"
    assert set(by_success["user"].values) == set(range(62, 71))
    with pytest.raises(ValueError):
        service.optimal_claim_ages(_profile(), objective="happiness")


def test_retirement_age_search(service):
    result = service.optimal_retirement_age(_profile(), threshold=0.0)
    assert result.best_age == 58


def test_default_stress_suite(service):
    report = service.stress_test(_profile())
    assert [i.id for i in report.impacts] == ["market_crash", "inflation_spike", "longevity", "ltc_event"]
    assert report.combined is not None
    assert report.impacts[2].impact <= 0
