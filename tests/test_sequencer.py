import numpy as np
import pytest

from retirement_engine.params import (
    Allocation,
    AssetBuckets,
    Expenses,
    IncomeStream,
    LtcEvent,
    OwnerPlan,
    SimulationParams,
    SocialSecurityElection,
)
from retirement_engine.scenarios import ScenarioPath, generate_path, iteration_seeds
from retirement_engine.sequencer import income_schedule, run_scenario


def _make_params(**overrides) -> SimulationParams:
    base = dict(
        current_age=65,
        retirement_age=65,
        life_expectancy=70,
        owners=(
            OwnerPlan(
                "user",
                AssetBuckets(taxable=50_000, tax_deferred=100_000, hsa=10_000),
                Allocation(0.6, 0.4, 0.0),
            ),
        ),
        expenses=Expenses(40_000, 5_000),
        effective_tax_rate=0.2,
        income=(IncomeStream("user", "pension", 20_000, 65),),
        has_ltc_insurance=True,
    )
    base.update(overrides)
    return SimulationParams(**base)


def flat_path(params: SimulationParams, growth: float = 0.0) -> ScenarioPath:
    """Path with no inflation, constant returns and no LTC trigger."""
    n = params.n_years
    zeros = np.zeros(n)
    return ScenarioPath(
        start_age=params.current_age,
        stock_returns=zeros + growth,
        bond_returns=zeros + growth,
        cash_returns=zeros + growth,
        inflation=zeros.copy(),
        healthcare_inflation=zeros.copy(),
        owner_returns=np.full((len(params.owners), n), growth),
        ltc_trigger=np.ones(n),
        ltc_duration=zeros.copy(),
    )


def test_first_year_withdrawal_order():
    params = _make_params()
    outcome = run_scenario(params, flat_path(params))
    year = outcome.cash_flows[0]
    assert year.age == 65
    assert year.expenses == pytest.approx(45_000)
    assert year.guaranteed_income == pytest.approx(20_000)
    assert year.withdrawal_need == pytest.approx(25_000)
    # HSA covers healthcare tax-free, taxable covers the rest grossed up for tax
    assert year.withdrawal_hsa == pytest.approx(5_000)
    assert year.withdrawal_taxable == pytest.approx(25_000)
    assert year.withdrawal_tax_deferred == 0.0
    assert year.taxes == pytest.approx(5_000)
    assert year.ending_balance == pytest.approx(130_000)


def test_successful_scenario_runs_to_horizon():
    params = _make_params()
    outcome = run_scenario(params, flat_path(params))
    assert outcome.success
    assert outcome.depletion_age is None
    assert len(outcome.cash_flows) == 5
    assert outcome.cash_flows[2].withdrawal_tax_deferred == pytest.approx(31_250)
    assert outcome.ending_balance == pytest.approx(6_250)
    assert outcome.lifetime_taxes == pytest.approx(5_000 * 2 + 6_250 * 3)


def test_depletion_is_terminal():
    params = _make_params(life_expectancy=72)
    outcome = run_scenario(params, flat_path(params))
    assert not outcome.success
    assert outcome.depletion_age == 70
    assert len(outcome.cash_flows) == 6
    assert outcome.ending_balance == 0.0


def test_legacy_goal_required_for_success():
    params = _make_params(legacy_goal=10_000)
    outcome = run_scenario(params, flat_path(params))
    assert not outcome.success
    assert not outcome.legacy_met
    assert outcome.depletion_age is None


def test_savings_before_retirement():
    params = _make_params(
        current_age=60,
        retirement_age=62,
        life_expectancy=63,
        annual_savings=10_000,
        expenses=Expenses(0.0),
        income=(),
    )
    outcome = run_scenario(params, flat_path(params))
    flows = outcome.cash_flows
    assert [f.contributions for f in flows] == [10_000, 10_000, 0]
    assert all(f.expenses == 0 for f in flows)
    assert outcome.ending_balance == pytest.approx(180_000)


def test_forced_ltc_event_applies_with_insurance():
    params = _make_params(forced_ltc=LtcEvent(66, 1.0, 30_000))
    flows = run_scenario(params, flat_path(params)).cash_flows
    assert flows[1].ltc_cost == pytest.approx(30_000)
    assert flows[1].healthcare_expenses == pytest.approx(35_000)
    assert flows[0].ltc_cost == 0.0
    assert flows[2].ltc_cost == 0.0


def test_random_ltc_suppressed_by_insurance():
    params = _make_params(has_ltc_insurance=True)
    path = flat_path(params)
    path = ScenarioPath(**{**path.__dict__, "ltc_trigger": np.zeros(params.n_years)})
    assert all(f.ltc_cost == 0 for f in run_scenario(params, path).cash_flows)
    exposed = _make_params(has_ltc_insurance=False)
    flows = run_scenario(exposed, path).cash_flows
    assert flows[0].ltc_cost > 0


def test_income_schedule_by_owner_age():
    params = _make_params(
        current_age=62,
        life_expectancy=75,
        spouse_current_age=59,
        spouse_life_expectancy=80,
        social_security=(
            SocialSecurityElection("user", 1_000, 67),
            SocialSecurityElection("spouse", 500, 62.5),
        ),
        income=(IncomeStream("user", "pension", 6_000, 65, end_age=67, cola=False),),
    )
    cola, fixed = income_schedule(params)
    spouse_annual = params.social_security[1].monthly_benefit() * 12
    # Spouse turns 62 when the user is 65; a claim at 62.5 pays half that year
    assert cola[2] == 0.0
    assert cola[3] == pytest.approx(spouse_annual / 2)
    assert cola[4] == pytest.approx(spouse_annual)
    assert cola[5] == pytest.approx(12_000 + spouse_annual)
    assert fixed[3] == pytest.approx(6_000)
    assert fixed[5] == 0.0


@pytest.mark.parametrize("iteration", range(20))
def test_buckets_never_negative_and_withdrawals_bounded(iteration):
    params = _make_params(
        current_age=60,
        life_expectancy=95,
        has_ltc_insurance=False,
        expenses=Expenses(70_000, 8_000),
    )
    seed_seq = iteration_seeds(7, 0, 20)[iteration]
    outcome = run_scenario(params, generate_path(params, seed_seq))
    for year in outcome.cash_flows:
        assert year.ending_balance >= 0
        for amount in (
            year.withdrawal_taxable,
            year.withdrawal_tax_deferred,
            year.withdrawal_tax_free,
            year.withdrawal_hsa,
        ):
            assert amount >= 0
        assert year.total_withdrawal - year.taxes - year.reinvested <= year.withdrawal_need + 1e-6


def test_hsa_drained_with_penalty_before_failing_early():
    params = _make_params(
        current_age=60,
        retirement_age=60,
        life_expectancy=62,
        owners=(OwnerPlan("user", AssetBuckets(taxable=10_000, hsa=30_000), Allocation(0.6, 0.4, 0.0)),),
        expenses=Expenses(20_000),
        income=(),
    )
    outcome = run_scenario(params, flat_path(params))
    first, second = outcome.cash_flows
    # 12k still needed after taxable; HSA grossed up at 20% tax + 20% penalty
    assert first.withdrawal_taxable == pytest.approx(10_000)
    assert first.withdrawal_hsa == pytest.approx(20_000)
    assert first.taxes == pytest.approx(2_000 + 8_000)
    assert second.withdrawal_hsa == pytest.approx(10_000)
    assert not outcome.success
    assert outcome.depletion_age == 61
    assert outcome.ending_balance == 0.0


def _rmd_params(**overrides) -> SimulationParams:
    base = dict(
        current_age=75,
        retirement_age=75,
        life_expectancy=77,
        birth_year=1950,
        owners=(OwnerPlan("user", AssetBuckets(tax_deferred=246_000), Allocation(0.6, 0.4, 0.0)),),
        expenses=Expenses(0.0),
        income=(),
    )
    base.update(overrides)
    return _make_params(**base)


def test_rmd_forced_out_and_excess_reinvested():
    params = _rmd_params()
    outcome = run_scenario(params, flat_path(params))
    first, second = outcome.cash_flows
    assert first.rmd == pytest.approx(10_000)
    assert first.withdrawal_tax_deferred == pytest.approx(10_000)
    assert first.taxes == pytest.approx(2_000)
    assert first.reinvested == pytest.approx(8_000)
    assert first.ending_balance == pytest.approx(244_000)
    assert second.rmd == pytest.approx(236_000 / 23.7)
    assert outcome.success


def test_rmd_counts_toward_need():
    params = _rmd_params(expenses=Expenses(20_000))
    first = run_scenario(params, flat_path(params)).cash_flows[0]
    # 8k net from the RMD, the remaining 12k grossed up from tax-deferred
    assert first.rmd == pytest.approx(10_000)
    assert first.withdrawal_tax_deferred == pytest.approx(25_000)
    assert first.taxes == pytest.approx(5_000)
    assert first.reinvested == 0.0


def test_no_rmd_before_start_age():
    params = _rmd_params(current_age=73, retirement_age=73, birth_year=1960)
    flows = run_scenario(params, flat_path(params)).cash_flows
    assert [f.rmd for f in flows[:2]] == [0.0, 0.0]
    assert flows[2].rmd == pytest.approx(10_000)
