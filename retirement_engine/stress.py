"""Named parameter shocks and their impact on success probability."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .aggregator import AggregateResult
from .errors import InvalidParameterError
from .params import LtcEvent, MarketShock, SimulationParams, validate_params
from .pool import ExecutionPool

logger = logging.getLogger(__name__)

MAX_STRESSED_TAX_RATE = 0.5
MIN_STRESSED_RETURN = 0.01
DEFAULT_LTC_EVENT_AGE = 80
DEFAULT_LTC_EVENT_YEARS = 3.0

DEFAULT_MAGNITUDES = {
    "market_crash": -0.30,
    "inflation_spike": 0.06,
    "longevity": 5,
    "ltc_event": None,  # market LTC cost
    "social_security_cut": 0.23,
    "higher_taxes": 0.20,
    "lower_returns": 0.02,
    "healthcare_costs": 0.50,
    "early_retirement": 2,
}

STRESS_LABELS = {
    "market_crash": "Market crash",
    "inflation_spike": "High inflation",
    "longevity": "Longer life",
    "ltc_event": "Long-term care event",
    "social_security_cut": "Social Security cut",
    "higher_taxes": "Higher taxes",
    "lower_returns": "Lower returns",
    "healthcare_costs": "Healthcare costs",
    "early_retirement": "Early retirement",
}

DEFAULT_SCENARIOS = ("market_crash", "inflation_spike", "longevity", "ltc_event")


@dataclass(frozen=True)
class StressScenarioSpec:
    id: str
    magnitude: Optional[float] = None
    start_year: Optional[int] = None  # years from today, for market_crash
    start_age: Optional[int] = None  # user age, for ltc_event
    duration: Optional[float] = None

    @property
    def label(self) -> str:
        return STRESS_LABELS.get(self.id, self.id)

    def resolved_magnitude(self) -> Optional[float]:
        return self.magnitude if self.magnitude is not None else DEFAULT_MAGNITUDES.get(self.id)

    @classmethod
    def from_dict(cls, data: dict) -> "StressScenarioSpec":
        return cls(
            id=str(data["id"]),
            magnitude=data.get("magnitude"),
            start_year=data.get("start_year"),
            start_age=data.get("start_age"),
            duration=data.get("duration"),
        )


def _market_crash(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    offset = spec.start_year
    if offset is None:
        offset = max(0, params.retirement_age - params.current_age)
    shock = MarketShock(int(offset), m)
    return dataclasses.replace(params, market_shocks=params.market_shocks + (shock,))


def _inflation_spike(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    market = params.market
    delta = m - market.inflation_mean
    market = dataclasses.replace(
        market,
        inflation_mean=m,
        healthcare_inflation_mean=market.healthcare_inflation_mean + delta,
    )
    return dataclasses.replace(params, market=market)


def _longevity(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    years = int(m)
    spouse_le = params.spouse_life_expectancy
    return dataclasses.replace(
        params,
        legacy_check_age=params.legacy_age,
        life_expectancy=params.life_expectancy + years,
        spouse_life_expectancy=None if spouse_le is None else spouse_le + years,
    )


def _ltc_event(params: SimulationParams, spec: StressScenarioSpec, m: Optional[float]) -> SimulationParams:
    age = spec.start_age if spec.start_age is not None else DEFAULT_LTC_EVENT_AGE
    event = LtcEvent(
        start_age=max(params.current_age, int(age)),
        duration_years=spec.duration if spec.duration is not None else DEFAULT_LTC_EVENT_YEARS,
        annual_cost=m if m is not None else params.market.ltc_annual_cost,
    )
    return dataclasses.replace(params, forced_ltc=event)


def _social_security_cut(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    keep = 1.0 - m
    elections = tuple(
        dataclasses.replace(e, pia=e.pia * keep, worker_pia=e.worker_pia * keep)
        for e in params.social_security
    )
    return dataclasses.replace(params, social_security=elections)


def _higher_taxes(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    rate = min(MAX_STRESSED_TAX_RATE, params.effective_tax_rate * (1 + m))
    return dataclasses.replace(params, effective_tax_rate=rate)


def _lower_returns(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    market = dataclasses.replace(
        params.market,
        stock_mean=max(MIN_STRESSED_RETURN, params.market.stock_mean - m),
        bond_mean=max(MIN_STRESSED_RETURN, params.market.bond_mean - m),
    )
    return dataclasses.replace(params, market=market)


def _healthcare_costs(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    expenses = dataclasses.replace(
        params.expenses, healthcare_annual=params.expenses.healthcare_annual * (1 + m)
    )
    market = dataclasses.replace(params.market, ltc_annual_cost=params.market.ltc_annual_cost * (1 + m))
    return dataclasses.replace(params, expenses=expenses, market=market)


def _early_retirement(params: SimulationParams, spec: StressScenarioSpec, m: float) -> SimulationParams:
    return params.with_retirement_age(max(params.current_age, params.retirement_age - int(m)))


SHOCKS: Dict[str, Callable[[SimulationParams, StressScenarioSpec, Optional[float]], SimulationParams]] = {
    "market_crash": _market_crash,
    "inflation_spike": _inflation_spike,
    "longevity": _longevity,
    "ltc_event": _ltc_event,
    "social_security_cut": _social_security_cut,
    "higher_taxes": _higher_taxes,
    "lower_returns": _lower_returns,
    "healthcare_costs": _healthcare_costs,
    "early_retirement": _early_retirement,
}


def apply_stress(params: SimulationParams, spec: StressScenarioSpec) -> SimulationParams:
    """Return a perturbed copy of ``params``; the input is never modified."""

    shock = SHOCKS.get(spec.id)
    if shock is None:
        raise InvalidParameterError([f"unknown stress scenario {spec.id!r}"])
    return validate_params(shock(params, spec, spec.resolved_magnitude()))


def apply_all(params: SimulationParams, specs: Iterable[StressScenarioSpec]) -> SimulationParams:
    for spec in specs:
        params = apply_stress(params, spec)
    return params


@dataclass(frozen=True)
class StressImpact:
    id: str
    label: str
    stressed_probability: float
    impact: float
    result: AggregateResult

    def to_dict(self, include_result: bool = False) -> dict:
        data = {
            "id": self.id,
            "label": self.label,
            "stressed_probability": self.stressed_probability,
            "impact": self.impact,
        }
        if include_result:
            data["result"] = self.result.to_dict()
        return data


@dataclass(frozen=True)
class StressReport:
    baseline: AggregateResult
    impacts: Tuple[StressImpact, ...]
    combined: Optional[StressImpact] = None

    @property
    def baseline_probability(self) -> float:
        return self.baseline.success_probability

    def to_dict(self) -> dict:
        return {
            "baseline_probability": self.baseline_probability,
            "impacts": [i.to_dict() for i in self.impacts],
            "combined": None if self.combined is None else self.combined.to_dict(),
        }


def run_stress_tests(
    params: SimulationParams,
    specs: Iterable[StressScenarioSpec],
    pool: ExecutionPool,
    iterations: int = 1000,
    include_combined: bool = False,
) -> StressReport:
    """
    Run the baseline and every shocked variant in one pool submission.

    Each shock gets its own copy of the parameters and the same seed, so
    the reported impact is ``stressed - baseline`` on common random numbers.
    """

    specs = list(specs)
    runs: List[SimulationParams] = [params] + [apply_stress(params, s) for s in specs]
    if include_combined and len(specs) > 1:
        runs.append(apply_all(params, specs))
    results = pool.run_many(runs, iterations)
    baseline = results[0]

    def impact_of(spec_id: str, label: str, result: AggregateResult) -> StressImpact:
        stressed = result.success_probability
        return StressImpact(spec_id, label, stressed, stressed - baseline.success_probability, result)

    impacts = tuple(impact_of(s.id, s.label, r) for s, r in zip(specs, results[1:]))
    combined = None
    if len(results) > len(specs) + 1:
        combined = impact_of("combined", "All shocks combined", results[-1])
    for item in impacts + ((combined,) if combined else ()):
        logger.info("Stress %s: %.1f%% (%+.1f pts)", item.id, item.stressed_probability * 100, item.impact * 100)
    return StressReport(baseline, impacts, combined)
